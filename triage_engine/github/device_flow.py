# =============================================================================
# ISSUE TRIAGE SYSTEM - DEVICE AUTHORIZATION FLOW
# =============================================================================
"""
GitHub OAuth Device Authorization Flow

State machine that mints a new GitHub token for the CLI:

    IDLE -> CODE_REQUESTED -> POLLING -> SUCCESS
                                      -> DENIED
                                      -> EXPIRED
                                      -> CANCELLED
                                      -> TIMED_OUT

The user approves the request in a browser while the client polls the
token endpoint. The poll interval only grows: each ``slow_down`` response
raises it and nothing lowers it. On success the token is written once
through the credential resolver's keyring backend.

Sleep and clock are injectable so tests can simulate minutes of polling
instantly.

Usage:
    flow = DeviceAuthorizationFlow(transport, resolver, client_id="Ov23...")
    credential = await flow.run(on_code=lambda s: print(s.user_code, s.verification_uri))
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence, TYPE_CHECKING

from triage_engine.engine.errors import (
    DeviceFlowError,
    IntegrationError,
    InvalidTransitionError,
)
from triage_engine.engine.transport import HttpTransport, classify_response
from triage_engine.github.auth import Credential, CredentialResolver, CredentialSource

if TYPE_CHECKING:
    from monitoring.logger import AuditLogger


logger = logging.getLogger(__name__)

DEVICE_CODE_URL = "https://github.com/login/device/code"
ACCESS_TOKEN_URL = "https://github.com/login/oauth/access_token"
DEVICE_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:device_code"
DEFAULT_SCOPES = ("repo", "read:user")

# RFC 8628 section 3.5: slow_down adds 5 seconds
SLOW_DOWN_INCREMENT = 5.0
SERVICE_NAME = "github-oauth"


# =============================================================================
# STATES
# =============================================================================

class DeviceFlowState(Enum):
    """Device authorization session states."""
    IDLE = "idle"
    CODE_REQUESTED = "code_requested"
    POLLING = "polling"
    SUCCESS = "success"
    DENIED = "denied"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({
    DeviceFlowState.SUCCESS,
    DeviceFlowState.DENIED,
    DeviceFlowState.EXPIRED,
    DeviceFlowState.CANCELLED,
    DeviceFlowState.TIMED_OUT,
})

_ALLOWED_TRANSITIONS = {
    DeviceFlowState.IDLE: {DeviceFlowState.CODE_REQUESTED, DeviceFlowState.CANCELLED},
    DeviceFlowState.CODE_REQUESTED: {DeviceFlowState.POLLING, DeviceFlowState.CANCELLED},
    DeviceFlowState.POLLING: set(TERMINAL_STATES),
}


@dataclass
class DeviceAuthorizationSession:
    """One device-flow exchange. Mutated only by the polling loop."""
    device_code: str = field(repr=False)
    user_code: str
    verification_uri: str
    expires_at: float
    interval: float
    state: DeviceFlowState = DeviceFlowState.CODE_REQUESTED
    token: Optional[str] = field(default=None, repr=False)
    scopes: Sequence[str] = ()


# =============================================================================
# FLOW
# =============================================================================

class DeviceAuthorizationFlow:
    """
    Drives one device authorization exchange to a terminal state.

    A flow instance is single-use: once terminal it cannot be restarted.
    """

    def __init__(
        self,
        transport: HttpTransport,
        resolver: CredentialResolver,
        client_id: str,
        scopes: Sequence[str] = DEFAULT_SCOPES,
        timeout: float = 900.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
        audit: Optional["AuditLogger"] = None,
    ):
        self.transport = transport
        self.resolver = resolver
        self.client_id = client_id
        self.scopes = tuple(scopes)
        self.timeout = timeout
        self._clock = clock
        self._sleep = sleep or self._interruptible_sleep
        self._audit = audit
        self._cancel_event = asyncio.Event()
        self._state = DeviceFlowState.IDLE
        self._started_at: Optional[float] = None
        self.session: Optional[DeviceAuthorizationSession] = None

    @property
    def state(self) -> DeviceFlowState:
        return self._state

    def _transition(self, new_state: DeviceFlowState):
        allowed = _ALLOWED_TRANSITIONS.get(self._state, set())
        if new_state not in allowed:
            raise InvalidTransitionError(
                f"Device flow cannot move from {self._state.value} to {new_state.value}"
            )
        logger.debug(f"Device flow: {self._state.value} -> {new_state.value}")
        self._state = new_state
        if self.session is not None:
            self.session.state = new_state

    async def _interruptible_sleep(self, seconds: float):
        """Wait for the interval, returning early if cancel() is called."""
        try:
            await asyncio.wait_for(self._cancel_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    def cancel(self):
        """Request cancellation. Takes effect at the next suspension point."""
        self._cancel_event.set()
        if self._state in (DeviceFlowState.IDLE, DeviceFlowState.CODE_REQUESTED):
            self._transition(DeviceFlowState.CANCELLED)

    # -------------------------------------------------------------------------
    # Code request
    # -------------------------------------------------------------------------

    async def request_code(self) -> DeviceAuthorizationSession:
        """
        Request a device code and user code.

        Raises:
            IntegrationError: The request failed
            DeviceFlowError: The response lacked required fields
        """
        self._transition(DeviceFlowState.CODE_REQUESTED)
        response = await self.transport.request(
            "POST",
            DEVICE_CODE_URL,
            headers={"Accept": "application/json"},
            data={"client_id": self.client_id, "scope": " ".join(self.scopes)},
            service=SERVICE_NAME,
        )
        if not response.ok:
            raise classify_response(response, SERVICE_NAME)

        payload = response.json(service=SERVICE_NAME) or {}
        try:
            now = self._clock()
            self.session = DeviceAuthorizationSession(
                device_code=payload["device_code"],
                user_code=payload["user_code"],
                verification_uri=payload["verification_uri"],
                expires_at=now + float(payload.get("expires_in", 900)),
                interval=float(payload.get("interval", 5)),
                state=self._state,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise DeviceFlowError(f"Malformed device code response: missing {e}") from e

        if self._state == DeviceFlowState.CANCELLED:
            return self.session

        self._started_at = now
        self._transition(DeviceFlowState.POLLING)
        logger.info(f"Device code issued; verification at {self.session.verification_uri}")
        return self.session

    # -------------------------------------------------------------------------
    # Polling
    # -------------------------------------------------------------------------

    async def poll(self) -> DeviceAuthorizationSession:
        """
        Poll until the session reaches a terminal state.

        Returns:
            The session, in a terminal state

        Raises:
            DeviceFlowError: Unknown error code from the token endpoint
        """
        if self.session is None or self._state != DeviceFlowState.POLLING:
            raise InvalidTransitionError("poll() requires a session in the polling state")
        session = self.session

        try:
            while True:
                terminal = self._check_budget(session)
                if terminal is not None:
                    self._transition(terminal)
                    return session

                await self._sleep(session.interval)

                terminal = self._check_budget(session)
                if terminal is not None:
                    self._transition(terminal)
                    return session

                outcome = await self._poll_once(session)
                if outcome is not None:
                    self._transition(outcome)
                    if outcome == DeviceFlowState.SUCCESS:
                        await self.resolver.store_token(session.token)
                        if self._audit:
                            self._audit.log_auth("login", CredentialSource.DEVICE_FLOW.value, list(session.scopes))
                    logger.info(f"Device flow finished: {outcome.value}")
                    return session
        except asyncio.CancelledError:
            if not self._state.is_terminal:
                self._transition(DeviceFlowState.CANCELLED)
            raise

    def _check_budget(self, session: DeviceAuthorizationSession) -> Optional[DeviceFlowState]:
        if self._cancel_event.is_set():
            return DeviceFlowState.CANCELLED
        now = self._clock()
        if self._started_at is not None and now - self._started_at >= self.timeout:
            return DeviceFlowState.TIMED_OUT
        if now >= session.expires_at:
            return DeviceFlowState.EXPIRED
        return None

    async def _poll_once(self, session: DeviceAuthorizationSession) -> Optional[DeviceFlowState]:
        """One token request. Returns a terminal state, or None to keep polling."""
        try:
            response = await self.transport.request(
                "POST",
                ACCESS_TOKEN_URL,
                headers={"Accept": "application/json"},
                data={
                    "client_id": self.client_id,
                    "device_code": session.device_code,
                    "grant_type": DEVICE_GRANT_TYPE,
                },
                service=SERVICE_NAME,
            )
            if not response.ok:
                raise classify_response(response, SERVICE_NAME)
            payload: Dict[str, Any] = response.json(service=SERVICE_NAME) or {}
        except IntegrationError as e:
            if e.retryable:
                logger.warning(f"Device flow poll failed transiently, continuing: {e}")
                return None
            raise

        if payload.get("access_token"):
            session.token = payload["access_token"]
            scope = payload.get("scope") or ""
            session.scopes = tuple(s for s in scope.replace(",", " ").split() if s)
            return DeviceFlowState.SUCCESS

        error = payload.get("error")
        if error == "authorization_pending":
            return None
        if error == "slow_down":
            server_interval = float(payload.get("interval") or 0)
            session.interval = max(session.interval + SLOW_DOWN_INCREMENT, server_interval)
            logger.info(f"Device flow asked to slow down; interval now {session.interval:.0f}s")
            return None
        if error == "access_denied":
            return DeviceFlowState.DENIED
        if error == "expired_token":
            return DeviceFlowState.EXPIRED
        raise DeviceFlowError(
            f"Unexpected device flow response: {error or 'no token and no error'}"
        )

    # -------------------------------------------------------------------------
    # Convenience
    # -------------------------------------------------------------------------

    async def run(
        self,
        on_code: Optional[Callable[[DeviceAuthorizationSession], Any]] = None,
    ) -> Optional[Credential]:
        """
        Request a code, report it, and poll to completion.

        Returns:
            Credential on success, None for any other terminal state
        """
        session = await self.request_code()
        if session.state != DeviceFlowState.POLLING:
            return None
        if on_code is not None:
            result = on_code(session)
            if asyncio.iscoroutine(result):
                await result
        session = await self.poll()
        if session.state == DeviceFlowState.SUCCESS:
            return Credential(
                token=session.token,
                source=CredentialSource.DEVICE_FLOW,
                scopes=tuple(session.scopes),
            )
        return None


__all__ = [
    "DeviceFlowState",
    "DeviceAuthorizationSession",
    "DeviceAuthorizationFlow",
    "TERMINAL_STATES",
    "DEFAULT_SCOPES",
    "DEVICE_CODE_URL",
    "ACCESS_TOKEN_URL",
]
