# =============================================================================
# ISSUE TRIAGE SYSTEM - GITHUB CREDENTIAL RESOLVER
# =============================================================================
"""
GitHub Credential Resolver

Supplies a bearer token by trying, in priority order:

    1. Environment override (GH_TOKEN, then GITHUB_TOKEN)
    2. The GitHub CLI's stored session (``gh auth token``)
    3. The OS credential store (keyring)

If none produces a token, NotAuthenticatedError tells the caller to run
the interactive device flow (see device_flow.py), which stores its result
through the same keyring backend.

Only the source that satisfied the lookup is logged, never the token.

Usage:
    resolver = CredentialResolver()
    credential = await resolver.resolve()
    print(credential.source)  # CredentialSource.GH_CLI
"""

import asyncio
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping, Optional, Tuple

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from triage_engine.engine.errors import CredentialStoreError, NotAuthenticatedError


logger = logging.getLogger(__name__)

KEYRING_SERVICE = "issue-triage"
KEYRING_USER = "github_token"

# Checked in order
TOKEN_ENV_VARS = ("GH_TOKEN", "GITHUB_TOKEN")


# =============================================================================
# DATA STRUCTURES
# =============================================================================

class CredentialSource(Enum):
    """Where a credential came from."""
    ENVIRONMENT = "environment"
    GH_CLI = "gh_cli"
    KEYRING = "keyring"
    DEVICE_FLOW = "device_flow"


@dataclass(frozen=True)
class Credential:
    """Bearer credential. The token never appears in repr()."""
    token: str = field(repr=False)
    source: CredentialSource
    scopes: Tuple[str, ...] = ()

    @property
    def authorization_header(self) -> str:
        return f"Bearer {self.token}"


# =============================================================================
# CREDENTIAL SOURCES
# =============================================================================

class KeyringStore:
    """
    OS credential store backend (macOS Keychain, Secret Service, Windows).

    Blocking keyring calls run in a worker thread so polling loops and
    concurrent triage runs are not stalled.
    """

    def __init__(self, service: str = KEYRING_SERVICE, username: str = KEYRING_USER):
        self.service = service
        self.username = username

    async def get(self) -> Optional[str]:
        """Stored token, or None when absent or the store is unavailable."""
        try:
            return await asyncio.to_thread(keyring.get_password, self.service, self.username)
        except KeyringError as e:
            logger.debug(f"Keyring lookup failed: {e.__class__.__name__}")
            return None

    async def set(self, token: str):
        """
        Store a token.

        Raises:
            CredentialStoreError: No usable keyring backend
        """
        try:
            await asyncio.to_thread(keyring.set_password, self.service, self.username, token)
        except KeyringError as e:
            raise CredentialStoreError(f"Could not store token in keyring: {e}") from e

    async def delete(self) -> bool:
        """Remove the stored token. Returns False when there was none."""
        try:
            await asyncio.to_thread(keyring.delete_password, self.service, self.username)
            return True
        except PasswordDeleteError:
            return False
        except KeyringError as e:
            raise CredentialStoreError(f"Could not delete token from keyring: {e}") from e


class GhCliSession:
    """Reads the token of an already-authenticated GitHub CLI."""

    def __init__(self, executable: str = "gh", timeout: float = 5.0, host: Optional[str] = None):
        self.executable = executable
        self.timeout = timeout
        self.host = host

    async def token(self) -> Optional[str]:
        """Token from ``gh auth token``, or None if gh is missing or logged out."""
        args = [self.executable, "auth", "token"]
        if self.host:
            args += ["--hostname", self.host]
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except (FileNotFoundError, PermissionError):
            logger.debug("gh CLI not available")
            return None

        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            logger.debug("gh auth token timed out")
            return None

        if process.returncode != 0:
            logger.debug(f"gh auth token exited with {process.returncode}")
            return None
        token = stdout.decode("utf-8", errors="replace").strip()
        return token or None


# =============================================================================
# RESOLVER
# =============================================================================

class CredentialResolver:
    """
    Priority-ordered GitHub credential lookup.

    Attributes:
        store: Keyring backend, also the write target of the device flow
    """

    def __init__(
        self,
        env: Optional[Mapping[str, str]] = None,
        cli: Optional[GhCliSession] = None,
        store: Optional[KeyringStore] = None,
    ):
        self._env = os.environ if env is None else env
        self.cli = cli if cli is not None else GhCliSession()
        self.store = store if store is not None else KeyringStore()

    async def resolve(self) -> Credential:
        """
        Return the first available credential.

        Raises:
            NotAuthenticatedError: No source produced a token
        """
        for var in TOKEN_ENV_VARS:
            value = (self._env.get(var) or "").strip()
            if value:
                logger.info(f"GitHub credential resolved from environment ({var})")
                return Credential(token=value, source=CredentialSource.ENVIRONMENT)

        token = await self.cli.token()
        if token:
            logger.info("GitHub credential resolved from gh CLI")
            return Credential(token=token, source=CredentialSource.GH_CLI)

        token = await self.store.get()
        if token:
            logger.info("GitHub credential resolved from keyring")
            return Credential(token=token, source=CredentialSource.KEYRING)

        logger.info("No GitHub credential found")
        raise NotAuthenticatedError(
            "Not authenticated with GitHub. Run `issue-triage login`, "
            "authenticate the gh CLI, or set GH_TOKEN."
        )

    async def is_authenticated(self) -> bool:
        try:
            await self.resolve()
        except NotAuthenticatedError:
            return False
        return True

    async def store_token(self, token: str):
        """Persist a freshly minted token through the keyring backend."""
        await self.store.set(token)
        logger.info("GitHub credential stored in keyring")

    async def logout(self) -> bool:
        """Delete the stored token. Returns False when none was stored."""
        removed = await self.store.delete()
        logger.info("GitHub credential removed from keyring" if removed else "No stored credential to remove")
        return removed


__all__ = [
    "Credential",
    "CredentialSource",
    "CredentialResolver",
    "KeyringStore",
    "GhCliSession",
    "KEYRING_SERVICE",
    "KEYRING_USER",
    "TOKEN_ENV_VARS",
]
