"""
Tests for github/device_flow module.

The device authorization state machine against a scripted token endpoint,
a fake clock and a recording sleep.
"""

import asyncio

import pytest

from triage_engine.engine.errors import (
    DeviceFlowError,
    InvalidTransitionError,
    ServerError,
)
from triage_engine.github.auth import CredentialResolver, CredentialSource
from triage_engine.github.device_flow import (
    ACCESS_TOKEN_URL,
    DEVICE_CODE_URL,
    DeviceAuthorizationFlow,
    DeviceFlowState,
)

from tests.fakes import FakeCli, FakeStore, FakeTransport, json_response

CLIENT_ID = "Ov23lifiYQrh6Ga7Hpyr"


def code_response(interval=5, expires_in=900):
    return json_response(200, {
        "device_code": "dev-3584d83530557fdd1f46af8289938c8ef79f9dc5",
        "user_code": "WDJB-MJHT",
        "verification_uri": "https://github.com/login/device",
        "expires_in": expires_in,
        "interval": interval,
    })


def pending():
    return json_response(200, {"error": "authorization_pending"})


def slow_down(interval=None):
    body = {"error": "slow_down"}
    if interval is not None:
        body["interval"] = interval
    return json_response(200, body)


def token_response(token="gho_minted_token_0123456789"):
    return json_response(200, {"access_token": token, "token_type": "bearer", "scope": "repo,read:user"})


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def make_flow(store, clock, sleeper):
    def factory(*responses, timeout=900.0, sleep=None):
        transport = FakeTransport(code_response(), *responses)
        resolver = CredentialResolver(env={}, cli=FakeCli(), store=store)
        flow = DeviceAuthorizationFlow(
            transport,
            resolver,
            client_id=CLIENT_ID,
            timeout=timeout,
            clock=clock,
            sleep=sleep or sleeper,
        )
        return flow, transport
    return factory


class TestHappyPath:
    """Tests for a successful authorization."""

    @pytest.mark.asyncio
    async def test_five_pending_then_token_stores_once(self, make_flow, store, sleeper):
        flow, transport = make_flow(*(pending() for _ in range(5)), token_response())

        credential = await flow.run()

        assert flow.state == DeviceFlowState.SUCCESS
        assert store.set_calls == ["gho_minted_token_0123456789"]
        assert credential.source == CredentialSource.DEVICE_FLOW
        assert credential.scopes == ("repo", "read:user")
        assert sleeper.delays == [5.0] * 6
        assert len(transport.calls_to(ACCESS_TOKEN_URL)) == 6

    @pytest.mark.asyncio
    async def test_code_request_payload(self, make_flow):
        flow, transport = make_flow(token_response())

        session = await flow.request_code()

        request = transport.calls_to(DEVICE_CODE_URL)[0]
        assert request.data == {"client_id": CLIENT_ID, "scope": "repo read:user"}
        assert request.headers["Accept"] == "application/json"
        assert session.user_code == "WDJB-MJHT"
        assert "dev-" not in repr(session)

    @pytest.mark.asyncio
    async def test_on_code_callback_receives_session(self, make_flow):
        flow, _ = make_flow(token_response())
        seen = []

        await flow.run(on_code=lambda session: seen.append(session.user_code))

        assert seen == ["WDJB-MJHT"]

    @pytest.mark.asyncio
    async def test_poll_request_uses_device_grant(self, make_flow):
        flow, transport = make_flow(token_response())

        await flow.run()

        poll = transport.calls_to(ACCESS_TOKEN_URL)[0]
        assert poll.data["grant_type"] == "urn:ietf:params:oauth:grant-type:device_code"
        assert poll.data["device_code"].startswith("dev-")


class TestSlowDown:
    """Tests for interval handling."""

    @pytest.mark.asyncio
    async def test_interval_is_non_decreasing(self, make_flow, sleeper):
        flow, _ = make_flow(pending(), slow_down(), slow_down(interval=20), pending(), token_response())

        await flow.run()

        assert sleeper.delays == [5.0, 5.0, 10.0, 20.0, 20.0]
        assert sleeper.delays == sorted(sleeper.delays)

    @pytest.mark.asyncio
    async def test_slow_down_adds_five_seconds(self, make_flow, sleeper):
        flow, _ = make_flow(slow_down(), slow_down(), token_response())

        await flow.run()

        assert sleeper.delays == [5.0, 10.0, 15.0]

    @pytest.mark.asyncio
    async def test_transient_error_keeps_polling(self, make_flow, store):
        flow, _ = make_flow(
            ServerError("unavailable", status_code=503, service="github-oauth"),
            token_response(),
        )

        await flow.run()

        assert flow.state == DeviceFlowState.SUCCESS
        assert len(store.set_calls) == 1


class TestTerminalStates:
    """Tests for non-success outcomes."""

    @pytest.mark.asyncio
    async def test_denied(self, make_flow, store):
        flow, _ = make_flow(pending(), json_response(200, {"error": "access_denied"}))

        credential = await flow.run()

        assert credential is None
        assert flow.state == DeviceFlowState.DENIED
        assert store.set_calls == []

    @pytest.mark.asyncio
    async def test_expired_token_response(self, make_flow):
        flow, _ = make_flow(json_response(200, {"error": "expired_token"}))

        assert await flow.run() is None
        assert flow.state == DeviceFlowState.EXPIRED

    @pytest.mark.asyncio
    async def test_code_expiry_stops_polling(self, store, clock, sleeper):
        transport = FakeTransport(code_response(expires_in=7), pending(), pending())
        resolver = CredentialResolver(env={}, cli=FakeCli(), store=store)
        flow = DeviceAuthorizationFlow(transport, resolver, CLIENT_ID, clock=clock, sleep=sleeper)

        await flow.run()

        assert flow.state == DeviceFlowState.EXPIRED
        assert len(transport.calls_to(ACCESS_TOKEN_URL)) == 1

    @pytest.mark.asyncio
    async def test_overall_timeout(self, make_flow):
        flow, transport = make_flow(pending(), pending(), pending(), timeout=12)

        assert await flow.run() is None
        assert flow.state == DeviceFlowState.TIMED_OUT
        assert len(transport.calls_to(ACCESS_TOKEN_URL)) == 2

    @pytest.mark.asyncio
    async def test_unknown_error_raises(self, make_flow):
        flow, _ = make_flow(json_response(200, {"error": "unsupported_grant_type"}))

        with pytest.raises(DeviceFlowError):
            await flow.run()

    @pytest.mark.asyncio
    async def test_malformed_code_response(self, store):
        transport = FakeTransport(json_response(200, {"user_code": "X"}))
        flow = DeviceAuthorizationFlow(transport, CredentialResolver(env={}, cli=FakeCli(), store=store), CLIENT_ID)

        with pytest.raises(DeviceFlowError):
            await flow.request_code()


class TestCancellation:
    """Tests for cancel() and task cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_before_polling(self, make_flow, store):
        flow, transport = make_flow(token_response())
        await flow.request_code()

        flow.cancel()
        session = await flow.poll()

        assert session.state == DeviceFlowState.CANCELLED
        assert transport.calls_to(ACCESS_TOKEN_URL) == []
        assert store.set_calls == []

    @pytest.mark.asyncio
    async def test_cancel_when_idle(self, make_flow):
        flow, _ = make_flow()

        flow.cancel()

        assert flow.state == DeviceFlowState.CANCELLED

    @pytest.mark.asyncio
    async def test_task_cancellation_marks_cancelled(self, make_flow):
        forever = asyncio.Event()

        async def blocking_sleep(seconds):
            await forever.wait()

        flow, _ = make_flow(token_response(), sleep=blocking_sleep)
        await flow.request_code()

        task = asyncio.create_task(flow.poll())
        await asyncio.sleep(0)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert flow.state == DeviceFlowState.CANCELLED

    @pytest.mark.asyncio
    async def test_interruptible_default_sleep(self, store, clock):
        transport = FakeTransport(code_response(interval=30), token_response())
        resolver = CredentialResolver(env={}, cli=FakeCli(), store=store)
        flow = DeviceAuthorizationFlow(transport, resolver, CLIENT_ID, clock=clock)
        await flow.request_code()

        task = asyncio.create_task(flow.poll())
        await asyncio.sleep(0)
        flow.cancel()
        session = await asyncio.wait_for(task, timeout=1)

        assert session.state == DeviceFlowState.CANCELLED


class TestTransitions:
    """Tests for transition enforcement."""

    @pytest.mark.asyncio
    async def test_poll_requires_polling_state(self, make_flow):
        flow, _ = make_flow()

        with pytest.raises(InvalidTransitionError):
            await flow.poll()

    @pytest.mark.asyncio
    async def test_flow_is_single_use(self, make_flow):
        flow, _ = make_flow(token_response())
        await flow.run()

        with pytest.raises(InvalidTransitionError):
            await flow.request_code()

    def test_terminal_states(self):
        assert DeviceFlowState.SUCCESS.is_terminal
        assert DeviceFlowState.TIMED_OUT.is_terminal
        assert not DeviceFlowState.POLLING.is_terminal
