"""
Tests for AuthSession: restore, refresh-on-expiry and the device flow state machine.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from caido_mcp.config import Settings
from caido_mcp.graphql import GraphQLClient
from caido_mcp.models import AuthStatus, Credential
from caido_mcp.session import AuthSession
from caido_mcp.token_store import TokenStore

from conftest import graphql_handler


def _iso(delta):
    return (datetime.now(timezone.utc) + delta).isoformat()


def _flow(request_id="req-1", expires_in=timedelta(minutes=15)):
    return {
        "data": {
            "startAuthenticationFlow": {
                "request": {
                    "id": request_id,
                    "expiresAt": _iso(expires_in),
                    "userCode": "ABC123",
                    "verificationUrl": f"http://caido.test/verify/{request_id}",
                }
            }
        }
    }


REFRESHED = {
    "data": {
        "refreshAuthenticationToken": {
            "token": {"accessToken": "at_new", "refreshToken": "rt_new", "expiresAt": "2030-01-01T00:00:00Z"}
        }
    }
}


def _session(settings, subscriptions, responses=None, calls=None):
    calls = [] if calls is None else calls
    http = httpx.AsyncClient(transport=httpx.MockTransport(graphql_handler(responses or {}, calls)))
    graphql = GraphQLClient(settings, http=http)
    return AuthSession(settings, graphql, TokenStore(settings), subscription_factory=subscriptions)


def _credential(access="at_1", refresh="rt_1", expires_in=timedelta(hours=1)):
    return Credential(access_token=access, refresh_token=refresh, expires_at=datetime.now(timezone.utc) + expires_in)


class TestRestore:
    @pytest.mark.asyncio
    async def test_configured_pat_wins(self, tmp_path, subscriptions):
        settings = Settings(base_url="http://caido.test", auth_token="pat_1", token_dir=tmp_path)
        TokenStore(settings).save(_credential())
        session = _session(settings, subscriptions)
        await session.restore()
        assert session.access_token == "pat_1"
        assert session.received_token is None

    @pytest.mark.asyncio
    async def test_valid_saved_token_is_used_without_remote_call(self, settings, store, subscriptions):
        store.save(_credential())
        calls = []
        session = _session(settings, subscriptions, calls=calls)
        await session.restore()
        assert session.access_token == "at_1"
        assert calls == []

    @pytest.mark.asyncio
    async def test_expired_saved_token_is_refreshed(self, settings, store, subscriptions):
        store.save(_credential(expires_in=timedelta(minutes=-1)))
        session = _session(settings, subscriptions, {"refreshAuthenticationToken": REFRESHED})
        await session.restore()
        assert session.access_token == "at_new"
        assert store.load().access_token == "at_new"

    @pytest.mark.asyncio
    async def test_failed_startup_refresh_leaves_no_token(self, settings, store, subscriptions):
        store.save(_credential(expires_in=timedelta(minutes=-1)))
        session = _session(settings, subscriptions, {"refreshAuthenticationToken": {"errors": [{"message": "bad"}]}})
        await session.restore()
        assert session.access_token is None

    @pytest.mark.asyncio
    async def test_nothing_saved(self, settings, subscriptions):
        session = _session(settings, subscriptions)
        await session.restore()
        assert session.has_token is False


class TestEnsureValidToken:
    @pytest.mark.asyncio
    async def test_fresh_token_makes_no_remote_call(self, settings, subscriptions):
        calls = []
        session = _session(settings, subscriptions, calls=calls)
        session._accept(_credential(expires_in=timedelta(minutes=30)))
        assert await session.ensure_valid_token() is True
        assert calls == []

    @pytest.mark.asyncio
    async def test_expiring_token_is_refreshed_once(self, settings, store, subscriptions):
        calls = []
        session = _session(settings, subscriptions, {"refreshAuthenticationToken": REFRESHED}, calls)
        session._accept(_credential(expires_in=timedelta(minutes=2)))

        assert await session.ensure_valid_token() is True
        assert session.access_token == "at_new"
        assert store.load().refresh_token == "rt_new"
        assert len(calls) == 1
        assert calls[0]["body"]["variables"] == {"refreshToken": "rt_1"}

        assert await session.ensure_valid_token() is True
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_restarting_flow_keeps_expiry_of_held_token(self, settings, subscriptions):
        calls = []
        responses = {"startAuthenticationFlow": _flow(), "refreshAuthenticationToken": REFRESHED}
        session = _session(settings, subscriptions, responses, calls)
        try:
            session._accept(_credential(access="at_old", expires_in=timedelta(minutes=1)))
            await session.start_flow()
            assert session.received_token is None

            assert await session.ensure_valid_token() is True
            assert session.access_token == "at_new"
            ops = [c["body"]["operationName"] for c in calls]
            assert ops == ["StartAuthenticationFlow", "RefreshAuthenticationToken"]
            assert calls[1]["body"]["variables"] == {"refreshToken": "rt_1"}
        finally:
            await session.close()

    @pytest.mark.asyncio
    async def test_saved_refresh_token_is_used_when_nothing_in_memory(self, settings, store, subscriptions):
        store.save(_credential(expires_in=timedelta(minutes=-10)))
        session = _session(settings, subscriptions, {"refreshAuthenticationToken": REFRESHED})
        assert await session.ensure_valid_token() is True
        assert session.access_token == "at_new"

    @pytest.mark.asyncio
    async def test_failed_refresh_clears_token(self, settings, subscriptions):
        session = _session(settings, subscriptions, {"refreshAuthenticationToken": (500, {})})
        session._accept(_credential(expires_in=timedelta(minutes=1)))
        assert await session.ensure_valid_token() is False
        assert session.has_token is False
        assert session.received_token is None

    @pytest.mark.asyncio
    async def test_pat_without_expiry_is_kept(self, tmp_path, subscriptions):
        settings = Settings(base_url="http://caido.test", auth_token="pat_1", token_dir=tmp_path)
        calls = []
        session = _session(settings, subscriptions, calls=calls)
        assert await session.ensure_valid_token() is True
        assert session.access_token == "pat_1"
        assert calls == []

    @pytest.mark.asyncio
    async def test_no_token_at_all(self, settings, subscriptions):
        session = _session(settings, subscriptions)
        assert await session.ensure_valid_token() is False


class TestDeviceFlow:
    @pytest.mark.asyncio
    async def test_no_pending_request(self, settings, subscriptions):
        session = _session(settings, subscriptions)
        assert session.check_state().status == AuthStatus.none

    @pytest.mark.asyncio
    async def test_waiting_then_ready(self, settings, store, subscriptions):
        session = _session(settings, subscriptions, {"startAuthenticationFlow": _flow()})
        try:
            request = await session.start_flow()
            assert request.id == "req-1"
            state = session.check_state()
            assert state.status == AuthStatus.waiting
            assert state.verification_url == "http://caido.test/verify/req-1"

            subscriptions.instances[0].emit_token({"accessToken": "at_flow", "refreshToken": "rt_flow"})
            state = session.check_state()
            assert state.ready
            assert session.access_token == "at_flow"
            assert session.pending is None
            assert store.load().access_token == "at_flow"
        finally:
            await session.close()

    @pytest.mark.asyncio
    async def test_listener_gets_request_and_generation(self, settings, subscriptions):
        session = _session(settings, subscriptions, {"startAuthenticationFlow": _flow()})
        try:
            await session.start_flow()
            listener = subscriptions.instances[0]
            assert listener.request_id == "req-1"
            assert listener.generation == session.generation == 1
        finally:
            await session.close()

    @pytest.mark.asyncio
    async def test_superseded_flow_token_is_ignored(self, settings, subscriptions):
        session = _session(settings, subscriptions, {"startAuthenticationFlow": _flow()})
        try:
            await session.start_flow()
            await session.start_flow()
            first, second = subscriptions.instances
            assert first.generation == 1 and second.generation == 2

            first.emit_token({"accessToken": "at_stale"})
            assert session.check_state().status == AuthStatus.waiting
            assert session.access_token is None

            second.emit_token({"accessToken": "at_current"})
            assert session.check_state().ready
            assert session.access_token == "at_current"
        finally:
            await session.close()

    @pytest.mark.asyncio
    async def test_late_token_for_earlier_request_id_is_ignored(self, settings, subscriptions):
        flows = iter([_flow("req-old"), _flow("req-new")])

        def handler(request):
            return httpx.Response(200, json=next(flows))

        graphql = GraphQLClient(settings, http=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        session = AuthSession(settings, graphql, TokenStore(settings), subscription_factory=subscriptions)
        try:
            await session.start_flow()
            await session.start_flow()
            old, new = subscriptions.instances
            assert (old.request_id, new.request_id) == ("req-old", "req-new")

            old.emit_token({"accessToken": "at_old"})
            state = session.check_state()
            assert state.status == AuthStatus.waiting
            assert state.verification_url.endswith("/req-new")
            assert session.access_token is None
        finally:
            await session.close()

    @pytest.mark.asyncio
    async def test_restart_cancels_previous_listener(self, settings, subscriptions):
        session = _session(settings, subscriptions, {"startAuthenticationFlow": _flow()})
        try:
            await session.start_flow()
            first_task = session._listener_task
            await asyncio.sleep(0)
            await session.start_flow()
            with pytest.raises(asyncio.CancelledError):
                await first_task
            assert subscriptions.instances[0].cancelled is True
        finally:
            await session.close()

    @pytest.mark.asyncio
    async def test_subscription_error_keeps_request_pending(self, settings, subscriptions):
        session = _session(settings, subscriptions, {"startAuthenticationFlow": _flow()})
        try:
            await session.start_flow()
            subscriptions.instances[0].emit_error("socket closed")
            assert session.check_state().status == AuthStatus.waiting
        finally:
            await session.close()

    @pytest.mark.asyncio
    async def test_request_expires_locally(self, settings, subscriptions):
        session = _session(settings, subscriptions, {"startAuthenticationFlow": _flow(expires_in=timedelta(minutes=-1))})
        try:
            await session.start_flow()
            state = session.check_state()
            assert state.status == AuthStatus.expired
            assert state.verification_url == "http://caido.test/verify/req-1"
            assert session.check_state().status == AuthStatus.none
        finally:
            await session.close()

    @pytest.mark.asyncio
    async def test_late_token_after_expiry_is_ignored(self, settings, subscriptions):
        session = _session(settings, subscriptions, {"startAuthenticationFlow": _flow(expires_in=timedelta(minutes=-1))})
        try:
            await session.start_flow()
            listener = subscriptions.instances[0]
            assert session.check_state().status == AuthStatus.expired
            listener.emit_token({"accessToken": "at_late"})
            assert session.check_state().status == AuthStatus.none
            assert session.access_token is None
        finally:
            await session.close()


class TestReconfigure:
    @pytest.mark.asyncio
    async def test_switching_endpoint_drops_state(self, settings, subscriptions):
        session = _session(settings, subscriptions, {"startAuthenticationFlow": _flow()})
        try:
            session.access_token = "at_1"
            await session.start_flow()
            await session.reconfigure(base_url="http://other:8080/graphql/")
            assert settings.base_url == "http://other:8080"
            assert session.pending is None
            assert session.access_token is None
        finally:
            await session.close()

    @pytest.mark.asyncio
    async def test_same_endpoint_keeps_token(self, settings, subscriptions):
        session = _session(settings, subscriptions)
        session.access_token = "at_1"
        await session.reconfigure(base_url="http://caido.test/graphql")
        assert session.access_token == "at_1"

    @pytest.mark.asyncio
    async def test_pat_is_installed(self, settings, subscriptions):
        session = _session(settings, subscriptions)
        await session.reconfigure(base_url="http://other:8080", pat="pat_2")
        assert session.access_token == "pat_2"
        assert settings.auth_token == "pat_2"

    @pytest.mark.asyncio
    async def test_pat_replaces_expiring_oauth_token(self, settings, subscriptions):
        calls = []
        session = _session(settings, subscriptions, calls=calls)
        session._accept(_credential(expires_in=timedelta(minutes=1)))
        await session.reconfigure(pat="pat_2")
        assert session.token_expires_at is None
        assert await session.ensure_valid_token() is True
        assert session.access_token == "pat_2"
        assert calls == []

    @pytest.mark.asyncio
    async def test_switch_restores_token_saved_for_new_endpoint(self, tmp_path, subscriptions):
        other = Settings(base_url="http://other:8080", token_dir=tmp_path)
        TokenStore(other).save(_credential(access="at_other"))
        settings = Settings(base_url="http://caido.test", token_dir=tmp_path)
        session = _session(settings, subscriptions)
        session.access_token = "at_1"
        await session.reconfigure(base_url="http://other:8080")
        assert session.access_token == "at_other"
