"""Summary: Tests for the client session state machine.

Importance: Ensures state transitions, refresh scheduling, and concurrency guards behave like a UI expects.
Alternatives: Test the state machine only through a real browser.
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import Callable

import httpx
import pytest

from bungieauth.client import (
    ClientOptions,
    ClientSessionState,
    Deauthorized,
    FetchFailed,
    FetchStarted,
    HttpxTransport,
    InvalidSessionResponse,
    SessionClient,
    SessionReceived,
    SessionStore,
    Signal,
    TransportResponse,
    parse_session_response,
    transition,
)
from bungieauth.models import AnonymousSession, AuthorizedSession, MembershipSession


NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class _Timer:
    def __init__(self, delay: float, callback: Callable[[], None]) -> None:
        self.delay = delay
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class _Scheduler:
    """Summary: Records timers instead of running them."""

    def __init__(self) -> None:
        self.timers: list[_Timer] = []

    def call_later(self, delay: float, callback: Callable[[], None]) -> _Timer:
        timer = _Timer(delay, callback)
        self.timers.append(timer)
        return timer

    @property
    def active(self) -> list[_Timer]:
        return [timer for timer in self.timers if not timer.cancelled]


class _Transport:
    """Summary: Scripted transport that records requests."""

    def __init__(self, *responses: TransportResponse | Exception) -> None:
        self.responses = list(responses)
        self.calls: list[tuple[str, str]] = []
        self.gate: asyncio.Event | None = None

    async def __call__(self, method: str, path: str) -> TransportResponse:
        self.calls.append((method, path))
        if self.gate is not None:
            await self.gate.wait()
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


def _json(payload: object, status: int = 200) -> TransportResponse:
    return TransportResponse(status=status, content_type="application/json", body=json.dumps(payload))


def _authorized_payload(expires_at: datetime) -> dict[str, object]:
    return {
        "status": "authorized",
        "data": {
            "bungieMembershipId": "42",
            "accessToken": "access",
            "accessTokenExpiresAt": expires_at.isoformat().replace("+00:00", "Z"),
        },
    }


def _authorized(expires_at: datetime) -> AuthorizedSession:
    return AuthorizedSession(membership_id="42", access_token="access", access_expires_at=expires_at)


def _client(
    transport: _Transport,
    clock: _Clock | None = None,
    initial_session=None,
    **options: object,
) -> tuple[SessionClient, _Scheduler]:
    scheduler = _Scheduler()
    client = SessionClient(
        transport,
        options=ClientOptions(**options),
        initial_session=initial_session,
        scheduler=scheduler,
        clock=clock or _Clock(NOW),
    )
    return client, scheduler


def test_transition_pending_fetch_keeps_pending() -> None:
    state = transition(ClientSessionState(), FetchStarted())
    assert state.status == "pending"
    assert state.is_pending
    assert state.is_fetching


def test_transition_authorized_clears_error() -> None:
    previous = ClientSessionState(status="unauthorized", is_pending=False, error="network")
    state = transition(previous, SessionReceived(_authorized(NOW)))
    assert state.status == "authorized"
    assert not state.is_error
    assert state.data == _authorized(NOW)


def test_transition_stale_keeps_membership() -> None:
    state = transition(ClientSessionState(), SessionReceived(MembershipSession("stale", "42")))
    assert state.status == "stale"
    assert state.membership_id == "42"
    assert not state.is_error


def test_transition_disabled_is_unavailable() -> None:
    state = transition(ClientSessionState(), SessionReceived(MembershipSession("disabled", "42")))
    assert state.status == "unavailable"
    assert state.error == "provider-offline"
    assert state.membership_id == "42"


@pytest.mark.parametrize("status", ["unauthorized", "expired"])
def test_transition_unauthorized_drops_data(status: str) -> None:
    previous = ClientSessionState(status="authorized", data=_authorized(NOW), is_pending=False)
    state = transition(previous, SessionReceived(AnonymousSession(status)))
    assert state.status == "unauthorized"
    assert state.data is None


def test_transition_server_error_keeps_known_status() -> None:
    """Summary: Verify a server error never downgrades an authorized session.

    Importance: A transient 500 must not log the user out of the UI.
    Alternatives: Treat every error as unauthorized.
    """

    previous = ClientSessionState(
        status="authorized", data=_authorized(NOW), is_pending=False, is_fetching=True
    )
    state = transition(previous, SessionReceived(AnonymousSession("error")))
    assert state.status == "authorized"
    assert state.data == _authorized(NOW)
    assert state.is_error
    assert state.error == "server"
    assert not state.is_fetching


def test_transition_error_from_pending_is_unauthorized() -> None:
    state = transition(ClientSessionState(is_fetching=True), FetchFailed("client"))
    assert state.status == "unauthorized"
    assert state.data is None
    assert state.error == "client"
    assert not state.is_pending


def test_transition_deauthorized_resets() -> None:
    previous = ClientSessionState(status="authorized", data=_authorized(NOW), is_pending=False)
    state = transition(previous, Deauthorized())
    assert state == ClientSessionState(status="unauthorized", is_pending=False)


def test_store_notifies_subscribers_until_unsubscribed() -> None:
    store = SessionStore()
    seen: list[ClientSessionState] = []
    unsubscribe = store.subscribe(seen.append)
    store.dispatch(FetchStarted())
    unsubscribe()
    store.dispatch(SessionReceived(AnonymousSession("unauthorized")))
    assert len(seen) == 1
    assert store.get_state().status == "unauthorized"


def test_authorized_session_schedules_refresh_before_expiry() -> None:
    """Summary: Verify the refresh timer fires time_before_refresh ahead of expiry.

    Importance: The access token is renewed before the UI needs it.
    Alternatives: Refresh only after a request fails.
    """

    async def scenario() -> _Scheduler:
        client, scheduler = _client(
            _Transport(_json({"status": "unauthorized", "data": None})),
            initial_session=_authorized(NOW + timedelta(milliseconds=40000)),
            time_before_refresh=30.0,
        )
        await client.start()
        return scheduler

    scheduler = asyncio.run(scenario())
    assert len(scheduler.active) == 1
    assert scheduler.active[0].delay == pytest.approx(10.0)


def test_expired_authorized_session_refreshes_almost_immediately() -> None:
    client, _scheduler = _client(_Transport(_json({})), time_before_refresh=30.0)
    state = ClientSessionState(status="authorized", data=_authorized(NOW - timedelta(minutes=5)), is_pending=False)
    assert client.next_refresh_delay(state) == pytest.approx(0.001)


def test_unavailable_and_unauthorized_delays() -> None:
    client, _scheduler = _client(_Transport(_json({})))
    unavailable = transition(ClientSessionState(), SessionReceived(MembershipSession("disabled", "42")))
    assert client.next_refresh_delay(unavailable) == 300.0
    assert client.next_refresh_delay(ClientSessionState()) is None
    assert client.next_refresh_delay(ClientSessionState(status="unauthorized", is_pending=False)) is None


def test_start_fetches_pending_session() -> None:
    async def scenario() -> tuple[_Transport, SessionClient, _Scheduler]:
        transport = _Transport(_json(_authorized_payload(NOW + timedelta(hours=1))))
        client, scheduler = _client(transport)
        await client.start()
        return transport, client, scheduler

    transport, client, scheduler = asyncio.run(scenario())
    assert transport.calls == [("GET", "/api/auth/session")]
    assert client.state.status == "authorized"
    assert not client.state.is_fetching
    assert scheduler.active[0].delay == pytest.approx(3570.0)


def test_concurrent_fetches_issue_one_request() -> None:
    """Summary: Verify overlapping fetch triggers collapse into a single request.

    Importance: Prevents duplicate refresh calls from racing each other.
    Alternatives: Queue every trigger.
    """

    async def scenario() -> tuple[_Transport, SessionClient]:
        transport = _Transport(_json(_authorized_payload(NOW + timedelta(hours=1))))
        transport.gate = asyncio.Event()
        client, _scheduler = _client(transport)
        first = asyncio.ensure_future(client.fetch_session())
        await asyncio.sleep(0)
        assert client.state.is_fetching
        await client.fetch_session()
        await client.fetch_session(force=True)
        transport.gate.set()
        await first
        return transport, client

    transport, client = asyncio.run(scenario())
    assert transport.calls == [("GET", "/api/auth/session")]
    assert client.state.status == "authorized"


def test_forced_fetch_adds_query_flag() -> None:
    async def scenario() -> _Transport:
        transport = _Transport(_json(_authorized_payload(NOW + timedelta(hours=1))))
        client, _scheduler = _client(transport)
        await client.fetch_session(force=True)
        return transport

    assert asyncio.run(scenario()).calls == [("GET", "/api/auth/session?force=true")]


def test_transport_failure_offline_is_network_error() -> None:
    errors: list[tuple[Exception, str]] = []

    async def scenario() -> SessionClient:
        transport = _Transport(ConnectionError("no route"))
        client = SessionClient(
            transport,
            initial_session=_authorized(NOW + timedelta(hours=1)),
            scheduler=_Scheduler(),
            clock=_Clock(NOW),
            online=Signal(False),
            on_error=lambda exc, kind: errors.append((exc, kind)),
        )
        await client.fetch_session()
        return client

    client = asyncio.run(scenario())
    assert client.state.status == "authorized"
    assert client.state.error == "network"
    assert client.state.data == _authorized(NOW + timedelta(hours=1))
    assert errors[0][1] == "network"


def test_transport_failure_online_is_client_error() -> None:
    async def scenario() -> SessionClient:
        client, _scheduler = _client(_Transport(RuntimeError("boom")))
        await client.fetch_session()
        return client

    client = asyncio.run(scenario())
    assert client.state.status == "unauthorized"
    assert client.state.error == "client"


def test_non_json_server_failure_is_server_error() -> None:
    async def scenario() -> SessionClient:
        transport = _Transport(TransportResponse(status=502, content_type="text/html", body="<h1>502</h1>"))
        client, _scheduler = _client(transport, initial_session=MembershipSession("stale", "42"))
        await client.fetch_session()
        return client

    client = asyncio.run(scenario())
    assert client.state.status == "stale"
    assert client.state.membership_id == "42"
    assert client.state.error == "server"


def test_parse_session_response_rejects_bad_payloads() -> None:
    with pytest.raises(InvalidSessionResponse):
        parse_session_response(TransportResponse(status=200, content_type="text/plain", body="{}"))
    with pytest.raises(InvalidSessionResponse):
        parse_session_response(_json({"status": "authorized", "data": {"bungieMembershipId": "42"}}))
    with pytest.raises(InvalidSessionResponse):
        parse_session_response(_json({"status": "sideways", "data": None}))
    assert parse_session_response(_json({"status": "expired", "data": None})) == AnonymousSession("expired")


def test_hidden_tab_suppresses_timer_without_background_refresh() -> None:
    async def scenario() -> tuple[SessionClient, _Scheduler, _Transport]:
        transport = _Transport(_json(_authorized_payload(NOW + timedelta(hours=1))))
        client, scheduler = _client(
            transport,
            initial_session=_authorized(NOW + timedelta(hours=1)),
            refresh_in_background=False,
        )
        await client.start()
        assert len(scheduler.active) == 1
        client.visible.set(False)
        assert scheduler.active == []
        client.visible.set(True)
        await asyncio.gather(*client._tasks)
        return client, scheduler, transport

    client, scheduler, transport = asyncio.run(scenario())
    assert transport.calls == [("GET", "/api/auth/session")]
    assert len(scheduler.active) == 1


def test_offline_suppresses_timer_and_reconnect_fetches() -> None:
    async def scenario() -> tuple[_Scheduler, _Transport]:
        transport = _Transport(_json(_authorized_payload(NOW + timedelta(hours=1))))
        client, scheduler = _client(transport, initial_session=_authorized(NOW + timedelta(hours=1)))
        await client.start()
        client.online.set(False)
        assert scheduler.active == []
        client.online.set(True)
        await asyncio.gather(*client._tasks)
        return scheduler, transport

    scheduler, transport = asyncio.run(scenario())
    assert transport.calls == [("GET", "/api/auth/session")]
    assert len(scheduler.active) == 1


def test_rapid_signals_respect_rate_limit() -> None:
    """Summary: Verify reconnect storms cannot trigger back-to-back fetches.

    Importance: Rapid visibility or connectivity flapping must not flood the server.
    Alternatives: Fetch on every signal.
    """

    async def scenario() -> tuple[_Scheduler, _Transport]:
        clock = _Clock(NOW)
        transport = _Transport(_json(_authorized_payload(NOW + timedelta(hours=1))))
        client, scheduler = _client(
            transport, clock=clock, initial_session=_authorized(NOW + timedelta(hours=1))
        )
        await client.start()
        for _ in range(3):
            client.online.set(False)
            client.online.set(True)
            await asyncio.gather(*client._tasks)
            clock.now += timedelta(seconds=1)
        return scheduler, transport

    scheduler, transport = asyncio.run(scenario())
    assert len(transport.calls) == 1


def test_stale_session_refetch_is_rate_limited() -> None:
    async def scenario() -> _Scheduler:
        transport = _Transport(_json({"status": "stale", "data": {"bungieMembershipId": "42"}}))
        client, scheduler = _client(transport)
        await client.start()
        return scheduler

    scheduler = asyncio.run(scenario())
    assert scheduler.active[0].delay == pytest.approx(10.0)


def test_timer_triggers_forced_fetch() -> None:
    async def scenario() -> _Transport:
        transport = _Transport(_json(_authorized_payload(NOW + timedelta(hours=1))))
        client, scheduler = _client(transport, initial_session=_authorized(NOW + timedelta(minutes=1)))
        await client.start()
        scheduler.active[0].callback()
        await asyncio.gather(*client._tasks)
        return transport

    assert asyncio.run(scenario()).calls == [("GET", "/api/auth/session?force=true")]


def test_automatic_refresh_can_be_disabled() -> None:
    async def scenario() -> _Scheduler:
        client, scheduler = _client(
            _Transport(_json({})),
            initial_session=_authorized(NOW + timedelta(hours=1)),
            enable_automatic_refresh=False,
        )
        await client.start()
        return scheduler

    assert asyncio.run(scenario()).active == []


def test_deauthorize_success_and_failure() -> None:
    async def scenario() -> tuple[ClientSessionState, ClientSessionState, list[tuple[str, str]]]:
        transport = _Transport(
            TransportResponse(status=500, content_type="text/plain", body="oops"),
            _json({"status": "unauthorized", "data": None}),
        )
        client, _scheduler = _client(transport, initial_session=_authorized(NOW + timedelta(hours=1)))
        await client.deauthorize()
        failed = client.state
        await client.deauthorize()
        return failed, client.state, transport.calls

    failed, succeeded, calls = asyncio.run(scenario())
    assert failed.status == "authorized"
    assert failed.error == "server"
    assert failed.data is not None
    assert succeeded == ClientSessionState(status="unauthorized", is_pending=False)
    assert calls == [("POST", "/api/auth/deauthorize"), ("POST", "/api/auth/deauthorize")]


def test_close_stops_applying_updates() -> None:
    async def scenario() -> SessionClient:
        transport = _Transport(_json(_authorized_payload(NOW + timedelta(hours=1))))
        transport.gate = asyncio.Event()
        client, scheduler = _client(transport)
        task = asyncio.ensure_future(client.start())
        await asyncio.sleep(0)
        client.close()
        transport.gate.set()
        await task
        assert scheduler.active == []
        return client

    client = asyncio.run(scenario())
    assert client.state.status == "pending"
    assert client.state.is_fetching


def test_reconnect_inside_rate_limit_window_defers_fetch() -> None:
    """Summary: Verify a reconnect shortly after a failed fetch is deferred rather than lost.

    Importance: An unauthorized client has no refresh timer, so only the reconnect can recover it.
    Alternatives: Wait for the user to reload the page.
    """

    async def scenario() -> tuple[SessionClient, _Scheduler, _Transport, list[float]]:
        clock = _Clock(NOW)
        transport = _Transport(OSError("offline"), _json(_authorized_payload(NOW + timedelta(hours=1))))
        scheduler = _Scheduler()
        client = SessionClient(transport, scheduler=scheduler, clock=clock, online=Signal(False))
        await client.start()
        assert client.state.status == "unauthorized"
        assert client.state.error == "network"

        clock.now += timedelta(seconds=3)
        client.online.set(True)
        assert transport.calls == [("GET", "/api/auth/session")]
        delays = [timer.delay for timer in scheduler.active]

        clock.now += timedelta(seconds=7)
        scheduler.active[0].callback()
        await asyncio.gather(*client._tasks)
        return client, scheduler, transport, delays

    client, _scheduler, transport, delays = asyncio.run(scenario())
    assert delays == [pytest.approx(7.0)]
    assert transport.calls == [("GET", "/api/auth/session"), ("GET", "/api/auth/session")]
    assert client.state.status == "authorized"
    assert not client.state.is_error


def test_hidden_tab_reconnect_without_background_refresh_stays_idle() -> None:
    async def scenario() -> tuple[_Scheduler, _Transport]:
        transport = _Transport(_json(_authorized_payload(NOW + timedelta(hours=1))))
        client, scheduler = _client(
            transport,
            initial_session=_authorized(NOW + timedelta(hours=1)),
            refresh_in_background=False,
        )
        await client.start()
        client.visible.set(False)
        client.online.set(False)
        client.online.set(True)
        await asyncio.gather(*client._tasks)
        return scheduler, transport

    scheduler, transport = asyncio.run(scenario())
    assert transport.calls == []
    assert scheduler.active == []


class _ClosingTransport(_Transport):
    def __init__(self, *responses: TransportResponse | Exception) -> None:
        super().__init__(*responses)
        self.closed = False

    async def aclose(self) -> None:
        self.closed = True


def test_aclose_closes_transport() -> None:
    async def scenario() -> tuple[SessionClient, _Scheduler, _ClosingTransport]:
        transport = _ClosingTransport(_json(_authorized_payload(NOW + timedelta(hours=1))))
        client, scheduler = _client(transport, initial_session=_authorized(NOW + timedelta(hours=1)))
        await client.start()
        await client.aclose()
        return client, scheduler, transport

    _session_client, scheduler, transport = asyncio.run(scenario())
    assert transport.closed
    assert scheduler.active == []


def test_httpx_transport_closes_only_its_own_client() -> None:
    async def scenario() -> tuple[bool, bool]:
        shared = httpx.AsyncClient(base_url="http://app")
        await HttpxTransport("http://app", client=shared).aclose()
        owned = HttpxTransport("http://app")
        await owned.aclose()
        shared_closed = shared.is_closed
        await shared.aclose()
        return shared_closed, owned._client.is_closed

    shared_closed, owned_closed = asyncio.run(scenario())
    assert not shared_closed
    assert owned_closed
