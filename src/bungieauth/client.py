"""Summary: Client-side session state machine.

Importance: Keeps a UI's view of the session in step with the server, schedules refreshes, and never
drops the last known session on a transient error.
Alternatives: Poll the session endpoint on a fixed interval.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Awaitable, Callable, Literal, Protocol, Union

import httpx
from pydantic import ValidationError

from bungieauth.models import (
    AuthorizedSession,
    MembershipSession,
    SessionPayload,
    SessionView,
    utc_now,
)


logger = logging.getLogger(__name__)

ClientStatus = Literal["pending", "stale", "authorized", "unauthorized", "unavailable"]
ClientError = Literal["network", "client", "server", "provider-offline"]
ClientData = Union[AuthorizedSession, MembershipSession, None]

MIN_TIMER_DELAY = 0.001


@dataclass(frozen=True)
class ClientSessionState:
    """Summary: Session state as seen by a UI.

    Importance: `data` survives transient errors so the UI can show the last known session with an error badge.
    Alternatives: Reset to an empty state on every failure.
    """

    status: ClientStatus = "pending"
    data: ClientData = None
    is_pending: bool = True
    is_fetching: bool = False
    error: ClientError | None = None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    @property
    def membership_id(self) -> str | None:
        return self.data.membership_id if self.data is not None else None


PENDING_STATE = ClientSessionState()
UNAUTHORIZED_STATE = ClientSessionState(status="unauthorized", is_pending=False)


@dataclass(frozen=True)
class FetchStarted:
    pass


@dataclass(frozen=True)
class SessionReceived:
    session: SessionView


@dataclass(frozen=True)
class FetchFailed:
    error: Literal["network", "client", "server"]


@dataclass(frozen=True)
class Deauthorized:
    pass


SessionEvent = Union[FetchStarted, SessionReceived, FetchFailed, Deauthorized]


def transition(state: ClientSessionState, event: SessionEvent) -> ClientSessionState:
    """Summary: Apply one event to the client session state.

    Importance: Holds the whole transition table in a pure function that tests can drive directly.
    Alternatives: Spread state updates across network callbacks.
    """

    if isinstance(event, FetchStarted):
        return replace(state, is_fetching=True)
    if isinstance(event, Deauthorized):
        return UNAUTHORIZED_STATE
    if isinstance(event, FetchFailed):
        return _error_state(state, event.error)
    if isinstance(event, SessionReceived):
        return _state_from_server(state, event.session)
    raise TypeError(f"Unknown session event: {event!r}")


def _state_from_server(previous: ClientSessionState, session: SessionView) -> ClientSessionState:
    if isinstance(session, AuthorizedSession):
        return ClientSessionState(status="authorized", data=session, is_pending=False)
    if isinstance(session, MembershipSession):
        if session.status == "disabled":
            return ClientSessionState(
                status="unavailable", data=session, is_pending=False, error="provider-offline"
            )
        return ClientSessionState(status="stale", data=session, is_pending=False)
    if session.status == "error":
        return _error_state(previous, "server")
    return UNAUTHORIZED_STATE


def _error_state(previous: ClientSessionState, error: ClientError) -> ClientSessionState:
    # A known status is never downgraded by a transient failure.
    if previous.is_pending:
        return ClientSessionState(status="unauthorized", is_pending=False, error=error)
    return replace(previous, is_pending=False, is_fetching=False, error=error)


Listener = Callable[[ClientSessionState], None]


class SessionStore:
    """Summary: Observable container for the client session state.

    Importance: Gives non-UI code the get/subscribe/dispatch contract that a reactive UI gets implicitly.
    Alternatives: Expose a mutable attribute and let callers poll.
    """

    def __init__(self, initial: ClientSessionState = PENDING_STATE) -> None:
        self._state = initial
        self._listeners: list[Listener] = []

    def get_state(self) -> ClientSessionState:
        return self._state

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def dispatch(self, event: SessionEvent) -> ClientSessionState:
        new_state = transition(self._state, event)
        if new_state != self._state:
            self._state = new_state
            for listener in list(self._listeners):
                listener(new_state)
        return new_state


class Signal:
    """Summary: Boolean signal source such as connectivity or page visibility.

    Importance: Lets tests simulate going offline or hidden without a browser.
    Alternatives: Read global browser state directly.
    """

    def __init__(self, value: bool = True) -> None:
        self.value = value
        self._listeners: list[Callable[[bool], None]] = []

    def subscribe(self, listener: Callable[[bool], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def set(self, value: bool) -> None:
        if value == self.value:
            return
        self.value = value
        for listener in list(self._listeners):
            listener(value)


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class AsyncioScheduler:
    """Summary: Scheduler backed by the running asyncio event loop."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        return asyncio.get_running_loop().call_later(delay, callback)


@dataclass(frozen=True)
class TransportResponse:
    status: int
    content_type: str
    body: str


SessionTransport = Callable[[str, str], Awaitable[TransportResponse]]


class HttpxTransport:
    """Summary: Session transport using an httpx async client.

    Importance: Sends the session and deauthorize calls with the caller's cookies.
    Alternatives: Use aiohttp or a browser fetch bridge.
    """

    def __init__(self, base_url: str, client: httpx.AsyncClient | None = None) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url)

    async def __call__(self, method: str, path: str) -> TransportResponse:
        response = await self._client.request(method, path)
        return TransportResponse(
            status=response.status_code,
            content_type=response.headers.get("content-type", ""),
            body=response.text,
        )

    async def aclose(self) -> None:
        """Summary: Close the underlying client if this transport created it."""

        if self._owns_client:
            await self._client.aclose()


@dataclass(frozen=True)
class ClientOptions:
    """Summary: Tuning knobs for automatic refresh.

    Importance: Lets deployments trade freshness against request volume.
    Alternatives: Hardcode refresh timing.
    """

    session_path: str = "/api/auth/session"
    deauthorize_path: str = "/api/auth/deauthorize"
    enable_automatic_refresh: bool = True
    refresh_in_background: bool = True
    time_before_refresh: float = 30.0
    unavailable_backoff: float = 300.0
    min_refresh_interval: float = 10.0


class InvalidSessionResponse(ValueError):
    """Summary: Session endpoint answered with something other than a session payload."""


class SessionClient:
    """Summary: Drives the session store from the network, timers, and browser signals.

    Importance: Guarantees a single in-flight fetch and a single pending timer at any time.
    Alternatives: Let each UI component fetch the session itself.
    """

    def __init__(
        self,
        transport: SessionTransport,
        options: ClientOptions | None = None,
        initial_session: SessionView | None = None,
        scheduler: Scheduler | None = None,
        clock: Callable[[], datetime] = utc_now,
        online: Signal | None = None,
        visible: Signal | None = None,
        on_error: Callable[[Exception, str], None] | None = None,
    ) -> None:
        self._transport = transport
        self.options = options or ClientOptions()
        self._scheduler = scheduler or AsyncioScheduler()
        self._clock = clock
        self.online = online or Signal(True)
        self.visible = visible or Signal(True)
        self._on_error = on_error
        initial = PENDING_STATE
        if initial_session is not None:
            initial = transition(PENDING_STATE, SessionReceived(initial_session))
        self.store = SessionStore(initial)
        self._is_fetching = False
        self._is_deauthorizing = False
        self._closed = False
        self._started = False
        self._timer: TimerHandle | None = None
        self._last_fetch_at: datetime | None = None
        self._tasks: set[asyncio.Task] = set()
        self._unsubscribers: list[Callable[[], None]] = []

    @property
    def state(self) -> ClientSessionState:
        return self.store.get_state()

    async def start(self) -> None:
        """Summary: Mount the client: subscribe to signals and load the session if needed.

        Importance: A pending session is fetched immediately; a seeded one only schedules its refresh.
        Alternatives: Fetch unconditionally on mount.
        """

        if self._started:
            return
        self._started = True
        self._unsubscribers = [
            self.store.subscribe(lambda _state: self._reschedule()),
            self.online.subscribe(self._on_online_change),
            self.visible.subscribe(self._on_visibility_change),
        ]
        if self.state.status == "pending":
            await self.fetch_session(force=False)
        else:
            self._reschedule()

    def close(self) -> None:
        """Summary: Stop applying updates and cancel the pending timer.

        Importance: In-flight requests are left to finish but their results are ignored.
        Alternatives: Abort in-flight requests.
        """

        self._closed = True
        self._cancel_timer()
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    async def aclose(self) -> None:
        """Summary: Close the client and release the transport's connections.

        Importance: An HttpxTransport built without a caller-supplied client owns an httpx.AsyncClient.
        Alternatives: Leave transport cleanup to the caller.
        """

        self.close()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        transport_aclose = getattr(self._transport, "aclose", None)
        if transport_aclose is not None:
            await transport_aclose()

    async def fetch_session(self, force: bool = False) -> None:
        """Summary: Fetch the server-derived session and apply it.

        Importance: A call made while another fetch is in flight is dropped; the running fetch reschedules afterwards.
        Alternatives: Queue calls or reject them with an error.
        """

        if self._is_fetching or self._closed:
            return
        self._is_fetching = True
        self._last_fetch_at = self._clock()
        path = self.options.session_path + ("?force=true" if force else "")
        try:
            self._dispatch(FetchStarted())
            try:
                response = await self._transport("GET", path)
            except Exception as exc:
                self._fail(exc, self._classify_transport_failure())
                return
            try:
                session = parse_session_response(response)
            except InvalidSessionResponse as exc:
                self._fail(exc, "server" if response.status >= 500 else "client")
                return
            self._dispatch(SessionReceived(session))
        finally:
            self._is_fetching = False

    async def deauthorize(self) -> None:
        """Summary: End the session on the server and reset to unauthorized.

        Importance: Failures keep the existing data so a blip does not log the user out locally only.
        Alternatives: Clear local state before the server confirms.
        """

        if self._is_deauthorizing or self._closed:
            return
        self._is_deauthorizing = True
        try:
            self._dispatch(FetchStarted())
            try:
                response = await self._transport("POST", self.options.deauthorize_path)
            except Exception as exc:
                self._fail(exc, self._classify_transport_failure())
                return
            if response.status >= 400:
                error = InvalidSessionResponse(f"Deauthorize failed with status {response.status}")
                self._fail(error, "server" if response.status >= 500 else "client")
                return
            self._dispatch(Deauthorized())
        finally:
            self._is_deauthorizing = False

    def refresh(self, force: bool = True) -> asyncio.Task:
        """Summary: Trigger a fetch without awaiting it."""

        return self._spawn(self.fetch_session(force=force))

    def next_refresh_delay(self, state: ClientSessionState | None = None) -> float | None:
        """Summary: Seconds until the next automatic refresh, or None when none is due.

        Importance: Authorized sessions refresh shortly before the access token expires.
        Alternatives: Refresh on a fixed interval.
        """

        current = state or self.state
        if current.status == "authorized" and isinstance(current.data, AuthorizedSession):
            remaining = (current.data.access_expires_at - self._clock()).total_seconds()
            return max(MIN_TIMER_DELAY, remaining - self.options.time_before_refresh)
        if current.status == "unavailable":
            return self.options.unavailable_backoff
        if current.status == "stale":
            return MIN_TIMER_DELAY
        return None

    def _dispatch(self, event: SessionEvent) -> None:
        if self._closed:
            return
        self.store.dispatch(event)

    def _fail(self, exc: Exception, error: Literal["network", "client", "server"]) -> None:
        logger.info("Session request failed (%s): %s", error, exc)
        if self._on_error is not None and not self._closed:
            self._on_error(exc, error)
        self._dispatch(FetchFailed(error))

    def _classify_transport_failure(self) -> Literal["network", "client"]:
        return "network" if not self.online.value else "client"

    def _can_schedule(self) -> bool:
        if self._closed or not self.options.enable_automatic_refresh:
            return False
        if not self.online.value:
            return False
        return self.visible.value or self.options.refresh_in_background

    def _reschedule(self) -> None:
        self._cancel_timer()
        state = self.state
        if state.is_fetching or not self._can_schedule():
            return
        delay = self.next_refresh_delay(state)
        if delay is None:
            return
        delay = max(delay, self._rate_limit_remaining())
        self._timer = self._scheduler.call_later(delay, self._on_timer)

    def _rate_limit_remaining(self) -> float:
        if self._last_fetch_at is None:
            return 0.0
        elapsed = (self._clock() - self._last_fetch_at).total_seconds()
        return max(0.0, self.options.min_refresh_interval - elapsed)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self) -> None:
        self._timer = None
        if self._closed:
            return
        self._spawn(self.fetch_session(force=self.state.status != "stale"))

    def _on_online_change(self, online: bool) -> None:
        if online:
            self._resume()
        else:
            self._reschedule()

    def _on_visibility_change(self, visible: bool) -> None:
        if visible:
            self._resume()
        else:
            self._reschedule()

    def _resume(self) -> None:
        if not self._can_schedule() or self._is_fetching:
            return
        remaining = self._rate_limit_remaining()
        if remaining > 0:
            # Unauthorized and pending states have no refresh timer, so queue the fetch itself.
            self._cancel_timer()
            self._timer = self._scheduler.call_later(remaining, self._on_resume_timer)
            return
        self._spawn(self.fetch_session(force=False))

    def _on_resume_timer(self) -> None:
        self._timer = None
        if self._closed or not self._can_schedule():
            return
        self._spawn(self.fetch_session(force=False))

    def _spawn(self, coroutine: Awaitable[None]) -> asyncio.Task:
        task = asyncio.ensure_future(coroutine)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task


def parse_session_response(response: TransportResponse) -> SessionView:
    """Summary: Validate a session endpoint response and convert it to a session variant.

    Importance: Non-JSON or malformed bodies become a classified client or server error.
    Alternatives: Trust the payload shape.
    """

    if "application/json" not in response.content_type.lower():
        raise InvalidSessionResponse(f"Invalid content type: {response.content_type or 'none'}")
    try:
        payload = SessionPayload.model_validate(json.loads(response.body))
        return payload.to_view()
    except (json.JSONDecodeError, ValidationError, ValueError) as exc:
        raise InvalidSessionResponse(f"Invalid session payload: {exc}") from exc
