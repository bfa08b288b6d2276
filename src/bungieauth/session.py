"""Summary: Server-side session derivation and refresh engine.

Importance: Decides whether a cookie-backed session is fresh, refreshable, or gone, and keeps cookies in step.
Alternatives: Refresh tokens on every request or only when the provider rejects a call.
"""

from __future__ import annotations

import hmac
import logging
import urllib.parse
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Literal, Mapping

from bungieauth import oauth
from bungieauth.config import AuthConfig
from bungieauth.cookies import CookieStore, SessionCookies
from bungieauth.errors import AuthorizationError, StateMismatchError, TransportError
from bungieauth.models import (
    AnonymousSession,
    AuthorizedSession,
    MembershipSession,
    SessionView,
    TokenBundle,
    TokenResponse,
    utc_now,
)
from bungieauth.token_codec import TokenCodec


logger = logging.getLogger(__name__)

TokenExchange = Callable[[AuthConfig, str, str], TokenResponse]
CallbackError = Literal["state_mismatch", "token_error"]


@dataclass(frozen=True)
class SessionResult:
    """Summary: A derived session plus a short log message describing how it was reached."""

    session: SessionView
    message: str


@dataclass(frozen=True)
class CallbackOutcome:
    """Summary: Result of completing the authorization-code flow.

    Importance: The callback route always redirects; this carries where and with which error.
    Alternatives: Raise on failure and let the route translate exceptions.
    """

    callback_url: str | None
    error: CallbackError | None = None
    session: AuthorizedSession | None = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.error is None


class SessionEngine:
    """Summary: Derives externally visible sessions from cookies and refreshes tokens when required.

    Importance: Centralizes the refresh policy so every route applies the same recovery rules.
    Alternatives: Embed refresh logic in each HTTP handler.
    """

    def __init__(
        self,
        config: AuthConfig,
        exchange: TokenExchange | None = None,
        clock: Callable[[], datetime] = utc_now,
        codec: TokenCodec | None = None,
    ) -> None:
        self.config = config
        self._exchange = exchange
        self._clock = clock
        self._codec = codec or TokenCodec(config.codec_secret, integrity=config.token_integrity)

    def cookies(self, store: CookieStore) -> SessionCookies:
        return SessionCookies(store, self.config, self._codec)

    def request_new_tokens(self, grant_type: str, value: str) -> TokenResponse:
        """Summary: Call the token endpoint with the configured exchange function."""

        if self._exchange is not None:
            return self._exchange(self.config, grant_type, value)
        return oauth.exchange_token(self.config, grant_type, value)

    def derive_session(self, store: CookieStore, force: bool = False) -> SessionResult:
        """Summary: Return the current session, refreshing tokens when needed.

        Importance: The fast path makes no provider call, so repeated checks of a valid session are free.
        Alternatives: Always refresh, or never refresh until the access token is rejected.
        """

        cookies = self.cookies(store)
        stored = cookies.read()
        if not stored.membership_id or not stored.refresh_token:
            return SessionResult(AnonymousSession("unauthorized"), "No session found")

        now = self._clock()
        if (
            not force
            and stored.access_token
            and stored.access_expires_at is not None
            and (stored.access_expires_at - now).total_seconds()
            > self.config.session_refresh_grace_period
        ):
            return SessionResult(
                AuthorizedSession(
                    membership_id=stored.membership_id,
                    access_token=stored.access_token,
                    access_expires_at=stored.access_expires_at,
                ),
                "Session is valid",
            )

        return self._refresh(cookies, stored.membership_id, stored.refresh_token)

    def refresh_session(self, store: CookieStore) -> SessionResult:
        return self.derive_session(store, force=True)

    def get_server_session(self, store: CookieStore) -> SessionView:
        """Summary: Report the session from cookies alone, never calling the provider.

        Importance: Server-rendered pages can seed the client without paying for a refresh.
        Alternatives: Run the full derivation on every render.
        """

        stored = self.cookies(store).read()
        if not stored.membership_id or not stored.refresh_token:
            return AnonymousSession("unauthorized")
        if (
            not stored.access_token
            or stored.access_expires_at is None
            or stored.access_expires_at <= self._clock()
        ):
            return MembershipSession(status="stale", membership_id=stored.membership_id)
        return AuthorizedSession(
            membership_id=stored.membership_id,
            access_token=stored.access_token,
            access_expires_at=stored.access_expires_at,
        )

    def update_server_session(
        self, tokens: TokenResponse, issued_at: datetime, store: CookieStore
    ) -> TokenBundle:
        """Summary: Persist tokens obtained outside the engine.

        Importance: Cookie lifetimes are measured from when the provider issued the tokens, not from now.
        Alternatives: Assume the tokens were issued at write time.
        """

        bundle = TokenBundle.from_response(tokens, issued_at)
        self.cookies(store).write(bundle, self._clock())
        return bundle

    def clear_server_session(self, store: CookieStore) -> None:
        self.cookies(store).clear()

    def begin_authorization(
        self,
        store: CookieStore,
        state: str,
        params: Mapping[str, str] | None = None,
        callback_url: str | None = None,
    ) -> str:
        """Summary: Set the state and callback cookies and return the provider authorization URL.

        Importance: Both cookies are short-lived and consumed once by the callback.
        Alternatives: Keep pending states in server memory.
        """

        cookies = self.cookies(store)
        cookies.set_state(state)
        if callback_url:
            cookies.set_callback(callback_url)
        return oauth.build_authorize_url(self.config, state, params)

    def complete_authorization(
        self, store: CookieStore, code: str, state: str | None
    ) -> CallbackOutcome:
        """Summary: Validate the returned state, exchange the code, and persist the session.

        Importance: State and callback cookies are cleared before validation so they can never be replayed.
        Alternatives: Clear cookies only on success.
        """

        cookies = self.cookies(store)
        callback_url = cookies.get_callback()
        expected = cookies.get_state()
        cookies.clear_state()
        cookies.clear_callback()

        try:
            validate_state(expected, state)
        except StateMismatchError as exc:
            logger.warning("callback: %s", exc)
            return CallbackOutcome(callback_url, "state_mismatch", message=str(exc))

        issued_at = self._clock().replace(microsecond=0)
        try:
            tokens = self.request_new_tokens("code", code)
        except (AuthorizationError, TransportError) as exc:
            logger.error("callback: %s", exc)
            return CallbackOutcome(callback_url, "token_error", message=str(exc))

        bundle = TokenBundle.from_response(tokens, issued_at)
        cookies.write(bundle, self._clock())
        logger.info("callback: authorized")
        return CallbackOutcome(
            callback_url,
            session=AuthorizedSession(
                membership_id=bundle.membership_id,
                access_token=bundle.access_token,
                access_expires_at=bundle.access_expires_at,
            ),
            message="authorized",
        )

    def _refresh(
        self, cookies: SessionCookies, membership_id: str, refresh_token: str
    ) -> SessionResult:
        issued_at = self._clock().replace(microsecond=0)
        try:
            tokens = self.request_new_tokens("refresh", refresh_token)
        except AuthorizationError as exc:
            if exc.is_provider_outage:
                logger.warning("Provider reported an outage while refreshing: %s", exc)
                return SessionResult(
                    MembershipSession(status="disabled", membership_id=membership_id), str(exc)
                )
            cookies.clear()
            logger.info("Refresh token rejected, session cleared: %s", exc)
            return SessionResult(AnonymousSession("expired"), str(exc))
        except TransportError as exc:
            logger.error("Refresh failed with a transport error: %s", exc)
            return SessionResult(AnonymousSession("error"), "Unknown error")

        bundle = TokenBundle.from_response(tokens, issued_at)
        cookies.write(bundle, self._clock())
        return SessionResult(
            AuthorizedSession(
                membership_id=bundle.membership_id,
                access_token=bundle.access_token,
                access_expires_at=bundle.access_expires_at,
            ),
            "Session refreshed",
        )


def validate_state(expected: str | None, received: str | None) -> None:
    """Summary: Compare the callback state against the state cookie.

    Importance: A missing cookie or parameter is a mismatch.
    Alternatives: Skip validation when the cookie has expired.
    """

    if not expected or not received:
        raise StateMismatchError(expected, received)
    if not hmac.compare_digest(expected.encode("utf-8"), received.encode("utf-8")):
        raise StateMismatchError(expected, received)


def with_error_param(url: str, error: str) -> str:
    """Summary: Add or replace the `error` query parameter on a URL."""

    parts = urllib.parse.urlsplit(url)
    query = [(key, value) for key, value in urllib.parse.parse_qsl(parts.query) if key != "error"]
    query.append(("error", error))
    return urllib.parse.urlunsplit(parts._replace(query=urllib.parse.urlencode(query)))
