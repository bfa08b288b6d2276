"""Summary: Cookie storage adapter for the session cookie schema.

Importance: Keeps cookie names, lifetimes, and token encoding in one place behind a narrow interface.
Alternatives: Read and write framework cookies directly in the route handlers.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Mapping, Protocol

from bungieauth.config import AuthConfig
from bungieauth.models import (
    CookieOptions,
    TokenBundle,
    format_timestamp,
    parse_timestamp,
    utc_now,
)
from bungieauth.token_codec import TokenCodec


logger = logging.getLogger(__name__)

STATE = "state"
CALLBACK = "callback"
MEMBERSHIP_ID = "membershipid"
ACCESS = "access"
REFRESH = "refresh"
EXPIRES = "expires"

SESSION_SUFFIXES = (MEMBERSHIP_ID, ACCESS, REFRESH, EXPIRES)


class CookieStore(Protocol):
    """Summary: Key-value interface over a cookie jar.

    Importance: Lets the session engine run against framework cookies or an in-memory jar.
    Alternatives: Depend on a specific web framework's request object.
    """

    def get(self, name: str) -> str | None: ...

    def set(
        self,
        name: str,
        value: str,
        options: CookieOptions,
        max_age: int | None = None,
        expires: datetime | None = None,
    ) -> None: ...

    def delete(self, name: str) -> None: ...


@dataclass(frozen=True)
class CookieRecord:
    """Summary: A cookie value with the attributes it was written with."""

    value: str
    options: CookieOptions
    max_age: int | None = None
    expires: datetime | None = None
    written_at: datetime | None = None

    def expires_at(self) -> datetime | None:
        if self.expires is not None:
            return self.expires
        if self.max_age is not None and self.written_at is not None:
            return self.written_at + timedelta(seconds=self.max_age)
        return None


class MemoryCookieStore:
    """Summary: In-memory cookie jar that records pending changes.

    Importance: Serves as the request-scoped store for HTTP handlers and as the jar in tests.
    Alternatives: Mutate the framework response directly.
    """

    def __init__(
        self,
        initial: Mapping[str, str] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._clock = clock
        self._cookies: dict[str, CookieRecord] = {
            name: CookieRecord(value=value, options=CookieOptions())
            for name, value in (initial or {}).items()
        }
        self.changes: dict[str, CookieRecord | None] = {}

    def get(self, name: str) -> str | None:
        record = self._cookies.get(name)
        if record is None:
            return None
        expires_at = record.expires_at()
        if expires_at is not None and expires_at <= self._clock():
            return None
        return record.value

    def set(
        self,
        name: str,
        value: str,
        options: CookieOptions,
        max_age: int | None = None,
        expires: datetime | None = None,
    ) -> None:
        record = CookieRecord(
            value=value,
            options=options,
            max_age=max_age,
            expires=expires,
            written_at=self._clock(),
        )
        self._cookies[name] = record
        self.changes[name] = record

    def delete(self, name: str) -> None:
        self._cookies.pop(name, None)
        self.changes[name] = None

    def record(self, name: str) -> CookieRecord | None:
        return self._cookies.get(name)

    def snapshot(self) -> dict[str, str]:
        """Summary: Return the currently readable cookie values."""

        values = {}
        for name in self._cookies:
            value = self.get(name)
            if value is not None:
                values[name] = value
        return values


@dataclass(frozen=True)
class StoredSession:
    """Summary: Session fields as read back from cookies.

    Importance: Any field may be missing because cookies expire independently.
    Alternatives: Require all cookies to be present or treat the session as absent.
    """

    membership_id: str | None
    access_token: str | None
    refresh_token: str | None
    access_expires_at: datetime | None


class SessionCookies:
    """Summary: Reads and writes the fixed set of session cookies.

    Importance: Applies the dual-expiry rule and token encoding consistently.
    Alternatives: Scatter cookie names across handlers.
    """

    def __init__(self, store: CookieStore, config: AuthConfig, codec: TokenCodec | None = None) -> None:
        self.store = store
        self._config = config
        self._codec = codec or TokenCodec(config.codec_secret, integrity=config.token_integrity)

    def name(self, suffix: str) -> str:
        return f"{self._config.base_cookie_name}.{suffix}"

    def set_state(self, state: str) -> None:
        self.store.set(
            self.name(STATE), state, self._config.cookie_options, max_age=self._config.state_max_age
        )

    def get_state(self) -> str | None:
        return self.store.get(self.name(STATE))

    def clear_state(self) -> None:
        self.store.delete(self.name(STATE))

    def set_callback(self, callback_url: str) -> None:
        self.store.set(
            self.name(CALLBACK),
            callback_url,
            self._config.cookie_options,
            max_age=self._config.state_max_age,
        )

    def get_callback(self) -> str | None:
        return self.store.get(self.name(CALLBACK))

    def clear_callback(self) -> None:
        self.store.delete(self.name(CALLBACK))

    def read(self) -> StoredSession:
        """Summary: Read the session cookies, decoding tokens.

        Importance: Tokens that fail to decode are reported as missing.
        Alternatives: Raise an integrity error to the caller.
        """

        access_token = self._codec.decode(self.store.get(self.name(ACCESS)))
        refresh_token = self._codec.decode(self.store.get(self.name(REFRESH)))
        return StoredSession(
            membership_id=self.store.get(self.name(MEMBERSHIP_ID)) or None,
            access_token=access_token or None,
            refresh_token=refresh_token or None,
            access_expires_at=parse_timestamp(self.store.get(self.name(EXPIRES))),
        )

    def write(self, bundle: TokenBundle, now: datetime | None = None) -> None:
        """Summary: Persist a token bundle as one logical update.

        Importance: Membership and refresh cookies live as long as the refresh token; access and expiry cookies as long as the access token.
        Alternatives: Give every cookie the session lifetime.
        """

        current = now or utc_now()
        session_age = _seconds_until(bundle.session_expires_at, current)
        access_age = _seconds_until(bundle.access_expires_at, current)
        options = self._config.cookie_options
        values = [
            (MEMBERSHIP_ID, bundle.membership_id, session_age),
            (REFRESH, self._codec.encode(bundle.refresh_token), session_age),
            (ACCESS, self._codec.encode(bundle.access_token), access_age),
            (EXPIRES, format_timestamp(bundle.access_expires_at), access_age),
        ]
        for suffix, value, max_age in values:
            self.store.set(self.name(suffix), value, options, max_age=max_age)
        logger.debug("Wrote session cookies for membership %s.", bundle.membership_id)

    def clear(self) -> None:
        for suffix in SESSION_SUFFIXES:
            self.store.delete(self.name(suffix))


def _seconds_until(moment: datetime, now: datetime) -> int:
    return max(0, int((moment - now).total_seconds()))
