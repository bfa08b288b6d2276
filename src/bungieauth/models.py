"""Summary: Domain model dataclasses for bungieauth.

Importance: Defines the token, cookie, and session shapes shared by the server engine and the client.
Alternatives: Pass raw provider dictionaries between layers.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from bungieauth.errors import TransportError


TOKEN_RESPONSE_KEYS = (
    "access_token",
    "token_type",
    "expires_in",
    "refresh_token",
    "refresh_expires_in",
    "membership_id",
)

SessionStatus = Literal["unauthorized", "expired", "error", "stale", "disabled", "authorized"]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Summary: Render a timestamp as an ISO-8601 UTC string with millisecond precision.

    Importance: Keeps the expiry cookie and session payloads readable by browsers.
    Alternatives: Store epoch seconds.
    """

    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str | None) -> datetime | None:
    """Summary: Parse an ISO-8601 timestamp, returning None when it is missing or malformed.

    Importance: A corrupted expiry cookie must behave like an absent one.
    Alternatives: Raise and let callers handle parse failures.
    """

    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class TokenResponse:
    """Summary: Normalized token endpoint response.

    Importance: Guarantees every field the session engine consumes is present before cookies are written.
    Alternatives: Store the raw provider response without validation.
    """

    access_token: str
    token_type: str
    expires_in: int
    refresh_token: str
    refresh_expires_in: int
    membership_id: str

    @staticmethod
    def from_response(payload: dict[str, Any]) -> "TokenResponse":
        """Summary: Build a TokenResponse from a provider payload.

        Importance: Rejects incomplete bodies as transport failures rather than half-written sessions.
        Alternatives: Default missing fields.
        """

        missing = [key for key in TOKEN_RESPONSE_KEYS if key not in payload]
        if missing:
            raise TransportError(f"Response body is missing required keys: {', '.join(missing)}")
        try:
            return TokenResponse(
                access_token=str(payload["access_token"]),
                token_type=str(payload["token_type"]),
                expires_in=int(payload["expires_in"]),
                refresh_token=str(payload["refresh_token"]),
                refresh_expires_in=int(payload["refresh_expires_in"]),
                membership_id=str(payload["membership_id"]),
            )
        except (TypeError, ValueError) as exc:
            raise TransportError(f"Response body has malformed values: {exc}") from exc


@dataclass(frozen=True)
class TokenBundle:
    """Summary: Access/refresh token pair with membership identity and expiry timestamps.

    Importance: Replaced wholesale on every refresh so a session is never half-updated.
    Alternatives: Mutate individual cookie values in place.
    """

    access_token: str
    refresh_token: str
    membership_id: str
    access_expires_at: datetime
    session_expires_at: datetime

    @staticmethod
    def from_response(tokens: TokenResponse, issued_at: datetime) -> "TokenBundle":
        return TokenBundle(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            membership_id=tokens.membership_id,
            access_expires_at=issued_at + timedelta(seconds=tokens.expires_in),
            session_expires_at=issued_at + timedelta(seconds=tokens.refresh_expires_in),
        )


@dataclass(frozen=True)
class CookieOptions:
    """Summary: Cookie flags shared by every session cookie.

    Importance: Only expiry varies between cookies; the security flags stay identical.
    Alternatives: Configure flags per cookie.
    """

    http_only: bool = True
    secure: bool = True
    same_site: str = "lax"
    path: str = "/"


@dataclass(frozen=True)
class AnonymousSession:
    """Summary: Session variant without any data.

    Importance: Covers no session, a rejected refresh token, and unknown failures.
    Alternatives: Use a nullable membership field on a single session class.
    """

    status: Literal["unauthorized", "expired", "error"] = "unauthorized"

    def to_payload(self) -> dict[str, Any]:
        return {"status": self.status, "data": None}


@dataclass(frozen=True)
class MembershipSession:
    """Summary: Session variant that only knows the membership id.

    Importance: Lets the UI keep identifying the user while the access token is stale or the provider is down.
    Alternatives: Drop to unauthorized and lose the identity.
    """

    status: Literal["stale", "disabled"]
    membership_id: str

    def to_payload(self) -> dict[str, Any]:
        return {"status": self.status, "data": {"bungieMembershipId": self.membership_id}}


@dataclass(frozen=True)
class AuthorizedSession:
    """Summary: Session variant carrying a usable access token.

    Importance: The only variant that allows calling the provider API on behalf of the user.
    Alternatives: Return tokens in a separate endpoint.
    """

    membership_id: str
    access_token: str
    access_expires_at: datetime
    status: Literal["authorized"] = "authorized"

    def to_payload(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "data": {
                "bungieMembershipId": self.membership_id,
                "accessToken": self.access_token,
                "accessTokenExpiresAt": format_timestamp(self.access_expires_at),
            },
        }


SessionView = Union[AnonymousSession, MembershipSession, AuthorizedSession]


class SessionData(BaseModel):
    """Summary: Data block of a session payload as seen by clients.

    Importance: Validates the wire shape before it reaches the client state machine.
    Alternatives: Trust the server response blindly.
    """

    model_config = ConfigDict(populate_by_name=True)

    membership_id: str = Field(alias="bungieMembershipId")
    access_token: str | None = Field(default=None, alias="accessToken")
    access_token_expires_at: datetime | None = Field(default=None, alias="accessTokenExpiresAt")


class SessionPayload(BaseModel):
    """Summary: JSON session payload returned by the session routes."""

    status: SessionStatus
    data: SessionData | None = None

    def to_view(self) -> SessionView:
        """Summary: Convert the wire payload into its tagged session variant.

        Importance: Gives the client the same types the server produced.
        Alternatives: Branch on raw dictionaries in the client.
        """

        if self.status == "authorized":
            if (
                self.data is None
                or self.data.access_token is None
                or self.data.access_token_expires_at is None
            ):
                raise ValueError("Authorized session payload is missing token data")
            expires_at = self.data.access_token_expires_at
            if expires_at.tzinfo is None:
                expires_at = expires_at.replace(tzinfo=timezone.utc)
            return AuthorizedSession(
                membership_id=self.data.membership_id,
                access_token=self.data.access_token,
                access_expires_at=expires_at,
            )
        if self.status in ("stale", "disabled"):
            if self.data is None:
                raise ValueError(f"{self.status} session payload is missing membership data")
            return MembershipSession(status=self.status, membership_id=self.data.membership_id)
        return AnonymousSession(status=self.status)
