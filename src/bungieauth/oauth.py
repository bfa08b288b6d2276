"""Summary: OAuth helper utilities for the Bungie identity provider.

Importance: Generates authorization URLs and performs token exchanges without extra dependencies.
Alternatives: Use a generic OAuth client library.
"""

from __future__ import annotations

import base64
import json
import logging
import secrets
import socket
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any, Literal, Mapping

from bungieauth.config import AuthConfig
from bungieauth.errors import AuthorizationError, TransportError
from bungieauth.models import TokenResponse


logger = logging.getLogger(__name__)

# The provider rejects authorization requests that carry these parameters.
PROHIBITED_AUTHORIZATION_PARAMS = frozenset({"scope", "redirect_uri"})

GrantType = Literal["code", "refresh", "authorization_code", "refresh_token"]

_GRANTS = {
    "code": ("authorization_code", "code"),
    "authorization_code": ("authorization_code", "code"),
    "refresh": ("refresh_token", "refresh_token"),
    "refresh_token": ("refresh_token", "refresh_token"),
}


@dataclass(frozen=True)
class HttpResult:
    """Summary: Minimal HTTP response captured from the token endpoint.

    Importance: Lets error classification inspect status and content type after the socket is closed.
    Alternatives: Pass the live urllib response around.
    """

    status: int
    content_type: str
    body: str

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def is_json(self) -> bool:
        return "application/json" in self.content_type.lower()


def create_state_token() -> str:
    """Summary: Generate a CSRF state token.

    Importance: Protects OAuth flows from CSRF attacks.
    Alternatives: Use server-side session storage with pre-generated tokens.
    """

    return secrets.token_urlsafe(24)


def build_authorize_url(
    config: AuthConfig, state: str, params: Mapping[str, str] | None = None
) -> str:
    """Summary: Build the provider authorization URL.

    Importance: Forwards caller parameters such as `reauth` while enforcing the required ones.
    Alternatives: Ignore caller parameters entirely.
    """

    query: dict[str, str] = {}
    for key, value in (params or {}).items():
        if key not in PROHIBITED_AUTHORIZATION_PARAMS:
            query[key] = value
    query["client_id"] = config.client_id
    query["response_type"] = "code"
    query["state"] = state
    return config.authorize_url + "?" + urllib.parse.urlencode(query)


def exchange_token(config: AuthConfig, grant_type: GrantType, value: str) -> TokenResponse:
    """Summary: Exchange an authorization code or refresh token for a fresh token set.

    Importance: Single entry point for both grants so error classification stays uniform.
    Alternatives: Duplicate request logic per grant.
    """

    if grant_type not in _GRANTS:
        raise ValueError(f"Unknown grant type: {grant_type}")
    config.require_credentials()
    wire_grant, grant_key = _GRANTS[grant_type]
    payload = {"grant_type": wire_grant, grant_key: value}
    result = _post_form(config.token_url, payload, _basic_auth(config), config.http_timeout)
    return _parse_token_response(result)


def exchange_authorization_code(config: AuthConfig, code: str) -> TokenResponse:
    return exchange_token(config, "code", code)


def refresh_tokens(config: AuthConfig, refresh_token: str) -> TokenResponse:
    return exchange_token(config, "refresh", refresh_token)


def _parse_token_response(result: HttpResult) -> TokenResponse:
    """Summary: Classify a token endpoint response.

    Importance: Structured OAuth errors raise AuthorizationError, everything else unexpected raises TransportError.
    Alternatives: Raise a single exception type and parse messages downstream.
    """

    if result.ok:
        body = _load_json(result)
        if not isinstance(body, dict):
            raise TransportError(f"Unexpected token response: {result.body[:200]}")
        return TokenResponse.from_response(body)

    if not result.is_json:
        raise TransportError(f"Invalid response [{result.status}]: {result.body[:200]}")

    body = _load_json(result)
    if not isinstance(body, dict) or "error" not in body or "error_description" not in body:
        raise TransportError(f"Unexpected error response: {result.body[:200]}")
    error = AuthorizationError(str(body["error"]), str(body["error_description"]))
    logger.info("Token endpoint returned %s.", error)
    raise error


def _load_json(result: HttpResult) -> Any:
    try:
        return json.loads(result.body)
    except json.JSONDecodeError as exc:
        raise TransportError(f"Invalid JSON response [{result.status}]") from exc


def _basic_auth(config: AuthConfig) -> dict[str, str]:
    credentials = f"{config.client_id}:{config.client_secret}".encode("utf-8")
    return {"Authorization": "Basic " + base64.b64encode(credentials).decode("ascii")}


def _post_form(
    url: str, payload: dict[str, str], headers: dict[str, str], timeout: float
) -> HttpResult:
    """Summary: Send a form-encoded POST request and capture the response.

    Importance: Avoids new dependencies while supporting OAuth exchanges.
    Alternatives: Use requests or httpx.
    """

    data = urllib.parse.urlencode(payload).encode("utf-8")
    request = urllib.request.Request(
        url,
        data=data,
        headers={"Content-Type": "application/x-www-form-urlencoded", **headers},
        method="POST",
    )
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            return HttpResult(
                status=response.status,
                content_type=response.headers.get("Content-Type", ""),
                body=response.read().decode("utf-8", errors="replace"),
            )
    except urllib.error.HTTPError as exc:
        return HttpResult(
            status=exc.code,
            content_type=exc.headers.get("Content-Type", "") if exc.headers else "",
            body=exc.read().decode("utf-8", errors="replace"),
        )
    except (urllib.error.URLError, socket.timeout, ConnectionError) as exc:
        raise TransportError(f"Token exchange failed: {exc}") from exc
