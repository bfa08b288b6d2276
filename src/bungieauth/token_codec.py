"""Summary: Token encoding utilities for cookie-stored OAuth credentials.

Importance: Keeps tokens obscured when they travel in browser cookies.
Alternatives: Use a dedicated encryption library with key management.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging

from bungieauth.models import TokenBundle, format_timestamp, parse_timestamp


logger = logging.getLogger(__name__)

_TAG_SEPARATOR = "."
_TAG_BYTES = 16


class TokenCodec:
    """Summary: Reversible token encoder/decoder with an optional integrity tag.

    Importance: Provides a lightweight obfuscation layer for cookie secrets and rejects tampered values.
    Alternatives: Use a proper encryption library with key management.
    """

    def __init__(self, secret: str, integrity: bool = True) -> None:
        """Summary: Initialize with a secret used to derive a keystream.

        Importance: Keeps token encoding consistent per deployment.
        Alternatives: Generate per-token secrets and store securely.
        """

        if not secret:
            raise ValueError("Token codec secret must not be empty")
        self._secret = secret.encode("utf-8")
        self._integrity = integrity

    def encode(self, plaintext: str) -> str:
        """Summary: Encode plaintext into an obfuscated string.

        Importance: Avoids storing raw tokens in cookies.
        Alternatives: Store tokens server-side and keep only an id in the cookie.
        """

        raw = plaintext.encode("utf-8")
        obfuscated = _xor(raw, _keystream(self._secret, len(raw)))
        encoded = _b64encode(obfuscated)
        if not self._integrity:
            return encoded
        return encoded + _TAG_SEPARATOR + _b64encode(self._tag(obfuscated))

    def decode(self, payload: str | None) -> str | None:
        """Summary: Decode an obfuscated string back to plaintext.

        Importance: Malformed or tampered values come back as None so callers treat them as absent.
        Alternatives: Raise and force every caller to catch decode errors.
        """

        if not payload:
            return None
        body = payload
        tag = None
        if self._integrity:
            body, separator, tag = payload.partition(_TAG_SEPARATOR)
            if not separator or not tag:
                logger.debug("Rejected token without integrity tag.")
                return None
        try:
            obfuscated = _b64decode(body)
            if tag is not None and not hmac.compare_digest(_b64decode(tag), self._tag(obfuscated)):
                logger.debug("Rejected token with mismatched integrity tag.")
                return None
            plaintext = _xor(obfuscated, _keystream(self._secret, len(obfuscated)))
            return plaintext.decode("utf-8")
        except (binascii.Error, ValueError):
            return None

    def encode_bundle(self, bundle: TokenBundle) -> str:
        """Summary: Serialize and encode a whole token bundle.

        Importance: Allows storing a session as a single opaque value.
        Alternatives: Store each field in its own cookie.
        """

        document = {
            "access_token": bundle.access_token,
            "refresh_token": bundle.refresh_token,
            "membership_id": bundle.membership_id,
            "access_expires_at": format_timestamp(bundle.access_expires_at),
            "session_expires_at": format_timestamp(bundle.session_expires_at),
        }
        return self.encode(json.dumps(document, separators=(",", ":"), sort_keys=True))

    def decode_bundle(self, payload: str | None) -> TokenBundle | None:
        """Summary: Decode a token bundle, returning None for anything structurally invalid."""

        plaintext = self.decode(payload)
        if plaintext is None:
            return None
        try:
            document = json.loads(plaintext)
        except json.JSONDecodeError:
            return None
        if not isinstance(document, dict):
            return None
        access_expires_at = parse_timestamp(_as_str(document.get("access_expires_at")))
        session_expires_at = parse_timestamp(_as_str(document.get("session_expires_at")))
        fields = [document.get(key) for key in ("access_token", "refresh_token", "membership_id")]
        if access_expires_at is None or session_expires_at is None:
            return None
        if not all(isinstance(value, str) and value for value in fields):
            return None
        return TokenBundle(
            access_token=fields[0],
            refresh_token=fields[1],
            membership_id=fields[2],
            access_expires_at=access_expires_at,
            session_expires_at=session_expires_at,
        )

    def _tag(self, data: bytes) -> bytes:
        return hmac.new(self._secret, data, hashlib.sha256).digest()[:_TAG_BYTES]


def encode_bundle(bundle: TokenBundle, secret: str, integrity: bool = True) -> str:
    return TokenCodec(secret, integrity=integrity).encode_bundle(bundle)


def decode_bundle(payload: str | None, secret: str, integrity: bool = True) -> TokenBundle | None:
    return TokenCodec(secret, integrity=integrity).decode_bundle(payload)


def _keystream(secret: bytes, length: int) -> bytes:
    """Summary: Derive a deterministic keystream from a secret.

    Importance: Keeps encoding reversible without external dependencies.
    Alternatives: Use a proper stream cipher.
    """

    output = b""
    counter = 0
    while len(output) < length:
        counter_bytes = counter.to_bytes(4, "big")
        output += hashlib.sha256(secret + counter_bytes).digest()
        counter += 1
    return output[:length]


def _xor(data: bytes, key: bytes) -> bytes:
    return bytes([b ^ k for b, k in zip(data, key)])


def _b64encode(data: bytes) -> str:
    # Padding is stripped so the value stays a plain cookie token.
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _b64decode(value: str) -> bytes:
    padded = value + "=" * (-len(value) % 4)
    return base64.b64decode(padded.encode("ascii"), altchars=b"-_", validate=True)


def _as_str(value: object) -> str | None:
    return value if isinstance(value, str) else None
