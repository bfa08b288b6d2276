"""Summary: Application configuration for bungieauth.

Importance: Centralizes environment, .env, and config defaults for consistent behavior.
Alternatives: Use a dedicated settings library like Pydantic Settings.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

from bungieauth.errors import ConfigurationError
from bungieauth.models import CookieOptions


_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class AuthConfig:
    """Summary: Holds configuration values for the provider, cookies, and server.

    Importance: Ensures the engine, codec, and routes derive settings from a single source of truth.
    Alternatives: Pass individual settings into every function.
    """

    client_id: str
    client_secret: str
    authorize_url: str = "https://www.bungie.net/en/oauth/authorize"
    token_url: str = "https://www.bungie.net/platform/app/oauth/token/"
    session_refresh_grace_period: int = 300
    base_cookie_name: str = "__next-bungie-auth"
    cookie_http_only: bool = True
    cookie_secure: bool = True
    cookie_same_site: str = "lax"
    state_max_age: int = 900
    token_secret: str = ""
    token_integrity: bool = True
    http_timeout: float = 10.0
    api_host: str = "127.0.0.1"
    api_port: int = 8000
    default_callback_url: str = "/"

    @property
    def cookie_options(self) -> CookieOptions:
        """Summary: Return the option set shared by every session cookie.

        Importance: Only expiry differs between cookies, so flags live in one place.
        Alternatives: Configure flags per cookie name.
        """

        return CookieOptions(
            http_only=self.cookie_http_only,
            secure=self.cookie_secure,
            same_site=self.cookie_same_site,
        )

    @property
    def codec_secret(self) -> str:
        return self.token_secret or self.client_secret

    def require_credentials(self) -> None:
        """Summary: Validate that OAuth client credentials exist.

        Importance: Prevents confusing token exchange errors when credentials are missing.
        Alternatives: Allow requests to fail at the provider endpoint.
        """

        if not self.client_id or not self.client_secret:
            raise ConfigurationError("Both client_id and client_secret are required config options")

    @staticmethod
    def from_env(defaults_path: Path | None = None) -> "AuthConfig":
        """Summary: Build configuration from defaults, .env, and environment.

        Importance: Keeps all variables defined in config defaults while allowing overrides.
        Alternatives: Parse only environment variables without a defaults file.
        """

        defaults = load_defaults(defaults_path or Path("config") / "defaults.json")
        load_dotenv(Path(".env"))
        return AuthConfig(
            client_id=os.getenv("BUNGIE_CLIENT_ID", defaults["client_id"]),
            client_secret=os.getenv("BUNGIE_CLIENT_SECRET", defaults["client_secret"]),
            authorize_url=os.getenv("BUNGIEAUTH_AUTHORIZE_URL", defaults["authorize_url"]),
            token_url=os.getenv("BUNGIEAUTH_TOKEN_URL", defaults["token_url"]),
            session_refresh_grace_period=int(
                os.getenv(
                    "BUNGIEAUTH_SESSION_REFRESH_GRACE_PERIOD",
                    defaults["session_refresh_grace_period"],
                )
            ),
            base_cookie_name=os.getenv("BUNGIEAUTH_BASE_COOKIE_NAME", defaults["base_cookie_name"]),
            cookie_http_only=parse_bool(
                os.getenv("BUNGIEAUTH_COOKIE_HTTP_ONLY", defaults["cookie_http_only"])
            ),
            cookie_secure=parse_bool(os.getenv("BUNGIEAUTH_COOKIE_SECURE", defaults["cookie_secure"])),
            cookie_same_site=os.getenv("BUNGIEAUTH_COOKIE_SAME_SITE", defaults["cookie_same_site"]),
            state_max_age=int(os.getenv("BUNGIEAUTH_STATE_MAX_AGE", defaults["state_max_age"])),
            token_secret=os.getenv("BUNGIEAUTH_TOKEN_SECRET", defaults["token_secret"]),
            token_integrity=parse_bool(
                os.getenv("BUNGIEAUTH_TOKEN_INTEGRITY", defaults["token_integrity"])
            ),
            http_timeout=float(os.getenv("BUNGIEAUTH_HTTP_TIMEOUT", defaults["http_timeout"])),
            api_host=os.getenv("BUNGIEAUTH_API_HOST", defaults["api_host"]),
            api_port=int(os.getenv("BUNGIEAUTH_API_PORT", defaults["api_port"])),
            default_callback_url=os.getenv(
                "BUNGIEAUTH_DEFAULT_CALLBACK_URL", defaults["default_callback_url"]
            ),
        )


def parse_bool(value: str | bool) -> bool:
    if isinstance(value, bool):
        return value
    return value.strip().lower() in _TRUE_VALUES


def load_defaults(path: Path) -> dict[str, str]:
    """Summary: Load configuration defaults from JSON.

    Importance: Ensures all variables exist in a single config file.
    Alternatives: Inline defaults in the AuthConfig initializer.
    """

    if not path.exists():
        raise FileNotFoundError(f"Defaults file not found: {path}")
    return json.loads(path.read_text(encoding="utf-8"))


def load_dotenv(path: Path) -> None:
    """Summary: Load key-value pairs from a .env file into the environment.

    Importance: Keeps client secrets out of code while supporting local workflows.
    Alternatives: Use python-dotenv or OS-specific secret stores.
    """

    if not path.exists():
        return
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        os.environ.setdefault(key.strip(), value.strip())
