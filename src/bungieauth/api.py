"""Summary: FastAPI application exposing the Bungie authentication routes.

Importance: Connects browser requests to the session engine with request-scoped cookie stores.
Alternatives: Use a different web framework or call the engine from an existing app.
"""

from __future__ import annotations

import logging
import urllib.parse
from typing import Callable

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse, Response

from bungieauth.config import AuthConfig
from bungieauth.cookies import MemoryCookieStore
from bungieauth.models import AnonymousSession, CookieOptions, SessionView
from bungieauth.oauth import create_state_token
from bungieauth.session import SessionEngine, with_error_param


logger = logging.getLogger(__name__)

FORCE_VALUES = {"t", "true", "1"}

REFRESH_STATUS_CODES = {"authorized": 200, "error": 500, "disabled": 503}

Handler = Callable[[Request, MemoryCookieStore], Response]


def apply_cookie_changes(
    store: MemoryCookieStore, response: Response, options: CookieOptions
) -> Response:
    """Summary: Copy pending cookie writes and deletions onto a response.

    Importance: The engine never touches the framework response directly. Deletions repeat the
    configured flags so browsers match them to the cookie being removed.
    Alternatives: Pass the response object into every cookie helper.
    """

    for name, record in store.changes.items():
        if record is None:
            response.delete_cookie(
                name,
                path=options.path,
                secure=options.secure,
                httponly=options.http_only,
                samesite=options.same_site,
            )
            continue
        response.set_cookie(
            name,
            record.value,
            max_age=record.max_age,
            expires=record.expires,
            path=record.options.path,
            secure=record.options.secure,
            httponly=record.options.http_only,
            samesite=record.options.same_site,
        )
    return response


def session_response(session: SessionView, status_code: int = 200) -> JSONResponse:
    return JSONResponse(session.to_payload(), status_code=status_code)


def create_app(
    config: AuthConfig,
    engine: SessionEngine | None = None,
    prefix: str = "/api/auth",
    state_factory: Callable[[], str] = create_state_token,
) -> FastAPI:
    """Summary: Create a FastAPI app wired to the session engine.

    Importance: Ensures every route shares one configuration and refresh policy.
    Alternatives: Instantiate the engine globally outside the factory.
    """

    if not logging.getLogger().handlers:
        logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    config.require_credentials()
    engine = engine or SessionEngine(config)
    app = FastAPI(title="bungieauth", version="0.1.0")
    app.state.engine = engine

    def default_callback_url(request: Request) -> str:
        return urllib.parse.urljoin(str(request.base_url), config.default_callback_url)

    def authorize(request: Request, store: MemoryCookieStore) -> Response:
        """Summary: Redirect to the provider authorization page.

        Importance: Sets the state nonce and remembers where to return afterwards.
        Alternatives: Return the URL as JSON for the client to follow.
        """

        params = {key: value for key, value in request.query_params.items() if key != "callback_url"}
        callback_url = request.query_params.get("callback_url") or request.headers.get("referer")
        url = engine.begin_authorization(store, state_factory(), params, callback_url)
        logger.info("authorize: redirected")
        return RedirectResponse(url, status_code=307)

    def callback(request: Request, store: MemoryCookieStore) -> Response:
        """Summary: Complete the authorization-code flow and redirect back to the app.

        Importance: Failures redirect with an `error` parameter instead of rendering an error page.
        Alternatives: Raise HTTP errors from the callback.
        """

        outcome = engine.complete_authorization(
            store,
            request.query_params.get("code", ""),
            request.query_params.get("state"),
        )
        target = outcome.callback_url or default_callback_url(request)
        if not outcome.ok:
            target = with_error_param(target, outcome.error)
        return RedirectResponse(target, status_code=307)

    def session(request: Request, store: MemoryCookieStore) -> Response:
        force = request.query_params.get("force", "").lower() in FORCE_VALUES
        result = engine.derive_session(store, force=force)
        logger.info("session: %s", result.message)
        return session_response(result.session)

    def refresh(request: Request, store: MemoryCookieStore) -> Response:
        """Summary: Force a token refresh and map the outcome to an HTTP status."""

        result = engine.refresh_session(store)
        status_code = REFRESH_STATUS_CODES.get(result.session.status, 401)
        if status_code == 200:
            logger.info("refresh: %s", result.message)
        else:
            logger.error("refresh: %s", result.message)
        return session_response(result.session, status_code)

    def deauthorize(request: Request, store: MemoryCookieStore) -> Response:
        engine.clear_server_session(store)
        logger.info("deauthorize: cookies cleared")
        return session_response(AnonymousSession("unauthorized"))

    get_handlers: dict[str, Handler] = {
        "authorize": authorize,
        "callback": callback,
        "session": session,
    }
    post_handlers: dict[str, Handler] = {
        "deauthorize": deauthorize,
        "refresh": refresh,
    }

    def dispatch(handlers: dict[str, Handler], action: str, request: Request) -> Response:
        handler = handlers.get(action)
        if handler is None:
            return PlainTextResponse("Not Found", status_code=404)
        store = MemoryCookieStore(request.cookies)
        return apply_cookie_changes(store, handler(request, store), config.cookie_options)

    router = APIRouter(prefix=prefix)

    @router.get("/{action}")
    def catch_all_get(action: str, request: Request) -> Response:
        return dispatch(get_handlers, action, request)

    @router.post("/{action}")
    def catch_all_post(action: str, request: Request) -> Response:
        return dispatch(post_handlers, action, request)

    app.include_router(router)
    return app


def app_from_env() -> FastAPI:
    """Summary: Build the app from environment configuration for ASGI servers."""

    return create_app(AuthConfig.from_env())
