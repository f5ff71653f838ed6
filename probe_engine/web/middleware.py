"""Request middlewares: JSON error envelope and API-key guard."""

import hmac
import logging
from collections.abc import Awaitable, Callable

from aiohttp import web
from pydantic import SecretStr

log = logging.getLogger(__name__)

type Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]
type Middleware = Callable[[web.Request, Handler], Awaitable[web.StreamResponse]]

API_KEY_HEADER = "X-API-KEY"


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    """Turn unexpected exceptions into a JSON 500 response."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except Exception as exc:
        log.exception("Unhandled error for %s %s", request.method, request.path)
        return web.json_response(
            {"message": "Internal Server Error", "error": str(exc) or type(exc).__name__},
            status=500,
        )


def api_key_middleware(expected: SecretStr | None) -> Middleware:
    """Require ``X-API-KEY`` to match ``expected``; a None key disables the check."""
    if expected is None:
        log.warning("ADMIN_API_KEY not set; API key checks are disabled")

    @web.middleware
    async def middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
        if expected is None:
            return await handler(request)

        provided = request.headers.get(API_KEY_HEADER)
        if not provided:
            return web.json_response(
                {"message": "Unauthorized: missing API key"}, status=401
            )
        if not hmac.compare_digest(
            provided.encode(), expected.get_secret_value().encode()
        ):
            return web.json_response(
                {"message": "Unauthorized: invalid API key"}, status=401
            )
        return await handler(request)

    return middleware
