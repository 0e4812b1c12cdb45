import structlog
from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = structlog.get_logger()

# Unknown paths and unsupported methods share one answer.
_UNROUTED_STATUSES = (404, 405)


class AppError(Exception):
    def __init__(self, status_code: int, detail: str) -> None:
        super().__init__(detail)
        self.status_code = status_code
        self.detail = detail


async def app_error_handler(request: Request, exc: AppError) -> PlainTextResponse:
    return PlainTextResponse(exc.detail, status_code=exc.status_code)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> PlainTextResponse:
    if exc.status_code in _UNROUTED_STATUSES:
        logger.info("route_not_found", method=request.method, path=request.url.path)
        return PlainTextResponse("error", status_code=400)
    return PlainTextResponse(str(exc.detail), status_code=exc.status_code)


async def unhandled_exception_handler(request: Request, exc: Exception) -> PlainTextResponse:
    logger.exception("request_failed", method=request.method, path=request.url.path, error=str(exc))
    return PlainTextResponse("error", status_code=500)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, app_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, unhandled_exception_handler)
