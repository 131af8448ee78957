"""Global error handlers: every error leaves as JSON."""

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from questline.errors import NotAuthenticated, PartialActivationError, QuestlineError

logger = structlog.get_logger()


def status_for(exc: QuestlineError) -> int:
    """HTTP status for a domain error that reached the app unhandled."""
    if isinstance(exc, PartialActivationError):
        return 500
    if isinstance(exc, NotAuthenticated):
        return 401
    if isinstance(exc, LookupError):
        return 404
    if isinstance(exc, PermissionError):
        return 403
    return 400


def setup_error_handlers(app: FastAPI) -> None:
    """Register global exception handlers."""

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(_request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=422,
            content={"detail": "Validation error", "errors": jsonable_errors(exc)},
        )

    @app.exception_handler(PartialActivationError)
    async def partial_activation_handler(request: Request, exc: PartialActivationError) -> JSONResponse:
        """Review rolled back mid-activation; operators need the proof id and step."""
        logger.error(
            "partial_activation",
            path=request.url.path,
            proof_id=exc.proof_id,
            step=exc.step,
            activated=exc.activated,
            error=exc.cause,
        )
        return JSONResponse(
            status_code=500,
            content={
                "detail": "Payment approval could not be completed and was rolled back",
                "error_code": exc.error_code,
                "proof_id": exc.proof_id,
                "step": exc.step,
                "activated": exc.activated,
            },
        )

    @app.exception_handler(QuestlineError)
    async def domain_exception_handler(_request: Request, exc: QuestlineError) -> JSONResponse:
        return JSONResponse(
            status_code=status_for(exc),
            content={"detail": str(exc), "error_code": exc.error_code},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Catch-all for unhandled exceptions."""
        logger.error(
            "unhandled_exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=exc,
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    """Validation errors may carry exception objects in ``ctx``; stringify them."""
    errors = []
    for error in exc.errors():
        error = dict(error)
        if "ctx" in error:
            error["ctx"] = {k: str(v) for k, v in error["ctx"].items()}
        errors.append(error)
    return errors
