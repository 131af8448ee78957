"""Middleware registration."""

from fastapi import FastAPI

from questline.config import Settings
from questline.middleware.cors import setup_cors
from questline.middleware.error_handler import setup_error_handlers
from questline.middleware.logging import setup_logging
from questline.middleware.request_id import RequestIdMiddleware


def setup_middleware(app: FastAPI, settings: Settings) -> None:
    """Register all middleware in the correct order.

    Starlette runs middleware in reverse-add order, so CORS is added last to
    wrap every response, errors included.
    """
    setup_logging(settings)
    setup_error_handlers(app)
    app.add_middleware(RequestIdMiddleware)
    setup_cors(app, settings)
