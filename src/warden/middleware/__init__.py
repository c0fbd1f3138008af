"""Middleware registration."""

from fastapi import FastAPI

from warden.config import Settings
from warden.middleware.error_handler import setup_error_handlers
from warden.middleware.logging import setup_logging
from warden.middleware.request_id import RequestIdMiddleware


def setup_middleware(app: FastAPI, settings: Settings) -> None:
    """Configure logging, error handlers and request-scoped middleware."""
    setup_logging(settings)
    setup_error_handlers(app)
    app.add_middleware(RequestIdMiddleware)
