from __future__ import annotations

import logging
from typing import Any
from urllib.parse import urlsplit, urlunsplit

import sentry_sdk
from fastapi import FastAPI
from prometheus_fastapi_instrumentator import Instrumentator
from pythonjsonlogger.json import JsonFormatter
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from .config import settings

# Graph API requests carry tokens and the app secret in their query strings.
_URL_LOGGING_LIBRARIES = ("httpx", "httpcore")
_UNMETERED_PATHS = ["/metrics", "/health", "/ready"]


def configure_structured_logging() -> bool:
    root = logging.getLogger()
    if getattr(root, "_json_logging_configured", False):
        return False

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    root.handlers = [handler]
    root.setLevel(logging.INFO)
    for name in _URL_LOGGING_LIBRARIES:
        logging.getLogger(name).setLevel(logging.WARNING)
    setattr(root, "_json_logging_configured", True)
    return True


def configure_metrics(app: FastAPI) -> bool:
    if not (settings.enable_optional_observability and settings.metrics_enabled):
        return False
    if any(getattr(route, "path", None) == "/metrics" for route in app.routes):
        return False

    Instrumentator(excluded_handlers=_UNMETERED_PATHS).instrument(app).expose(
        app, endpoint="/metrics", include_in_schema=False
    )
    return True


def scrub_breadcrumb(crumb: dict[str, Any], _hint: dict[str, Any]) -> dict[str, Any]:
    """Drop query strings from outbound HTTP breadcrumbs before they reach Sentry."""
    if crumb.get("category") != "httplib":
        return crumb
    data = crumb.get("data") or {}
    data.pop("http.query", None)
    url = data.get("url")
    if isinstance(url, str):
        data["url"] = urlunsplit(urlsplit(url)._replace(query="", fragment=""))
    return crumb


def configure_sentry() -> bool:
    if not (settings.enable_optional_observability and settings.sentry_dsn):
        return False
    if sentry_sdk.get_client().is_active():
        return False

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.sentry_environment,
        traces_sample_rate=settings.sentry_traces_sample_rate,
        integrations=[FastApiIntegration(), SqlalchemyIntegration()],
        send_default_pii=False,
        before_breadcrumb=scrub_breadcrumb,
    )
    return True


def configure_observability(app: FastAPI) -> dict[str, Any]:
    return {
        "logging": configure_structured_logging(),
        "metrics": configure_metrics(app),
        "sentry": configure_sentry(),
    }
