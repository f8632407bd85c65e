from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.trustedhost import TrustedHostMiddleware

from .config import settings
from .errors import register_exception_handlers
from .health import readiness_state
from .observability import configure_observability
from .routers import accounts, auth, pages

API_PREFIX = f"/api/{settings.api_latest_version}"

# Session tokens, provider tokens and live page tokens are returned here.
_CREDENTIAL_PATHS = (
    f"{API_PREFIX}/login",
    f"{API_PREFIX}/auth/",
    f"{API_PREFIX}/account/",
    f"{API_PREFIX}/pages",
)
_DOCS_PATHS = {"/docs", "/redoc", "/openapi.json", "/docs/oauth2-redirect"}
_CSP_POLICY = "default-src 'self'; frame-ancestors 'none'; object-src 'none'"

app = FastAPI(title="pagelink")
configure_observability(app)
register_exception_handlers(app)

if settings.trusted_hosts:
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.trusted_hosts)

# The linking intent travels as a cookie, so credentialed CORS is required.
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Authorization", "Content-Type"],
)


def carries_credentials(path: str) -> bool:
    return path.startswith(_CREDENTIAL_PATHS)


def _security_headers(request: Request) -> dict[str, str]:
    path = request.url.path
    headers = {
        "X-Content-Type-Options": "nosniff",
        "X-Frame-Options": "DENY",
        # Frontend redirects carry tokens in the fragment.
        "Referrer-Policy": "no-referrer",
    }
    if settings.security_csp_enabled and path not in _DOCS_PATHS:
        headers["Content-Security-Policy"] = _CSP_POLICY
    if settings.security_hsts_enabled and request.url.scheme == "https":
        headers["Strict-Transport-Security"] = (
            f"max-age={settings.security_hsts_max_age_seconds}; includeSubDomains"
        )
    if carries_credentials(path):
        headers["Cache-Control"] = "no-store"
    return headers


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    if settings.security_headers_enabled:
        response.headers.update(_security_headers(request))
    return response


def _include_api_routers() -> None:
    if settings.api_latest_version not in settings.api_supported_versions:
        raise RuntimeError("api_latest_version must be included in api_supported_versions")

    for router in (auth.router, accounts.router, pages.router):
        app.include_router(router, prefix=API_PREFIX)


_include_api_routers()


@app.get("/", include_in_schema=False)
def root():
    return {"message": "pagelink API is running"}


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/ready")
def ready():
    is_ready, checks = readiness_state()
    if not is_ready:
        raise HTTPException(
            status_code=503,
            detail={
                "detail": "Service dependencies are not ready",
                "error_code": "service_not_ready",
            },
        )
    return {"status": "ok", "checks": checks}
