from typing import Optional
from urllib.parse import urlparse

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ALLOWED_JWT_ALGORITHMS = {"HS256", "HS384", "HS512"}


class Settings(BaseSettings):
    # Runtime environment
    environment: str = "development"

    # Core database and auth settings
    database_url: Optional[str] = None
    database_hostname: str = "localhost"
    database_port: int = 5432
    database_password: str = "password123"
    database_name: str = "pagelink"
    database_username: str = "postgres"
    secret_key: str = "replace-this-in-production"
    algorithm: str = "HS256"
    token_issuer: str = "pagelink"
    token_audience: str = "pagelink-api"
    access_token_expire_minutes: int = 60
    refresh_token_expire_days: int = 30

    # API versioning
    api_latest_version: str = "v1"
    api_supported_versions: list[str] = ["v1"]

    # Redis (single-use linking intents, readiness)
    redis_url: str = "redis://localhost:6379/0"
    redis_health_required: bool = False

    # Observability
    enable_optional_observability: bool = True
    metrics_enabled: bool = True
    sentry_dsn: Optional[str] = None
    sentry_environment: str = "development"
    sentry_traces_sample_rate: float = 0.0

    # OAuth / third-party login
    oauth_state_expire_seconds: int = 300
    oauth_public_base_url: Optional[str] = None
    oauth_frontend_callback_url: str = "/"
    oauth_google_client_id: Optional[str] = None
    oauth_google_client_secret: Optional[str] = None
    oauth_facebook_client_id: Optional[str] = None
    oauth_facebook_client_secret: Optional[str] = None

    # Facebook Graph API
    facebook_graph_base_url: str = "https://graph.facebook.com"
    facebook_graph_api_version: str = "v18.0"
    facebook_required_page_scope: str = "pages_read_engagement"
    provider_http_timeout_seconds: float = 10.0
    provider_page_limit: int = 100

    # Linking intent cookie
    linking_intent_cookie_name: str = "linking_user_id"
    linking_intent_ttl_seconds: int = 600
    linking_intent_fail_open: bool = True

    # Request security controls
    trusted_hosts: list[str] = ["localhost", "127.0.0.1", "testserver"]
    security_headers_enabled: bool = True
    security_csp_enabled: bool = True
    security_hsts_enabled: bool = False
    security_hsts_max_age_seconds: int = 31_536_000

    # CORS
    cors_origins: list[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("algorithm")
    @classmethod
    def validate_algorithm(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in _ALLOWED_JWT_ALGORITHMS:
            allowed = ", ".join(sorted(_ALLOWED_JWT_ALGORITHMS))
            raise ValueError(f"ALGORITHM must be one of: {allowed}")
        return normalized

    @field_validator("oauth_frontend_callback_url")
    @classmethod
    def validate_oauth_frontend_callback_url(cls, value: str) -> str:
        if not value:
            return "/"
        parsed = urlparse(value)
        if parsed.fragment:
            raise ValueError("OAUTH_FRONTEND_CALLBACK_URL must not include a fragment")
        if parsed.scheme or parsed.netloc:
            if parsed.scheme not in {"http", "https"} or not parsed.netloc:
                raise ValueError(
                    "OAUTH_FRONTEND_CALLBACK_URL absolute URLs must use http/https"
                )
            return value
        if not value.startswith("/"):
            raise ValueError(
                "OAUTH_FRONTEND_CALLBACK_URL must be an absolute path or absolute URL"
            )
        return value

    @field_validator("linking_intent_ttl_seconds")
    @classmethod
    def validate_linking_intent_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("LINKING_INTENT_TTL_SECONDS must be positive")
        return value

    @field_validator("facebook_graph_base_url")
    @classmethod
    def validate_graph_base_url(cls, value: str) -> str:
        return value.rstrip("/")

    @model_validator(mode="after")
    def validate_production_secret(self) -> "Settings":
        if self.is_production:
            insecure_secrets = {
                "",
                "replace-this-in-production",
                "test-secret-key",
                "changeme",
            }
            if self.secret_key in insecure_secrets or len(self.secret_key) < 32:
                raise ValueError(
                    "SECRET_KEY must be a high-entropy value (>=32 chars) in production"
                )
        return self

    @property
    def is_production(self) -> bool:
        return self.environment.lower() in {"prod", "production"}

    @property
    def sqlalchemy_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"postgresql+psycopg2://{self.database_username}:{self.database_password}"
            f"@{self.database_hostname}:{self.database_port}/{self.database_name}"
        )

    @property
    def facebook_graph_url(self) -> str:
        return f"{self.facebook_graph_base_url}/{self.facebook_graph_api_version}"


settings = Settings()
