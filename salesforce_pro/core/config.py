from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "SalesforcePro API"
    app_env: str = "local"
    app_debug: bool = True
    api_port: int = 8000
    api_prefix: str = "/api"
    database_url: str = "sqlite+pysqlite:///./salesforce_pro.db"
    jwt_access_secret: str = "access-secret"
    jwt_refresh_secret: str = "refresh-secret"
    jwt_algorithm: str = "HS256"
    access_token_minutes: int = 15
    refresh_token_days: int = 7
    refresh_cookie_name: str = "refreshToken"
    refresh_cookie_secure: bool = False
    frontend_url: str = "http://localhost:5173"
    rate_limit_disabled: bool = False
    rate_limit_requests: int = 200
    rate_limit_window_seconds: int = 900
    metrics_enabled: bool = False
    otel_enabled: bool = False
    otel_service_name: str = "salesforce-pro-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_console_exporter: bool = False
    default_region: str = "Nacional"
    log_level: str = "INFO"
    log_format: str = "json"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False)


@lru_cache
def get_settings() -> Settings:
    return Settings()
