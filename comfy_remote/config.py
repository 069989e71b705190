"""
Comfy Remote - Configuration Management
========================================

Configuration using pydantic-settings for type-safe environment variable parsing.
All settings can be overridden via environment variables with COMFY_REMOTE_ prefix.

Example:
    COMFY_REMOTE_BACKEND__URL=http://192.168.1.100:8188
    COMFY_REMOTE_POLL__MAX_WAIT_MS=900000
    COMFY_REMOTE_SERVER__PASSWORD=hunter2
    COMFY_REMOTE_STORAGE__DATA_DIR=/var/lib/comfy-remote

Features:
- Type-safe configuration with automatic validation
- Nested config via double underscore delimiter (__)
- .env file support
- SecretStr for the access password and session secret
- Cached settings instance via @lru_cache
"""

from functools import lru_cache
from pathlib import Path

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

__all__ = [
    "Settings",
    "settings",
    "get_settings",
    "reload_settings",
    # Sub-configs
    "BackendConfig",
    "PollConfig",
    "RetryConfig",
    "LoggingConfig",
    "HttpConfig",
    "StorageConfig",
    "ServerConfig",
    # Defaults
    "DEFAULT_PASSWORD",
    "DEFAULT_AUTH_SECRET",
]

DEFAULT_PASSWORD = "changeme"
DEFAULT_AUTH_SECRET = "development-secret"


# =============================================================================
# CONFIGURATION CLASSES
# =============================================================================


class BackendConfig(BaseSettings):
    """Render backend (ComfyUI) connection configuration."""

    model_config = SettingsConfigDict(
        env_prefix="COMFY_REMOTE_BACKEND__",
        env_ignore_empty=True,
    )

    url: str = "http://127.0.0.1:8188"
    timeout_upload: float = 60.0
    timeout_submit: float = 30.0
    timeout_history: float = 15.0
    timeout_view: float = 60.0
    # Connection test uses a short per-endpoint timeout
    timeout_probe: float = 5.0


class PollConfig(BaseSettings):
    """Run polling configuration."""

    model_config = SettingsConfigDict(
        env_prefix="COMFY_REMOTE_POLL__",
        env_ignore_empty=True,
    )

    interval: float = 1.5
    max_wait_ms: int = 600_000


class RetryConfig(BaseSettings):
    """Retry configuration for artifact downloads and store writes."""

    model_config = SettingsConfigDict(
        env_prefix="COMFY_REMOTE_RETRY__",
        env_ignore_empty=True,
    )

    max_retries: int = 3
    backoff_base: float = 0.5
    backoff_max: float = 8.0
    backoff_jitter: bool = True


class LoggingConfig(BaseSettings):
    """Logging configuration with OpenTelemetry support."""

    model_config = SettingsConfigDict(
        env_prefix="COMFY_REMOTE_LOGGING__",
        env_ignore_empty=True,
    )

    level: str = "INFO"
    format: str = "%(asctime)s | %(levelname)-8s | %(name)s | %(request_id)s | %(message)s"
    date_format: str = "%Y-%m-%d %H:%M:%S"
    file: str | None = None
    json_output: bool = False
    otel_enabled: bool = False
    otel_service_name: str = "comfy-remote"
    otel_endpoint: str | None = None


class HttpConfig(BaseSettings):
    """HTTP client configuration for backend traffic."""

    model_config = SettingsConfigDict(
        env_prefix="COMFY_REMOTE_HTTP__",
        env_ignore_empty=True,
    )

    max_connections: int = 50
    max_keepalive_connections: int = 10
    keepalive_expiry: float = 5.0

    # ComfyUI speaks HTTP/1.1; enabling this needs the h2 package
    http2: bool = False

    connect_timeout: float = 5.0
    read_timeout: float = 30.0
    write_timeout: float = 30.0
    pool_timeout: float = 10.0


class StorageConfig(BaseSettings):
    """On-disk locations for the workflow and history stores."""

    model_config = SettingsConfigDict(
        env_prefix="COMFY_REMOTE_STORAGE__",
        env_ignore_empty=True,
    )

    data_dir: Path = Path("data")
    workflows_file: str = "workflows.json"
    history_file: str = "history.json"
    outputs_dir: str = "outputs"

    @property
    def workflows_path(self) -> Path:
        return self.data_dir / self.workflows_file

    @property
    def history_path(self) -> Path:
        return self.data_dir / self.history_file

    @property
    def outputs_path(self) -> Path:
        return self.data_dir / self.outputs_dir


class ServerConfig(BaseSettings):
    """
    Web server and session gate configuration.

    Security Note:
        Default host is 127.0.0.1 (localhost only).
        Set COMFY_REMOTE_SERVER__HOST=0.0.0.0 to expose on network, and
        always change COMFY_REMOTE_SERVER__PASSWORD and
        COMFY_REMOTE_SERVER__AUTH_SECRET before doing so.
    """

    model_config = SettingsConfigDict(
        env_prefix="COMFY_REMOTE_SERVER__",
        env_ignore_empty=True,
    )

    host: str = "127.0.0.1"
    port: int = 3000
    password: SecretStr = SecretStr(DEFAULT_PASSWORD)
    auth_secret: SecretStr = SecretStr(DEFAULT_AUTH_SECRET)
    cookie_name: str = "comfyui_remote_session"
    cookie_max_age: int = 60 * 60 * 24 * 7
    secure_cookies: bool = False


class Settings(BaseSettings):
    """
    Main settings container using pydantic-settings.

    All settings are loaded from environment variables with COMFY_REMOTE_ prefix.
    Nested settings use double underscore (__) as delimiter.

    Usage:
        from comfy_remote.config import get_settings

        settings = get_settings()
        print(settings.backend.url)
        print(settings.poll.max_wait_ms)
    """

    model_config = SettingsConfigDict(
        env_prefix="COMFY_REMOTE_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        env_nested_delimiter="__",
        extra="ignore",
    )

    backend: BackendConfig = BackendConfig()
    poll: PollConfig = PollConfig()
    retry: RetryConfig = RetryConfig()
    logging: LoggingConfig = LoggingConfig()
    http: HttpConfig = HttpConfig()
    storage: StorageConfig = StorageConfig()
    server: ServerConfig = ServerConfig()

    version: str = "0.4.0"
    name: str = "comfy_remote"

    def to_dict(self) -> dict:
        """Export settings as dictionary (secrets omitted)."""
        return {
            "version": self.version,
            "backend": {
                "url": self.backend.url,
                "timeout_submit": self.backend.timeout_submit,
                "timeout_history": self.backend.timeout_history,
            },
            "poll": {
                "interval": self.poll.interval,
                "max_wait_ms": self.poll.max_wait_ms,
            },
            "retry": {
                "max_retries": self.retry.max_retries,
                "backoff_base": self.retry.backoff_base,
                "backoff_jitter": self.retry.backoff_jitter,
            },
            "logging": {
                "level": self.logging.level,
                "otel_enabled": self.logging.otel_enabled,
            },
            "http": {
                "http2": self.http.http2,
                "max_connections": self.http.max_connections,
                "connect_timeout": self.http.connect_timeout,
                "read_timeout": self.http.read_timeout,
            },
            "storage": {
                "data_dir": str(self.storage.data_dir),
            },
            "server": {
                "host": self.server.host,
                "port": self.server.port,
                "cookie_name": self.server.cookie_name,
            },
        }


# =============================================================================
# CACHED SETTINGS INSTANCE
# =============================================================================


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses @lru_cache to avoid re-reading environment/.env on every call.
    Call reload_settings() to pick up environment changes.
    """
    return Settings()


settings = get_settings()


def reload_settings() -> Settings:
    """Reload all settings from environment variables."""
    get_settings.cache_clear()
    global settings
    settings = get_settings()
    return settings
