"""Runtime configuration loading and validation."""

from __future__ import annotations

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, ClassVar, Dict, Iterable, Literal

import yaml
from pydantic import AnyUrl, Field, NonNegativeInt, PositiveInt
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_CONFIG_LOCATIONS: tuple[Path, ...] = (
    Path("/etc/console-runtime/runtime.yaml"),
    Path("/etc/console-runtime/runtime.yml"),
    Path("./config/runtime.yaml"),
    Path("./config/runtime.yml"),
)


class RuntimeSettings(BaseSettings):
    """Validated settings for the console session and realtime runtime."""

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_prefix="CONSOLE_RUNTIME_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Endpoints
    api_base_url: AnyUrl = Field(
        default="http://localhost:3000/api",
        description="Base URL of the console REST API.",
    )
    ws_url: AnyUrl = Field(
        default="ws://localhost:3000/ws",
        description="Realtime (WebSocket) endpoint of the console backend.",
    )
    login_path: str = Field(default="/auth/login", description="Credential exchange endpoint.")
    verify_path: str = Field(default="/auth/verify", description="Session verification endpoint.")
    logout_path: str = Field(default="/auth/logout", description="Best-effort logout endpoint.")
    refresh_path: str = Field(default="/auth/refresh-token", description="Token refresh endpoint.")
    login_identifier_field: str = Field(
        default="email",
        description="Body field carrying the login identifier.",
    )
    login_secret_field: str = Field(
        default="password",
        description="Body field carrying the login secret.",
    )

    # Request gateway
    request_timeout_ms: PositiveInt = Field(
        default=30000,
        description="Timeout applied to each HTTP attempt.",
    )
    request_retry_attempts: NonNegativeInt = Field(
        default=3,
        description="Extra attempts made for transient request failures.",
    )
    request_retry_delay_ms: NonNegativeInt = Field(
        default=1000,
        description="Delay between request attempts.",
    )
    request_retry_backoff: Literal["fixed", "linear"] = Field(
        default="fixed",
        description="Whether the retry delay stays constant or grows with each attempt.",
    )
    retry_status_codes: list[int] = Field(
        default_factory=lambda: [408, 429, 500, 502, 503, 504],
        description="HTTP statuses treated as transient.",
    )

    # Realtime connection
    reconnect_delay_ms: NonNegativeInt = Field(
        default=1000,
        description="Base delay between reconnect attempts.",
    )
    reconnect_backoff: Literal["fixed", "linear", "exponential"] = Field(
        default="fixed",
        description="Growth strategy applied to the reconnect delay.",
    )
    reconnect_max_delay_ms: NonNegativeInt = Field(
        default=30000,
        description="Upper bound for the reconnect delay.",
    )
    max_reconnect_attempts: PositiveInt = Field(
        default=5,
        description="Consecutive failed attempts before the connection is considered exhausted.",
    )
    announce_on_connect: bool = Field(
        default=True,
        description="Send the admin-connect announcement after every successful connect.",
    )
    realtime_autoconnect: bool = Field(
        default=True,
        description="Open the realtime connection as soon as the session is authenticated.",
    )
    transport: Literal["dummy", "websocket"] = Field(
        default="websocket",
        description="Realtime transport implementation to use.",
    )

    # Transfers
    transfer_concurrency: PositiveInt = Field(
        default=2,
        description="Maximum number of transfers running at once.",
    )

    # Durable client storage
    storage_path: Path = Field(
        default=Path("./var/session.json"),
        description="File backing the durable token and profile store.",
    )
    token_key: str = Field(default="console_token", description="Storage key of the bearer token.")
    user_key: str = Field(default="console_user", description="Storage key of the cached user profile.")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Minimum log level for the runtime.",
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        if isinstance(value, str):
            return value.upper()
        return value

    @field_validator("retry_status_codes")
    @classmethod
    def _reject_unauthorized_retry(cls, value: list[int]) -> list[int]:
        if 401 in value:
            raise ValueError("401 responses invalidate the session and cannot be retried")
        return value

    config_path: Path | None = Field(
        default=None,
        description="Resolved path to the on-disk config that seeded the settings.",
        exclude=True,
    )

    @property
    def request_timeout_seconds(self) -> float:
        return self.request_timeout_ms / 1000.0

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[RuntimeSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            cls._yaml_settings_source,
            env_settings,
            dotenv_settings,
            file_secret_settings,
        )

    @staticmethod
    def _yaml_settings_source(settings_cls: type[RuntimeSettings] | None = None) -> Dict[str, Any]:
        candidates: Iterable[Path] = RuntimeSettings._resolve_candidate_paths()

        for path in candidates:
            data = RuntimeSettings._load_file(path)
            if data is not None:
                data.setdefault("config_path", path)
                return data
        return {}

    @staticmethod
    def _resolve_candidate_paths() -> Iterable[Path]:
        explicit = os.getenv("CONSOLE_RUNTIME_CONFIG_FILE")
        if explicit:
            yield Path(explicit).expanduser()
        yield from DEFAULT_CONFIG_LOCATIONS

    @staticmethod
    def _load_file(path: Path) -> Dict[str, Any] | None:
        if not path.is_file():
            return None
        suffix = path.suffix.lower()
        try:
            with path.open("r", encoding="utf-8") as handle:
                if suffix in {".yaml", ".yml"}:
                    raw = yaml.safe_load(handle)
                elif suffix == ".json":
                    raw = json.load(handle)
                else:
                    return None
        except OSError as exc:
            raise RuntimeError(f"Failed to read runtime config file {path}") from exc
        except (yaml.YAMLError, json.JSONDecodeError) as exc:
            raise ValueError(f"Invalid runtime config file {path}") from exc

        if raw is None:
            return {}
        if not isinstance(raw, dict):
            raise ValueError(f"Runtime config file {path} must contain a mapping at top level.")
        return raw


@lru_cache()
def get_settings() -> RuntimeSettings:
    """Return memoized runtime settings."""

    settings = RuntimeSettings()
    settings.storage_path = settings.storage_path.expanduser().resolve()
    return settings
