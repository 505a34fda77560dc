from __future__ import annotations

import re
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

_SIZE_UNITS = {
    "": 1,
    "b": 1,
    "kb": 1024,
    "mb": 1024 * 1024,
    "gb": 1024 * 1024 * 1024,
}
_SIZE_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([a-z]*)\s*$")

REQUIRED_SETTINGS = ("client_id", "client_secret", "token_url", "api_base_url")


class ConfigurationError(RuntimeError):
    """Raised when the proxy is started without its required settings."""


class Settings(BaseSettings):
    client_id: str | None = None
    client_secret: str | None = None
    token_url: str | None = None
    api_base_url: str | None = None
    ca_bundle_path: str = "certificates/ca-bundle.cer"
    proxy_host: str = "0.0.0.0"
    proxy_port: int = 8080
    request_size_limit: str = "50mb"
    max_tokens: int = 4096
    temperature: float = 0.7
    top_p: float = 1.0
    frequency_penalty: float = 0.0
    presence_penalty: float = 0.0
    token_refresh_interval_seconds: float = 900.0
    token_fetch_timeout_seconds: float = 30.0
    upstream_timeout_seconds: float = 120.0
    telemetry_interval_seconds: float = 2.0
    metrics_capacity: int = 100
    dashboard_dir: str = "public"
    served_by: str = "codex-oauth-proxy"

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def missing_required(self) -> list[str]:
        return [name.upper() for name in REQUIRED_SETTINGS if not getattr(self, name)]

    @property
    def request_size_limit_bytes(self) -> int:
        return parse_size_limit(self.request_size_limit)

    def require_complete(self) -> None:
        missing = self.missing_required
        if missing:
            raise ConfigurationError(
                "Missing required environment variables: " + ", ".join(missing)
            )


def parse_size_limit(value: str | int) -> int:
    if isinstance(value, int):
        return max(0, value)
    match = _SIZE_PATTERN.match(value.lower())
    if match is None or match.group(2) not in _SIZE_UNITS:
        raise ValueError(f"Invalid size limit: {value!r}")
    amount, unit = match.groups()
    return int(float(amount) * _SIZE_UNITS[unit])


@lru_cache
def get_settings() -> Settings:
    return Settings()
