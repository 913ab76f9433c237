"""Configuration management for the token registry generator."""

from __future__ import annotations

import os
import tempfile
import tomllib
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, cast

from pydantic import AnyHttpUrl, BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..utils.constants import LARGEST_MINTS

DEFAULT_CONFIG_FILE = Path("config/app.toml")
CONFIG_FILE_ENV_VAR = "APP_CONFIG_FILE"
PROFILE_ENV_VAR = "REGISTRY_PROFILE"


class CacheBackend(str, Enum):
    """Supported persisted-cache media."""

    FILE = "file"
    SQLITE = "sqlite"
    MEMORY = "memory"


def _resolve_config_path() -> Path:
    env_value = os.getenv(CONFIG_FILE_ENV_VAR)
    if env_value:
        candidate = Path(env_value)
        if not candidate.is_absolute():
            candidate = Path.cwd() / candidate
        return candidate
    return Path.cwd() / DEFAULT_CONFIG_FILE


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result: Dict[str, Any] = {**base}
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(cast(Dict[str, Any], result[key]), value)
        else:
            result[key] = value
    return result


def _select_profile(data: Dict[str, Any]) -> Dict[str, Any]:
    if not data:
        return {}
    base_section = cast(Dict[str, Any], data.get("default", {}))
    requested = os.getenv(PROFILE_ENV_VAR)
    if not requested:
        profile_section = base_section.get("profile")
        if isinstance(profile_section, str):
            requested = profile_section
    requested = (requested or "default").lower()

    if requested in data and requested != "default":
        return _deep_merge(base_section, cast(Dict[str, Any], data[requested]))
    if base_section:
        return base_section
    return data


def _load_toml_config() -> Tuple[Dict[str, Any], Optional[Path]]:
    path = _resolve_config_path()
    if not path.exists():
        return {}, None
    with path.open("rb") as handle:
        payload = tomllib.load(handle)
    if not isinstance(payload, dict):
        return {}, path
    merged = _select_profile(payload)
    if not isinstance(merged, dict):
        return {}, path
    merged = {k: v for k, v in merged.items() if k != "profile"}
    merged["config_file"] = str(path)
    return merged, path


class RPCConfig(BaseModel):
    """Chain RPC endpoint and transport-level retry settings."""

    url: AnyHttpUrl = Field(default="https://api.mainnet-beta.solana.com")
    request_timeout: float = Field(default=30.0, ge=1.0, le=300.0)
    transport_retries: int = Field(default=3, ge=1, le=10)
    transport_retry_delay_seconds: float = Field(default=1.0, ge=0.0)

    @field_validator("request_timeout", mode="before")
    @classmethod
    def _parse_request_timeout(cls, value) -> float:
        if isinstance(value, str):
            return float(value)
        return value


class RetryConfig(BaseModel):
    """Backoff for re-issuing chain queries whose result was indeterminate."""

    backoff_seconds: float = Field(default=1.0, ge=0.0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    max_backoff_seconds: float = Field(default=30.0, ge=0.0)
    # None keeps retrying until the process is cancelled.
    max_passes: Optional[int] = Field(default=None, ge=1)


class ThrottleConfig(BaseModel):
    """Batch sizes and inter-batch delay for chain queries."""

    throttle_seconds: float = Field(default=0.0, ge=0.0)
    batch_signatures: int = Field(default=100, ge=1)
    batch_account_info: int = Field(default=250, ge=1)
    batch_token_holders: int = Field(default=5, ge=1)


class CacheConfig(BaseModel):
    """Where advisory chain-query results are persisted between runs."""

    backend: CacheBackend = Field(default=CacheBackend.FILE)
    directory: Path = Field(default_factory=lambda: Path(tempfile.gettempdir()))
    database_path: Path = Field(default=Path("./registry-cache.sqlite3"))


class GeneratorConfig(BaseModel):
    """Output list identity and aggregation controls."""

    chain_id: int = Field(default=101, ge=1)
    output_path: Path = Field(default=Path("./solana.tokenlist.json"))
    list_name: str = Field(default="Solana Token List")
    logo_uri: str = Field(default="")
    keywords: List[str] = Field(default_factory=lambda: ["solana", "spl"])
    source_workers: int = Field(default=8, ge=1, le=64)


class LegacyListConfig(BaseModel):
    """Curated legacy token list with full on-chain filtering."""

    enabled: bool = True
    url: AnyHttpUrl = Field(
        default="https://cdn.jsdelivr.net/gh/solana-labs/token-list@main/src/tokens/solana.tokenlist.json"
    )
    skip_tags: List[str] = Field(default_factory=lambda: ["lp-token"])
    signature_days: int = Field(default=30, ge=1)
    min_holders: int = Field(default=100, ge=0)
    large_holder_threshold: int = Field(default=1_000, ge=1)
    large_mints: List[str] = Field(default_factory=lambda: list(LARGEST_MINTS))
    banned_content: List[str] = Field(
        default_factory=lambda: ["scam", "phishing", "please ignore"]
    )
    throttle: ThrottleConfig = Field(default_factory=ThrottleConfig)

    @field_validator("large_mints", mode="before")
    @classmethod
    def _unique_mints(cls, value: Iterable[str]) -> List[str]:
        seen: set[str] = set()
        unique: List[str] = []
        for mint in value:
            if mint not in seen:
                unique.append(mint)
                seen.add(mint)
        return unique


class CoinGeckoConfig(BaseModel):
    """Listing catalogue with logo enrichment."""

    enabled: bool = True
    api_url: AnyHttpUrl = Field(default="https://api.coingecko.com/api/v3")
    pro_api_url: AnyHttpUrl = Field(default="https://pro-api.coingecko.com/api/v3")
    api_key: Optional[str] = None
    logo_batch_size: int = Field(default=50, ge=1)
    logo_throttle_seconds: float = Field(default=60.0, ge=0.0)
    throttle: ThrottleConfig = Field(default_factory=ThrottleConfig)


class TrustedListConfig(BaseModel):
    """Governance-style strict list; disabled until a URL is configured."""

    url: Optional[AnyHttpUrl] = None
    skip_tags: List[str] = Field(default_factory=list)
    throttle: ThrottleConfig = Field(default_factory=ThrottleConfig)


class JupiterListConfig(BaseModel):
    """Flat-array aggregator list."""

    enabled: bool = False
    url: AnyHttpUrl = Field(default="https://token.jup.ag/all")
    throttle: ThrottleConfig = Field(default_factory=ThrottleConfig)


class IgnoreListsConfig(BaseModel):
    """Static lists whose records are subtracted from the final set."""

    urls: List[AnyHttpUrl] = Field(default_factory=list)
    throttle: ThrottleConfig = Field(default_factory=ThrottleConfig)


class CatalogueHttpConfig(BaseModel):
    """Timeouts and retries for catalogue (non-RPC) HTTP calls."""

    timeout: float = Field(default=30.0, ge=1.0, le=300.0)
    retries: int = Field(default=3, ge=1, le=10)
    retry_delay_seconds: float = Field(default=1.0, ge=0.0)
    cache_ttl_seconds: int = Field(default=600, ge=0)


class MonitoringConfig(BaseModel):
    """Logging and metrics configuration."""

    log_level: str = Field(default="INFO")
    json_logs: bool = True
    metrics_snapshot_path: Optional[Path] = None


class AppConfig(BaseSettings):
    """Aggregated application configuration."""

    config_file: Optional[Path] = None
    rpc: RPCConfig = Field(default_factory=RPCConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    http: CatalogueHttpConfig = Field(default_factory=CatalogueHttpConfig)
    generator: GeneratorConfig = Field(default_factory=GeneratorConfig)
    legacy_list: LegacyListConfig = Field(default_factory=LegacyListConfig)
    coingecko: CoinGeckoConfig = Field(default_factory=CoinGeckoConfig)
    trusted_list: TrustedListConfig = Field(default_factory=TrustedListConfig)
    jupiter_list: JupiterListConfig = Field(default_factory=JupiterListConfig)
    ignore_lists: IgnoreListsConfig = Field(default_factory=IgnoreListsConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        def file_settings(_: Optional[BaseSettings] = None) -> Dict[str, Any]:
            payload, _ = _load_toml_config()
            return payload

        # Runtime environment variables win over static config file defaults.
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            file_settings,
            file_secret_settings,
        )

    @model_validator(mode="after")
    def _apply_rpc_provider(self) -> "AppConfig":
        helius_url = os.getenv("HELIUS_RPC_URL")
        if not helius_url:
            helius_key = os.getenv("HELIUS_API_KEY")
            if helius_key:
                helius_url = f"https://mainnet.helius-rpc.com/?api-key={helius_key.strip()}"
        if helius_url:
            self.rpc.url = helius_url
        return self


@lru_cache(maxsize=1)
def get_app_config() -> AppConfig:
    """Create a cached application configuration object."""

    return AppConfig()


__all__ = [
    "AppConfig",
    "CacheBackend",
    "CacheConfig",
    "CatalogueHttpConfig",
    "CoinGeckoConfig",
    "GeneratorConfig",
    "IgnoreListsConfig",
    "JupiterListConfig",
    "LegacyListConfig",
    "MonitoringConfig",
    "RPCConfig",
    "RetryConfig",
    "ThrottleConfig",
    "TrustedListConfig",
    "get_app_config",
]
