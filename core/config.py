"""
Core Module - Configuration.

============================================================
PURPOSE
============================================================
Loads the service configuration from a YAML file, expands
environment placeholders and validates it into typed models.

============================================================
SOURCES (highest precedence first)
============================================================
1. Well-known environment overrides (REDIS_HOST, KAFKA_BROKERS, ...)
2. ${VAR} / ${VAR:-default} placeholders inside the YAML
3. Values written in the YAML
4. Model defaults

A .env file next to the working directory is loaded first.

============================================================
USAGE
============================================================
    from core.config import load_config

    config = load_config("config.yaml")
    for network in config.enabled_networks():
        print(network.name, network.rpc_url)

============================================================
"""

import logging
import os
import re
from pathlib import Path
from urllib.parse import urlsplit
from typing import Any, Dict, List, Literal, Optional, Union

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator

from .constants import TOPIC_ALERTS, TOPIC_BLOCKS, TOPIC_TRANSACTIONS, WEI_PER_ETHER
from .exceptions import ConfigLoadError


logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")

REDACTED = "***"


# ============================================================
# SECTION MODELS
# ============================================================

class NetworkSettings(BaseModel):
    """One chain to ingest."""

    name: str = ""
    rpc_url: str
    ws_url: str = ""
    chain_id: int
    enabled: bool = True
    transport: Literal["auto", "push", "poll"] = "auto"
    start_block: Optional[int] = None

    @property
    def source_kind(self) -> str:
        """Resolved block source kind: push needs a websocket url."""
        if self.transport == "auto":
            return "push" if self.ws_url else "poll"
        return self.transport


class ConnectorSettings(BaseModel):
    """Connection lifecycle timings (seconds)."""

    health_check_interval: float = 30.0
    poll_interval: float = 5.0
    poll_jitter: float = 0.5
    reconnect_backoff: float = 1.0
    max_reconnect_backoff: float = 60.0
    call_timeout: float = 10.0
    unhealthy_after_failures: int = 3
    emit_interval: float = 0.1
    fetch_retry_backoff: float = 1.0
    max_fetch_retry_backoff: float = 30.0


class FilterSettings(BaseModel):
    min_value_wei: int = 0
    exclude_contracts: List[str] = Field(default_factory=list)
    include_addresses: List[str] = Field(default_factory=list)
    dedup_ttl_seconds: int = 300

    @field_validator("exclude_contracts", "include_addresses")
    @classmethod
    def _lowercase(cls, value: List[str]) -> List[str]:
        return [address.lower() for address in value]


class ProcessingSettings(BaseModel):
    batch_size: int = Field(default=50, ge=1)
    worker_count: int = Field(default=10, ge=1)
    subscribe_logs: bool = False
    subscribe_pending: bool = False


class RiskSettings(BaseModel):
    high_value_threshold_wei: int = 1000 * WEI_PER_ETHER
    abnormal_gas_fee_wei: int = 100 * WEI_PER_ETHER
    suspicious_hours: List[int] = Field(default_factory=lambda: [2, 3, 4, 5, 6])
    blacklist: List[str] = Field(default_factory=list)
    suspicious_contracts: List[str] = Field(default_factory=list)
    high_risk_retention: int = 10_000


class RedisSettings(BaseModel):
    host: str = "localhost"
    port: int = 6379
    password: str = ""
    db: int = 0
    timeout: float = 5.0


class KafkaTopics(BaseModel):
    transactions: str = TOPIC_TRANSACTIONS
    blocks: str = TOPIC_BLOCKS
    alerts: str = TOPIC_ALERTS


class KafkaProducerSettings(BaseModel):
    batch_size: int = Field(default=100, ge=1)
    batch_timeout: float = 1.0
    queue_size: int = Field(default=10_000, ge=1)
    enqueue_timeout: float = 5.0
    max_retries: int = 5
    retry_backoff: float = 0.5
    close_grace_period: float = 10.0


class KafkaSettings(BaseModel):
    brokers: List[str] = Field(default_factory=lambda: ["localhost:9092"])
    client_id: str = "chain-ingestion"
    topics: KafkaTopics = Field(default_factory=KafkaTopics)
    producer: KafkaProducerSettings = Field(default_factory=KafkaProducerSettings)

    @field_validator("brokers", mode="before")
    @classmethod
    def _split_brokers(cls, value: Union[str, List[str]]) -> List[str]:
        if isinstance(value, str):
            return [b.strip() for b in value.split(",") if b.strip()]
        return value


class LoggingSettings(BaseModel):
    level: str = "INFO"
    format: Literal["text", "json"] = "text"

    @field_validator("level")
    @classmethod
    def _upper(cls, value: str) -> str:
        return value.upper()


class TimeSeriesSettings(BaseModel):
    """Block / transaction points kept for windowed stats queries."""

    enabled: bool = True
    backend: Literal["store", "memory"] = "store"
    retention_seconds: int = Field(default=7 * 86_400, ge=60)


class ApiSettings(BaseModel):
    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 8082


# ============================================================
# ROOT MODEL
# ============================================================

class AppConfig(BaseModel):
    """Complete service configuration."""

    networks: Dict[str, NetworkSettings] = Field(default_factory=dict)
    connector: ConnectorSettings = Field(default_factory=ConnectorSettings)
    filter: FilterSettings = Field(default_factory=FilterSettings)
    processing: ProcessingSettings = Field(default_factory=ProcessingSettings)
    risk: RiskSettings = Field(default_factory=RiskSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    kafka: KafkaSettings = Field(default_factory=KafkaSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    api: ApiSettings = Field(default_factory=ApiSettings)
    timeseries: TimeSeriesSettings = Field(default_factory=TimeSeriesSettings)

    def model_post_init(self, __context: Any) -> None:
        for name, network in self.networks.items():
            if not network.name:
                network.name = name

    def enabled_networks(self) -> List[NetworkSettings]:
        """Networks to start, in configuration order."""
        return [n for n in self.networks.values() if n.enabled]

    def redacted(self) -> Dict[str, Any]:
        """JSON-safe view with the Redis password and endpoint credentials masked."""
        data = self.model_dump(mode="json")
        if data["redis"].get("password"):
            data["redis"]["password"] = REDACTED
        for network in data["networks"].values():
            for field in ("rpc_url", "ws_url"):
                network[field] = _redact_url(network[field])
        return data


def _redact_url(url: str) -> str:
    """Keep scheme, host and port; providers put API keys in the path, query or userinfo."""
    if not url:
        return url
    parts = urlsplit(url)
    try:
        port = parts.port
    except ValueError:
        return REDACTED
    if not parts.hostname:
        return REDACTED
    host = f"{parts.hostname}:{port}" if port else parts.hostname
    secret = parts.path.strip("/") or parts.query or parts.username
    return f"{parts.scheme}://{host}" + (f"/{REDACTED}" if secret else "")


# ============================================================
# LOADING
# ============================================================

def _expand_placeholders(value: Any) -> Any:
    """Recursively replace ${VAR} / ${VAR:-default} in strings."""
    if isinstance(value, str):
        return _PLACEHOLDER.sub(
            lambda m: os.getenv(m.group(1), m.group(2) or ""),
            value,
        )
    if isinstance(value, dict):
        return {k: _expand_placeholders(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_placeholders(v) for v in value]
    return value


def _apply_env_overrides(data: Dict[str, Any]) -> Dict[str, Any]:
    """Apply well-known environment variable overrides."""
    redis_section = data.setdefault("redis", {}) or {}
    if os.getenv("REDIS_HOST"):
        redis_section["host"] = os.getenv("REDIS_HOST")
    if os.getenv("REDIS_PORT"):
        try:
            redis_section["port"] = int(os.getenv("REDIS_PORT"))
        except ValueError as e:
            raise ConfigLoadError(
                f"REDIS_PORT must be an integer, got {os.getenv('REDIS_PORT')!r}",
                original_error=e,
            ) from e
    if os.getenv("REDIS_PASSWORD"):
        redis_section["password"] = os.getenv("REDIS_PASSWORD")
    data["redis"] = redis_section

    if os.getenv("KAFKA_BROKERS"):
        kafka_section = data.setdefault("kafka", {}) or {}
        kafka_section["brokers"] = os.getenv("KAFKA_BROKERS")
        data["kafka"] = kafka_section

    if os.getenv("LOG_LEVEL"):
        logging_section = data.setdefault("logging", {}) or {}
        logging_section["level"] = os.getenv("LOG_LEVEL")
        data["logging"] = logging_section

    return data


def parse_config(data: Optional[Dict[str, Any]]) -> AppConfig:
    """Validate an already-parsed mapping into an AppConfig."""
    data = _expand_placeholders(data or {})
    data = _apply_env_overrides(data)
    try:
        return AppConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigLoadError(f"Invalid configuration: {e}", original_error=e) from e


def load_config(path: Union[str, Path], env_file: Optional[str] = None) -> AppConfig:
    """
    Load configuration from a YAML file.

    Args:
        path: YAML file path
        env_file: Optional .env path (defaults to dotenv discovery)

    Returns:
        Validated AppConfig

    Raises:
        ConfigLoadError: File missing, unparseable or invalid
    """
    load_dotenv(env_file)

    path = Path(path)
    if not path.exists():
        raise ConfigLoadError(f"Config file not found: {path}", path=str(path))

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigLoadError(f"Failed to parse YAML: {e}", path=str(path), original_error=e) from e

    if data is not None and not isinstance(data, dict):
        raise ConfigLoadError("Top-level YAML must be a mapping", path=str(path))

    config = parse_config(data)
    logger.info(
        f"Loaded configuration from {path} | "
        f"networks={[n.name for n in config.enabled_networks()]}"
    )
    return config
