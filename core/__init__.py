"""
Core Module Package.

This package contains the core infrastructure components
that all other packages depend on.

Components:
- config: YAML + environment configuration
- exceptions: Error taxonomy
- constants: Chain constants and store key layout
"""

from .exceptions import (
    ErrorClass,
    PipelineError,
    TransientError,
    RpcTimeoutError,
    TransportDisconnectedError,
    StoreTimeoutError,
    PublishError,
    ValidationError,
    NormalizationError,
    MalformedPayloadError,
    ConfigurationError,
    ChainIdMismatchError,
    ConfigLoadError,
    ResourceExhaustionError,
    QueueFullError,
    ConnectorClosedError,
    classify_error,
)
from .config import (
    AppConfig,
    NetworkSettings,
    ConnectorSettings,
    FilterSettings,
    ProcessingSettings,
    RiskSettings,
    RedisSettings,
    KafkaSettings,
    LoggingSettings,
    ApiSettings,
    load_config,
)


__all__ = [
    "ErrorClass",
    "PipelineError",
    "TransientError",
    "RpcTimeoutError",
    "TransportDisconnectedError",
    "StoreTimeoutError",
    "PublishError",
    "ValidationError",
    "NormalizationError",
    "MalformedPayloadError",
    "ConfigurationError",
    "ChainIdMismatchError",
    "ConfigLoadError",
    "ResourceExhaustionError",
    "QueueFullError",
    "ConnectorClosedError",
    "classify_error",
    "AppConfig",
    "NetworkSettings",
    "ConnectorSettings",
    "FilterSettings",
    "ProcessingSettings",
    "RiskSettings",
    "RedisSettings",
    "KafkaSettings",
    "LoggingSettings",
    "ApiSettings",
    "load_config",
]
