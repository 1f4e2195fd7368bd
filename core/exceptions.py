"""
Core Module - Exceptions.

============================================================
RESPONSIBILITY
============================================================
Defines the exception hierarchy shared by every pipeline stage.

- Every error carries an error class used for metrics labels
- Every error carries the network it happened on (if any)
- Callers decide retry / skip / disable from the error class alone

============================================================
EXCEPTION HIERARCHY
============================================================
PipelineError (base)
├── TransientError              -> retry with backoff, keep checkpoint
│   ├── RpcTimeoutError
│   ├── TransportDisconnectedError
│   ├── StoreTimeoutError
│   └── PublishError
├── ValidationError             -> skip the unit, log, continue
│   ├── NormalizationError
│   └── MalformedPayloadError
├── ConfigurationError          -> disable the network
│   ├── ChainIdMismatchError
│   └── ConfigLoadError         -> fatal at startup
├── ResourceExhaustionError     -> bounded wait, drop with metric
│   └── QueueFullError
└── ConnectorClosedError

============================================================
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


# ============================================================
# ERROR CLASSIFICATION
# ============================================================

class ErrorClass(str, Enum):
    """How a failure is handled by the pipeline."""

    TRANSIENT = "transient"
    """Temporary failure, retry may succeed."""

    VALIDATION = "validation"
    """Malformed unit of work, skip it."""

    CONFIGURATION = "configuration"
    """Bad configuration, the network cannot run."""

    RESOURCE_EXHAUSTION = "resource_exhaustion"
    """Bounded resource is full."""


# ============================================================
# BASE EXCEPTION
# ============================================================

class PipelineError(Exception):
    """
    Base exception for all ingestion pipeline errors.

    All exceptions carry:
    - error_class: for retry/skip decisions and metric labels
    - network: which chain the failure belongs to
    - context: for debugging
    - original_error: the library exception that caused it
    """

    error_class: ErrorClass = ErrorClass.TRANSIENT

    def __init__(
        self,
        message: str,
        network: Optional[str] = None,
        original_error: Optional[BaseException] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.network = network
        self.original_error = original_error
        self.context = context or {}
        self.timestamp = datetime.now(timezone.utc)

        if original_error is not None:
            self.context.setdefault("cause_type", type(original_error).__name__)

    @property
    def is_retryable(self) -> bool:
        """Check if the operation may be retried."""
        return self.error_class == ErrorClass.TRANSIENT

    def to_dict(self) -> Dict[str, Any]:
        """Serialize exception for logging/storage."""
        return {
            "error_type": type(self).__name__,
            "error_class": self.error_class.value,
            "message": self.message,
            "network": self.network,
            "original_error": str(self.original_error) if self.original_error else None,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
        }

    def __str__(self) -> str:
        parts = [f"{self.__class__.__name__}: {self.message}"]
        if self.network:
            parts.append(f"[network={self.network}]")
        if self.original_error:
            parts.append(f"(caused by: {self.original_error})")
        return " ".join(parts)


# ============================================================
# TRANSIENT ERRORS
# ============================================================

class TransientError(PipelineError):
    """Temporary failure of an external dependency."""

    error_class = ErrorClass.TRANSIENT


class RpcTimeoutError(TransientError):
    """RPC call did not complete within the call timeout."""

    def __init__(
        self,
        method: str,
        timeout: float,
        network: Optional[str] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})
        context.update({"method": method, "timeout": timeout})
        super().__init__(
            f"RPC call {method} timed out after {timeout}s",
            network=network,
            context=context,
            **kwargs,
        )
        self.method = method


class TransportDisconnectedError(TransientError):
    """RPC or push transport is not connected."""


class StoreTimeoutError(TransientError):
    """Key-value store operation failed or timed out."""


class PublishError(TransientError):
    """Outbound transport rejected or failed to deliver a batch."""

    def __init__(
        self,
        message: str,
        topic: Optional[str] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})
        if topic:
            context["topic"] = topic
        super().__init__(message, context=context, **kwargs)
        self.topic = topic


# ============================================================
# VALIDATION ERRORS
# ============================================================

class ValidationError(PipelineError):
    """A single unit of work is malformed."""

    error_class = ErrorClass.VALIDATION


class NormalizationError(ValidationError):
    """Raw chain data could not be mapped to the canonical model."""

    def __init__(
        self,
        message: str,
        tx_hash: Optional[str] = None,
        field_name: Optional[str] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})
        if tx_hash:
            context["tx_hash"] = tx_hash
        if field_name:
            context["field"] = field_name
        super().__init__(message, context=context, **kwargs)
        self.tx_hash = tx_hash
        self.field_name = field_name


class MalformedPayloadError(ValidationError):
    """Push notification or outbound payload could not be parsed."""


# ============================================================
# CONFIGURATION ERRORS
# ============================================================

class ConfigurationError(PipelineError):
    """Configuration prevents a network (or the process) from running."""

    error_class = ErrorClass.CONFIGURATION


class ChainIdMismatchError(ConfigurationError):
    """Endpoint reports a different chain id than configured."""

    def __init__(self, expected: int, actual: int, network: Optional[str] = None):
        super().__init__(
            f"Chain ID mismatch: expected {expected}, got {actual}",
            network=network,
            context={"expected": expected, "actual": actual},
        )
        self.expected = expected
        self.actual = actual


class ConfigLoadError(ConfigurationError):
    """Configuration file could not be loaded or validated."""

    def __init__(self, message: str, path: Optional[str] = None, **kwargs):
        context = kwargs.pop("context", {})
        if path:
            context["path"] = path
        super().__init__(message, context=context, **kwargs)
        self.path = path


# ============================================================
# RESOURCE EXHAUSTION
# ============================================================

class ResourceExhaustionError(PipelineError):
    """A bounded resource is full."""

    error_class = ErrorClass.RESOURCE_EXHAUSTION


class QueueFullError(ResourceExhaustionError):
    """Outbound queue stayed full for the whole enqueue timeout."""

    def __init__(self, topic: str, timeout: float, **kwargs):
        super().__init__(
            f"Outbound queue full, dropped message for '{topic}' after {timeout}s",
            context={"topic": topic, "timeout": timeout},
            **kwargs,
        )
        self.topic = topic
        self.timeout = timeout


# ============================================================
# LIFECYCLE
# ============================================================

class ConnectorClosedError(PipelineError):
    """Operation attempted on a connector after close()."""

    error_class = ErrorClass.CONFIGURATION


def classify_error(error: BaseException) -> ErrorClass:
    """Map any exception to an error class for metric labels."""
    if isinstance(error, PipelineError):
        return error.error_class
    if isinstance(error, (TimeoutError, ConnectionError, OSError)):
        return ErrorClass.TRANSIENT
    if isinstance(error, (ValueError, TypeError, KeyError)):
        return ErrorClass.VALIDATION
    return ErrorClass.TRANSIENT
