# groupfleet/core/errors.py
"""
Error taxonomy for the fleet orchestrator.

Every failure carries a machine-checkable ``ErrorKind`` plus a human-readable
message so callers can record it in a result object instead of leaking a
stack trace.
"""
import enum
from typing import Optional, Dict, Any


class ErrorKind(str, enum.Enum):
    TRANSIENT = "transient"
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    PERMANENT = "permanent"
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    PERSISTENCE = "persistence"
    CONFIGURATION = "configuration"
    CONFLICT = "conflict"
    INTERNAL = "internal"


class FleetError(Exception):
    """Base class for every error raised by the orchestrator"""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str, *, target: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.target = target

    def to_dict(self) -> Dict[str, Any]:
        data = {"error": self.kind.value, "message": self.message}
        if self.target:
            data["target"] = self.target
        return data


# ────────────────────────────────────────────
# Gateway failures
# ────────────────────────────────────────────

class GatewayError(FleetError):
    """Failure reported by the messaging gateway"""

    retryable: bool = False


class TransientGatewayError(GatewayError):
    kind = ErrorKind.TRANSIENT
    retryable = True


class RateLimitError(TransientGatewayError):
    kind = ErrorKind.RATE_LIMITED


class GatewayTimeoutError(TransientGatewayError):
    kind = ErrorKind.TIMEOUT


class PermanentGatewayError(GatewayError):
    kind = ErrorKind.PERMANENT


class GroupNotFoundError(PermanentGatewayError):
    kind = ErrorKind.NOT_FOUND


class ForbiddenError(PermanentGatewayError):
    kind = ErrorKind.FORBIDDEN


# ────────────────────────────────────────────
# Local failures
# ────────────────────────────────────────────

class ConfigurationError(FleetError):
    """Series not found, connection missing or disconnected, invalid settings"""
    kind = ErrorKind.CONFIGURATION


class NotFoundError(ConfigurationError):
    """A referenced local record does not exist"""
    kind = ErrorKind.NOT_FOUND


class PersistenceError(FleetError):
    kind = ErrorKind.PERSISTENCE


class ConcurrencyConflictError(FleetError):
    """Compare-and-swap on the series pointer lost, or an operation is already running"""
    kind = ErrorKind.CONFLICT


def error_kind_of(exc: BaseException) -> ErrorKind:
    """Map any exception to an ErrorKind (unknown exceptions are INTERNAL)"""
    if isinstance(exc, FleetError):
        return exc.kind
    return ErrorKind.INTERNAL
