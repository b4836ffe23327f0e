from __future__ import annotations

from dataclasses import dataclass
from typing import Any

REASON_CODES: frozenset[str] = frozenset(
    {
        "MISSING_COORDS",
        "ZERO_ELAPSED",
        "PROVIDER_DISABLED",
        "MISSING_CONFIG",
        "UPSTREAM_REJECTED",
        "UPSTREAM_UNAVAILABLE",
        "EMPTY_RESULT",
        "TRAVEL_MODES_EXHAUSTED",
        "STRATEGY_FAILED",
    }
)

# Reasons that describe the input rather than a degraded provider.
INPUT_REASON_CODES: frozenset[str] = frozenset({"MISSING_COORDS", "ZERO_ELAPSED"})


@dataclass
class RangeError(RuntimeError):
    reason_code: str
    message: str
    details: dict[str, Any] | None = None

    def __str__(self) -> str:
        return self.message


class MissingInput(RangeError):
    def __init__(self, message: str = "origin coordinates missing", *, details: dict[str, Any] | None = None) -> None:
        super().__init__(reason_code="MISSING_COORDS", message=message, details=details)


class ProviderDisabled(RangeError):
    def __init__(self, message: str = "provider disabled", *, details: dict[str, Any] | None = None) -> None:
        super().__init__(reason_code="PROVIDER_DISABLED", message=message, details=details)


class MissingConfig(RangeError):
    def __init__(self, message: str = "provider not configured", *, details: dict[str, Any] | None = None) -> None:
        super().__init__(reason_code="MISSING_CONFIG", message=message, details=details)


class UpstreamRejected(RangeError):
    """4xx from an external service; the request itself is unacceptable."""

    def __init__(self, message: str, *, status_code: int, details: dict[str, Any] | None = None) -> None:
        super().__init__(
            reason_code="UPSTREAM_REJECTED",
            message=message,
            details={"status_code": int(status_code), **(details or {})},
        )
        self.status_code = int(status_code)


class UpstreamUnavailable(RangeError):
    """Network failure, timeout or 5xx; may succeed on a later tick."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        merged = dict(details or {})
        if status_code is not None:
            merged["status_code"] = int(status_code)
        super().__init__(reason_code="UPSTREAM_UNAVAILABLE", message=message, details=merged or None)
        self.status_code = status_code


class EmptyResult(RangeError):
    def __init__(self, message: str = "provider returned no usable geometry", *, details: dict[str, Any] | None = None) -> None:
        super().__init__(reason_code="EMPTY_RESULT", message=message, details=details)


def normalize_reason_code(reason_code: str, *, default: str = "STRATEGY_FAILED") -> str:
    code = str(reason_code or "").strip().upper()
    if code in REASON_CODES:
        return code
    return default
