from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar

FROZEN_REASON_CODES: frozenset[str] = frozenset(
    {
        "invalid_request",
        "no_graph_data",
        "no_path",
        "disconnected_od",
        "upstream_data_unavailable",
        "upstream_data_malformed",
        "search_cancelled",
        "search_deadline_exceeded",
        "search_budget_exceeded",
    }
)


@dataclass(eq=False)
class RoutingError(ValueError):
    message: str
    reason_code: str = "upstream_data_unavailable"
    details: dict[str, Any] | None = None

    status_code: ClassVar[int] = 500

    def __str__(self) -> str:
        return self.message


@dataclass(eq=False)
class InvalidRequestError(RoutingError):
    reason_code: str = "invalid_request"

    status_code: ClassVar[int] = 400


@dataclass(eq=False)
class NoGraphDataError(RoutingError):
    """The road provider returned zero nodes for the queried area."""

    reason_code: str = "no_graph_data"


@dataclass(eq=False)
class NoPathFoundError(RoutingError):
    """Start and end snapped into different connected components."""

    reason_code: str = "no_path"


@dataclass(eq=False)
class UpstreamDataError(RoutingError):
    reason_code: str = "upstream_data_unavailable"


@dataclass(eq=False)
class SearchCancelledError(RoutingError):
    """The search loop was aborted before reaching a terminal state."""

    reason_code: str = "search_cancelled"


def normalize_reason_code(reason_code: str, *, default: str = "upstream_data_unavailable") -> str:
    code = str(reason_code or "").strip()
    if code in FROZEN_REASON_CODES:
        return code
    return default


def error_payload(exc: RoutingError) -> dict[str, Any]:
    return {
        "error": exc.message,
        "reason_code": normalize_reason_code(exc.reason_code),
    }
