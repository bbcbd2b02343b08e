from __future__ import annotations

from typing import Any

FROZEN_REASON_CODES: frozenset[str] = frozenset(
    {
        "network_error",
        "provider_http_error",
        "decode_error",
        "no_route_found",
        "insufficient_geometry",
        "no_matchings",
        "provider_exhausted",
        "restriction_query_failed",
        "map_matching_failed",
        "session_not_found",
        "provider_not_configured",
    }
)


def normalize_reason_code(reason_code: str, *, default: str = "provider_exhausted") -> str:
    code = str(reason_code or "").strip()
    if code in FROZEN_REASON_CODES:
        return code
    return default


class TruckRouteError(RuntimeError):
    reason_code: str = "provider_exhausted"

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.details = dict(details or {})

    def __str__(self) -> str:
        return self.message

    def as_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "reason_code": normalize_reason_code(self.reason_code),
            "message": self.message,
        }
        if self.provider:
            out["provider"] = self.provider
        if self.details:
            out["details"] = self.details
        return out


class NetworkError(TruckRouteError):
    """Transport failure or timeout talking to a provider."""

    reason_code = "network_error"


class ProviderHTTPError(NetworkError):
    """Provider answered with a non-success status."""

    reason_code = "provider_http_error"

    def __init__(self, message: str, *, status_code: int | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.status_code = status_code


class ProviderNotConfigured(NetworkError):
    reason_code = "provider_not_configured"


class DecodeError(TruckRouteError):
    """Malformed provider payload."""

    reason_code = "decode_error"


class NoRouteFound(TruckRouteError):
    reason_code = "no_route_found"


class InsufficientGeometry(TruckRouteError):
    reason_code = "insufficient_geometry"


class NoMatchings(TruckRouteError):
    reason_code = "no_matchings"


class MapMatchingFailed(TruckRouteError):
    reason_code = "map_matching_failed"


class RestrictionQueryFailed(TruckRouteError):
    reason_code = "restriction_query_failed"


class SessionNotFound(TruckRouteError):
    reason_code = "session_not_found"


class ProviderExhausted(TruckRouteError):
    """Primary and fallback both failed. Terminal for the request."""

    reason_code = "provider_exhausted"

    def __init__(self, message: str, *, errors: list[TruckRouteError], **kwargs: Any) -> None:
        details = dict(kwargs.pop("details", None) or {})
        details["attempts"] = [
            {"provider": e.provider, "reason_code": e.reason_code, "message": e.message}
            for e in errors
        ]
        super().__init__(message, details=details, **kwargs)
        self.errors = list(errors)


# Terminal for a route computation; everything else degrades.
TERMINAL_ROUTING_ERRORS: tuple[type[TruckRouteError], ...] = (ProviderExhausted, NoRouteFound)
