from __future__ import annotations

from typing import List, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each class carries the HTTP status and the machine-readable code the
    client sees as ``{"error": "<code>"}``. Extra keys in ``detail`` are
    merged into that object.
    """

    status_code: int = 400
    error_code: str = "invalid_request"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ConfigurationError(ServiceError):
    """Required configuration is missing (500)."""
    status_code = 500
    error_code = "server_misconfigured"

    def __init__(self, missing: List[str]) -> None:
        super().__init__(
            f"missing configuration: {', '.join(missing)}",
            detail={"missing": list(missing)},
        )
        self.missing = list(missing)


class AuthRequiredError(ServiceError):
    """Bearer credential missing or not resolvable (401)."""
    status_code = 401
    error_code = "auth_required"


class SubscriptionRequiredError(ServiceError):
    """Caller lacks an active paid entitlement (402)."""
    status_code = 402
    error_code = "subscription_required"


class InvalidRequestError(ServiceError):
    """Malformed body or missing field (400)."""
    status_code = 400
    error_code = "invalid_request"


class OldUserNotFoundError(ServiceError):
    status_code = 400
    error_code = "old_user_not_found"


class OldUserNotAnonymousError(ServiceError):
    status_code = 400
    error_code = "old_user_not_anonymous"


class UpstreamUnavailableError(ServiceError):
    """Upstream completion API could not be reached at all (502)."""
    status_code = 502
    error_code = "upstream_unreachable"


class StepFailedError(ServiceError):
    """A dependent-system call failed during a multi-step operation (500).

    The error code names the step, e.g. ``delete_profile_failed``.
    """

    status_code = 500

    def __init__(self, step_code: str, message: str) -> None:
        super().__init__(message, error_code=step_code)


__all__ = [
    "ServiceError",
    "ConfigurationError",
    "AuthRequiredError",
    "SubscriptionRequiredError",
    "InvalidRequestError",
    "OldUserNotFoundError",
    "OldUserNotAnonymousError",
    "UpstreamUnavailableError",
    "StepFailedError",
]
