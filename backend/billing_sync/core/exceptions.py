"""
Custom exception hierarchy for structured error handling.

WHY: Custom exceptions provide:
1. Consistent error responses from every endpoint
2. HTTP status code mapping for FastAPI
3. Contextual data (provider, subscription id) for debugging
4. No credential leaks in error payloads

Provider failures are wrapped in ExternalServiceError subclasses so the
sync loops can count them per row instead of aborting a whole run.
"""

from typing import Any, Dict, Optional


class AppException(Exception):
    """
    Base exception class for all application exceptions.

    WHY: Centralizing exception handling in a base class ensures consistent
    error responses and HTTP status code mapping.

    All custom exceptions should inherit from this class.
    """

    status_code: int = 500
    default_message: str = "An unexpected error occurred"

    def __init__(
        self,
        message: Optional[str] = None,
        status_code: Optional[int] = None,
        **context: Any,
    ):
        """
        Initialize exception with message and context.

        Args:
            message: Human-readable error message
            status_code: HTTP status code (overrides class default)
            **context: Additional context for debugging (filtered in to_dict)
        """
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code
        self.context = context
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """
        Serialize exception to dictionary for JSON response.

        Returns:
            Dictionary with error details (sensitive fields filtered out)
        """
        sensitive_fields = {"password", "token", "secret", "key", "api_key", "access_token"}
        filtered_context = {
            k: v for k, v in self.context.items() if k.lower() not in sensitive_fields
        }

        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "status_code": self.status_code,
            "details": filtered_context if filtered_context else None,
        }


# ============================================================================
# Authentication Exceptions
# ============================================================================


class AuthenticationError(AppException):
    """
    Raised when a bearer secret is missing or wrong.

    HTTP Status: 401 Unauthorized
    """

    status_code = 401
    default_message = "Authentication failed"


# ============================================================================
# Validation & Resource Exceptions
# ============================================================================


class ValidationError(AppException):
    """
    Raised when input validation fails.

    HTTP Status: 400 Bad Request
    """

    status_code = 400
    default_message = "Validation failed"


class ResourceNotFoundError(AppException):
    """
    Raised when a requested resource doesn't exist.

    HTTP Status: 404 Not Found
    """

    status_code = 404
    default_message = "Resource not found"


class ProfileNotFoundError(ResourceNotFoundError):
    default_message = "Profile not found"


# ============================================================================
# External Service Exceptions
# ============================================================================


class ExternalServiceError(AppException):
    """
    Base exception for external service failures.

    WHY: Provider API failures should return 502 Bad Gateway, indicating
    the problem is with an upstream service, not our application.

    HTTP Status: 502 Bad Gateway
    """

    status_code = 502
    default_message = "External service error"


class StripeError(ExternalServiceError):
    """
    Raised when Stripe API calls fail.

    Note: a missing subscription (resource_missing) is not an error; the
    client returns None for it.
    """

    default_message = "Stripe API error"


class PayPalError(ExternalServiceError):
    """
    Raised when PayPal REST calls fail with anything other than 404.
    """

    default_message = "PayPal API error"


class PayPalAuthError(PayPalError):
    """
    Raised when the OAuth client-credentials exchange fails.

    WHY: Bad credentials break every call for an account, so callers may
    want to stop early instead of counting one error per subscription.
    """

    default_message = "PayPal authentication failed"


# ============================================================================
# Webhook Exceptions
# ============================================================================


class WebhookSignatureError(AppException):
    """
    Raised when a webhook payload fails signature verification.

    HTTP Status: 400 Bad Request (providers treat 4xx as "do not retry")
    """

    status_code = 400
    default_message = "Invalid webhook signature"


# ============================================================================
# Sync Exceptions
# ============================================================================


class ReconciliationError(AppException):
    """
    Raised when a sync run cannot start at all.

    WHY: Per-row failures are counted, not raised. This is for failures
    that make the whole run meaningless (e.g. the subscriptions query
    failing).

    HTTP Status: 500 Internal Server Error
    """

    status_code = 500
    default_message = "Subscription reconciliation failed"
