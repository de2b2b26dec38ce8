"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.

Every error carries a ``retryable`` flag; the retry policy and the webhook
queue read it instead of matching on concrete classes.
"""

from typing import ClassVar
from uuid import UUID


class AutomationError(Exception):
    """Base exception for all automation errors."""

    retryable: ClassVar[bool] = False
    reason_code: ClassVar[str] = "unhandled"


class NotConnectedError(AutomationError):
    """Raised when a merchant has no messaging credential on file."""

    reason_code: ClassVar[str] = "not_connected"

    def __init__(self, merchant_id: UUID) -> None:
        self.merchant_id = merchant_id
        super().__init__(f"Merchant {merchant_id} has not connected a messaging account")


class ReauthRequiredError(AutomationError):
    """Raised when the stored token is permanently invalid."""

    reason_code: ClassVar[str] = "reauth_required"

    def __init__(self, merchant_id: UUID | None, reason: str) -> None:
        self.merchant_id = merchant_id
        self.reason = reason
        super().__init__(f"Re-authentication required for merchant {merchant_id}: {reason}")


class TemporarilyUnavailableError(AutomationError):
    """Raised on network failures, timeouts and 5xx responses."""

    retryable: ClassVar[bool] = True
    reason_code: ClassVar[str] = "temporarily_unavailable"

    def __init__(self, operation: str, detail: str) -> None:
        self.operation = operation
        self.detail = detail
        super().__init__(f"{operation} temporarily unavailable: {detail}")


class RateLimitedError(AutomationError):
    """Raised when the provider throttles us. Honors Retry-After when given."""

    retryable: ClassVar[bool] = True
    reason_code: ClassVar[str] = "rate_limited"

    def __init__(self, operation: str, retry_after: float | None = None) -> None:
        self.operation = operation
        self.retry_after = retry_after
        suffix = f", retry after {retry_after}s" if retry_after is not None else ""
        super().__init__(f"{operation} rate limited{suffix}")


class PermissionDeniedError(AutomationError):
    """Raised when the provider rejects the token's scope."""

    reason_code: ClassVar[str] = "permission_denied"

    def __init__(self, operation: str, code: int | None, detail: str) -> None:
        self.operation = operation
        self.code = code
        self.detail = detail
        super().__init__(f"{operation} permission denied (code {code}): {detail}")


class ClassificationFailedError(AutomationError):
    """Raised when the classifier returns nothing usable."""

    reason_code: ClassVar[str] = "classification_failed"

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(f"Classification failed: {detail}")


class DispatchFailedError(AutomationError):
    """Raised when the provider rejects an outbound message."""

    reason_code: ClassVar[str] = "dispatch_failed"

    def __init__(self, code: int | None, detail: str, retryable: bool = False) -> None:
        self.code = code
        self.detail = detail
        # Instance attribute shadows the class flag: transport failures retry,
        # content rejections do not.
        self.retryable = retryable  # type: ignore[misc]
        super().__init__(f"Dispatch failed (code {code}): {detail}")


class CompositionFailedError(AutomationError):
    """Raised when no non-empty reply text could be produced."""

    reason_code: ClassVar[str] = "composition_failed"

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(f"Reply composition failed: {detail}")


class LinkBuildError(AutomationError):
    """Raised when a storefront link cannot be built."""

    def __init__(self, kind: str, detail: str) -> None:
        self.kind = kind
        self.detail = detail
        super().__init__(f"Cannot build {kind} link: {detail}")


class CatalogUnavailableError(AutomationError):
    """Raised when the commerce catalog cannot answer a product lookup."""

    def __init__(self, product_id: str, detail: str) -> None:
        self.product_id = product_id
        self.detail = detail
        super().__init__(f"Catalog lookup failed for {product_id}: {detail}")


class MerchantNotFoundError(AutomationError):
    """Raised when no merchant matches the lookup key."""

    reason_code: ClassVar[str] = "merchant_not_found"

    def __init__(self, lookup: str) -> None:
        self.lookup = lookup
        super().__init__(f"Merchant not found: {lookup}")


class WebhookVerificationError(AutomationError):
    """Raised when webhook verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Webhook verification error: {message}")


class ModelRequestError(AutomationError):
    """Raised when the language model rejects a request outright (auth, bad request)."""

    def __init__(self, operation: str, status_code: int | None, detail: str) -> None:
        self.operation = operation
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"{operation} rejected by model API (status {status_code}): {detail}")
