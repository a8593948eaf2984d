"""Common exceptions for domain and repository layers."""
from __future__ import annotations


class DeliveryServiceError(Exception):
    """Base error for service layer."""


class RepositoryError(DeliveryServiceError):
    """Raised when repository operations fail."""


class NotFoundError(RepositoryError):
    """Raised when requested entity is missing."""


class RateLimitExceededError(DeliveryServiceError):
    """Raised when a submission gate rejects a client."""


class CaptchaVerificationError(DeliveryServiceError):
    """Raised when a captcha token is missing or rejected by the provider."""


class InvalidWebhookConfigError(DeliveryServiceError):
    """Raised when a submitted webhook configuration fails validation."""

    def __init__(self, fields: list[str]):
        super().__init__("Only HTTPS URLs are allowed")
        self.fields = fields


class EndpointNotConfiguredError(DeliveryServiceError):
    """Raised when a requested endpoint is missing or disabled."""
