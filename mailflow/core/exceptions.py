"""Custom exceptions for the mailflow automation engine."""

from typing import Optional, Dict, Any


class MailflowError(Exception):
    """Base exception for the automation engine."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class RetryableError(MailflowError):
    """Base class for errors that can be retried on a later attempt."""
    pass


class NonRetryableError(MailflowError):
    """Base class for errors that should not be retried."""
    pass


class ConfigurationError(MailflowError):
    """Raised when there's a configuration issue."""
    pass


class ValidationError(MailflowError):
    """Raised when data validation fails."""
    pass


class DatabaseError(MailflowError):
    """Raised when database operations fail."""
    pass


class ProviderError(MailflowError):
    """Raised when mailbox provider operations fail."""
    pass


class AuthorizationError(NonRetryableError, ProviderError):
    """Raised when the provider rejects the stored credentials."""
    pass


class AgentNotFoundError(MailflowError):
    """Raised when an agent does not exist."""
    pass


class WorkflowNotFoundError(MailflowError):
    """Raised when a workflow does not exist."""
    pass


class ActionError(MailflowError):
    """Raised when a workflow action fails."""
    pass


class UnknownActionError(NonRetryableError, ActionError):
    """Raised when a workflow declares an action type with no handler."""
    pass


class TemplateError(ValidationError):
    """Raised by strict template rendering when a path cannot be resolved."""
    pass


class WebhookError(ActionError):
    """Raised when an outbound webhook call fails."""
    pass


class ReplyGenerationError(ActionError):
    """Raised when AI reply generation fails."""
    pass


# Specific retryable errors
class RateLimitError(RetryableError, ProviderError):
    """Raised when provider rate limits are exceeded."""
    pass


class TemporaryProviderError(RetryableError, ProviderError):
    """Temporary provider error (5xx, network) left for the next tick."""
    pass


class TemporaryDatabaseError(RetryableError, DatabaseError):
    """Temporary database error that can be retried."""
    pass


# Specific non-retryable errors
class InvalidCredentialsError(AuthorizationError):
    """Refresh token expired or revoked; needs human re-authorization."""
    pass
