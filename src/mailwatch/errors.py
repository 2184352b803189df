"""Error taxonomy shared by every Mailwatch component.

Transient errors are retried with backoff; permanent errors never are.
Business outcomes (no matching rule, low confidence) and duplicates are
returned as values, not raised.
"""


class MailwatchError(Exception):
    """Base class for all Mailwatch errors."""


class TransientError(MailwatchError):
    """Network failures, rate limits, and provider 5xx responses."""


class PermanentError(MailwatchError):
    """Failures that will not succeed on retry."""


class AuthenticationError(PermanentError):
    """Credential rejected or revoked; stops the tenant's lifecycle."""


class NotFoundError(PermanentError):
    """The provider no longer has the requested resource."""


class CursorExpiredError(PermanentError):
    """The stored history cursor is older than the provider retains."""


class NotificationDecodeError(PermanentError, ValueError):
    """A push payload could not be decoded into a ChangeNotification."""


class ExtractionValidationError(PermanentError):
    """The extraction service returned an unusable response."""


class IngestionError(MailwatchError):
    """A message could not be recorded at all; its delta must be replayed."""
