"""Custom exception types for mailweave.

The threading engine itself never raises for malformed mail data: cycles,
stale overrides and stale group members degrade to logged, local outcomes.
These exceptions cover the infrastructure around it (configuration files,
the SQLite store, message imports).

Every message should say what failed, where, and how to fix it.
"""


class MailweaveError(Exception):
    """Base exception for all mailweave errors."""

    pass


class ConfigValidationError(MailweaveError):
    """Raised when config.yaml fails Pydantic validation.

    Includes specific field errors with actionable messages.
    """

    pass


class ConfigLoadError(MailweaveError):
    """Raised when config.yaml cannot be loaded (file not found, YAML parse error)."""

    pass


class DatabaseError(MailweaveError):
    """Raised when SQLite operations fail."""

    pass


class MessageImportError(MailweaveError):
    """Raised when a message export cannot be parsed into message records.

    Attributes:
        source: File or stream the records were read from
        index: Position of the offending record, if known
    """

    def __init__(self, message: str, source: str | None = None, index: int | None = None):
        super().__init__(message)
        self.source = source
        self.index = index
