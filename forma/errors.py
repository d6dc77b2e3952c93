from __future__ import annotations


class FormaError(Exception):
    """Base class for every error raised by forma."""


class ExtractionError(FormaError):
    def __init__(self, message: str, excerpt: str = "") -> None:
        super().__init__(message)
        self.excerpt = excerpt


class TransientServiceError(FormaError):
    """The remote model is temporarily unavailable; retrying may succeed."""


class AIServiceError(FormaError):
    pass


class UnsupportedInputError(FormaError):
    pass


class RemoteOperationError(FormaError):
    pass


class AuthenticationError(FormaError):
    """The calendar store rejected our credentials; re-authentication is required."""


class BatchConfigError(FormaError, ValueError):
    pass
