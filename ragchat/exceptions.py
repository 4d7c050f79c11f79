"""
EXCEPTIONS MODULE
=================

Error types raised by the services and mapped to HTTP responses in ragchat.main.

  ClientException  (4xx) - the caller can fix or retry the request.
  ServerException  (5xx) - something failed on our side or in a dependency.

There is no augmentation error type: retrieval errors during a chat are
recovered inside ConversationService and never reach the caller.
"""

from typing import Optional


class ChatServerException(Exception):
    """Base class for all errors raised by this service."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


# -----------------------------------------------------------------------------
# CLIENT SIDE (4xx)
# -----------------------------------------------------------------------------

class ClientException(ChatServerException):
    """The request cannot be served as sent."""


class InvalidRequestException(ClientException):
    """Malformed or empty input."""


class RateLimitExceeded(ClientException):
    """Admission denied by the rate limiter. Retry after `retry_after` seconds."""

    def __init__(self, message: str, key: str = "", retry_after: Optional[int] = None):
        super().__init__(message)
        self.key = key
        self.retry_after = retry_after


class KnowledgeNotFoundException(ClientException):
    """No knowledge entry with the requested id."""


# -----------------------------------------------------------------------------
# SERVER SIDE (5xx)
# -----------------------------------------------------------------------------

class ServerException(ChatServerException):
    """Failure inside the service or one of its dependencies."""


class KnowledgeStoreException(ServerException):
    """Embedding or storing knowledge segments failed; nothing was recorded."""


class CompletionException(ServerException):
    """The completion capability is missing or every attempt failed."""
