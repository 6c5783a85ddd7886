"""Exception hierarchy for the receipt pipeline"""
from typing import Optional


MAX_DIAGNOSTIC_CHARS = 500


class ReceiptLedgerError(Exception):
    """Base exception for receipt pipeline errors"""
    pass


class MalformedOutputError(ReceiptLedgerError):
    """Raised when model output cannot be coerced into a JSON object"""

    def __init__(self, message: str, raw: str = ""):
        super().__init__(message)
        self.raw = raw[:MAX_DIAGNOSTIC_CHARS]


class RecognitionError(ReceiptLedgerError):
    """Raised when the vision model call itself fails"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitError(RecognitionError):
    """Raised when the model service signals throttling (HTTP 429)"""

    def __init__(self, message: str = "Rate limit exceeded", retry_after: Optional[float] = None):
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class TransportError(RecognitionError):
    """Raised for any other network or service failure"""
    pass


class InvalidTransitionError(ReceiptLedgerError):
    """Raised when a file result is moved backwards through its lifecycle"""
    pass


def classify_error(exc: BaseException) -> RecognitionError:
    """Map an arbitrary recognizer failure onto the recognition taxonomy.

    SDK exceptions carry the HTTP status under different attribute names
    (``status_code`` for ollama, ``code`` for google-genai).
    """
    if isinstance(exc, RecognitionError):
        return exc

    status = getattr(exc, "status_code", None)
    if status is None:
        status = getattr(exc, "code", None)

    message = str(exc) or exc.__class__.__name__
    if status == 429:
        return RateLimitError(message)
    if isinstance(status, int):
        return TransportError(message, status_code=status)
    return TransportError(message)
