"""
Receipt OCR Error Types
=======================
Every failure the OCR core can surface to its callers.

The `retryable` flag tells the caller whether trying again later can help:
recognizer and download failures are usually transient, malformed input
never is.
"""


class ReceiptOCRError(Exception):
    """Base class for all receipt OCR errors"""

    retryable = False


# =============================================================================
# INPUT ERRORS
# =============================================================================

class EmptyImageError(ReceiptOCRError, ValueError):
    """No image bytes were supplied"""


class ImageTooLargeError(ReceiptOCRError, ValueError):
    """Image exceeds the configured byte cap"""

    def __init__(self, size: int, limit: int):
        self.size = size
        self.limit = limit
        super().__init__(f"Image is {size} bytes, limit is {limit} bytes")


class ImageDownloadError(ReceiptOCRError):
    """Image could not be fetched from its URL"""

    retryable = True

    def __init__(self, message: str, status_code: int = None):
        self.status_code = status_code
        super().__init__(message)


# =============================================================================
# RECOGNITION / PARSING ERRORS
# =============================================================================

class RecognitionFailedError(ReceiptOCRError):
    """The external recognizer failed"""

    retryable = True


class ParsingFailedError(ReceiptOCRError):
    """Recognized text could not be parsed at all"""


class EmptyInputError(ParsingFailedError, ValueError):
    """Parser was handed an empty string"""


class FieldNotFoundError(ReceiptOCRError):
    """A single field could not be extracted (never fatal for a parse)"""

    def __init__(self, field_name: str, message: str = None):
        self.field_name = field_name
        super().__init__(message or f"No {field_name} found in receipt text")


class NoAmountFoundError(FieldNotFoundError):
    def __init__(self):
        super().__init__("amount")


# =============================================================================
# CACHE ERRORS
# =============================================================================

class CacheWriteFailure(ReceiptOCRError):
    """Result could not be written to the cache store"""

    retryable = True


# =============================================================================
# CANCELLATION / RATE LIMITING
# =============================================================================

class OperationCancelled(ReceiptOCRError):
    """Caller withdrew while the operation was suspended"""

    retryable = True


class RateLimitCancelled(OperationCancelled):
    """Cancelled while waiting for rate limiter admission"""


class DownloadCancelled(OperationCancelled):
    """Cancelled while downloading an image; partial data was discarded"""


class RateLimitTimeout(ReceiptOCRError):
    """Admission would take longer than the caller was willing to wait"""

    retryable = True

    def __init__(self, wait_seconds: float, timeout: float):
        self.wait_seconds = wait_seconds
        self.timeout = timeout
        super().__init__(
            f"Rate limiter needs {wait_seconds:.3f}s, caller timeout is {timeout:.3f}s"
        )


__all__ = [
    "ReceiptOCRError",
    "EmptyImageError",
    "ImageTooLargeError",
    "ImageDownloadError",
    "RecognitionFailedError",
    "ParsingFailedError",
    "EmptyInputError",
    "FieldNotFoundError",
    "NoAmountFoundError",
    "CacheWriteFailure",
    "OperationCancelled",
    "RateLimitCancelled",
    "DownloadCancelled",
    "RateLimitTimeout",
]
