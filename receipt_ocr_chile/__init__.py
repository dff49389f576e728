"""
Receipt OCR for Chilean receipts
Rate-limited Google Vision recognition + result cache + field parser
"""

from .cache_manager import (
    InMemoryTTLStore,
    RedisTTLStore,
    ResultCache,
    content_hash_key,
    derive_cache_key,
)
from .errors import (
    CacheWriteFailure,
    DownloadCancelled,
    EmptyImageError,
    EmptyInputError,
    ImageDownloadError,
    ImageTooLargeError,
    NoAmountFoundError,
    OperationCancelled,
    ParsingFailedError,
    RateLimitCancelled,
    RateLimitTimeout,
    ReceiptOCRError,
    RecognitionFailedError,
)
from .models import DocumentType, ParsedReceipt, RecognitionResult
from .rate_limiter import RateLimiter
from .receipt_parser import PARSER_VERSION, ReceiptParser, format_rut, validate_rut
from .recognizer import GoogleVisionRecognizer, Recognizer
from .service import ReceiptOCRService, build_ocr_service, get_ocr_service

__version__ = "1.0.0"
__all__ = [
    "ReceiptOCRService",
    "build_ocr_service",
    "get_ocr_service",
    "ReceiptParser",
    "validate_rut",
    "format_rut",
    "PARSER_VERSION",
    "RateLimiter",
    "ResultCache",
    "InMemoryTTLStore",
    "RedisTTLStore",
    "derive_cache_key",
    "content_hash_key",
    "Recognizer",
    "GoogleVisionRecognizer",
    "DocumentType",
    "ParsedReceipt",
    "RecognitionResult",
    "ReceiptOCRError",
    "EmptyImageError",
    "EmptyInputError",
    "ImageTooLargeError",
    "ImageDownloadError",
    "RecognitionFailedError",
    "ParsingFailedError",
    "NoAmountFoundError",
    "CacheWriteFailure",
    "OperationCancelled",
    "RateLimitCancelled",
    "RateLimitTimeout",
    "DownloadCancelled",
]
