#!/usr/bin/env python3
"""
Receipt OCR Service
===================
Turns a receipt image into a ParsedReceipt:

    image bytes -> cache lookup -> rate limiter -> recognizer -> parser
                -> confidence fusion -> cache write -> caller

- Cache hits skip both the rate limiter and the recognizer
- Recognizer failures surface as RecognitionFailedError (retryable)
- Cache write failures are logged and never reach the caller
- Waits (rate limiter, downloads) honour a caller-supplied threading.Event

Usage:
    service = get_ocr_service()
    receipt = service.analyze(image_bytes)
    receipt = service.analyze_from_url("https://bucket.example/receipt.jpg")
"""

import threading
import time
from typing import Any, Dict, Optional

import requests

from .cache_manager import KEY_STRATEGIES, InMemoryTTLStore, RedisTTLStore, ResultCache
from .errors import (
    CacheWriteFailure,
    DownloadCancelled,
    EmptyImageError,
    ImageDownloadError,
    ImageTooLargeError,
    ParsingFailedError,
    ReceiptOCRError,
    RecognitionFailedError,
)
from .logging_config import AnalysisContext, get_logger, log_timing, log_timing_context
from .models import OCR_CONFIDENCE, ParsedReceipt
from .rate_limiter import RateLimiter
from .receipt_parser import ReceiptParser
from .recognizer import GoogleVisionRecognizer, Recognizer
from .settings import Settings, get_settings

logger = get_logger(__name__)

DEFAULT_DOWNLOAD_TIMEOUT = 30.0
DEFAULT_MAX_IMAGE_BYTES = 10 * 1024 * 1024
DOWNLOAD_CHUNK_SIZE = 64 * 1024

# Recognizer confidence dominates: a bad OCR pass cannot be rescued by the parser
OCR_WEIGHT = 0.6
PARSER_WEIGHT = 0.4


def combine_confidence(ocr_confidence: float, parser_confidence: float) -> float:
    return min(1.0, max(0.0, OCR_WEIGHT * ocr_confidence + PARSER_WEIGHT * parser_confidence))


class ReceiptOCRService:
    """
    Orchestrates cache, rate limiter, recognizer and parser.

    Args:
        recognizer: Text recognizer (Google Vision in production)
        rate_limiter: Shared limiter guarding recognizer calls
        cache: ResultCache, or None to disable caching
        parser: ReceiptParser instance
        session: requests.Session for URL downloads. Sessions are not thread-safe,
            so only inject one that is not shared across threads; by default each
            download uses a one-off requests.get
        download_timeout: Total seconds allowed for a URL download
        max_image_bytes: Largest image accepted
    """

    def __init__(
        self,
        recognizer: Recognizer,
        rate_limiter: Optional[RateLimiter] = None,
        cache: Optional[ResultCache] = None,
        parser: Optional[ReceiptParser] = None,
        session: Optional[requests.Session] = None,
        download_timeout: float = DEFAULT_DOWNLOAD_TIMEOUT,
        max_image_bytes: int = DEFAULT_MAX_IMAGE_BYTES,
    ):
        self.recognizer = recognizer
        self.rate_limiter = rate_limiter or RateLimiter()
        self.cache = cache
        self.parser = parser or ReceiptParser()
        self.session = session
        self.download_timeout = download_timeout
        self.max_image_bytes = max_image_bytes

        self._stats_lock = threading.Lock()
        self._counters = {
            "cache_hits": 0,
            "cache_misses": 0,
            "cache_write_failures": 0,
            "recognizer_calls": 0,
            "recognizer_failures": 0,
        }

    # =========================================================================
    # ANALYSIS
    # =========================================================================

    def analyze(self, image_data: bytes, cancel_event: Optional[threading.Event] = None) -> ParsedReceipt:
        """
        Extract receipt fields from image bytes.

        Raises:
            EmptyImageError: no bytes supplied
            ImageTooLargeError: image exceeds max_image_bytes
            RateLimitCancelled: cancel_event fired while waiting for the limiter
            RecognitionFailedError: recognizer call failed
            ParsingFailedError: recognized text could not be parsed
        """
        if not image_data:
            raise EmptyImageError("Image data is empty")
        if len(image_data) > self.max_image_bytes:
            raise ImageTooLargeError(len(image_data), self.max_image_bytes)

        cache_key = self.cache.key_for(image_data) if self.cache is not None else None
        previous_context = AnalysisContext.as_dict()
        AnalysisContext.set(cache_key=cache_key[:40] if cache_key else None, image_bytes=len(image_data))
        try:
            if self.cache is not None:
                cached = self.cache.get(cache_key)
                if cached is not None:
                    self._count("cache_hits")
                    logger.debug("OCR cache hit")
                    return cached
                self._count("cache_misses")

            self.rate_limiter.wait(cancel_event)
            recognition = self._recognize(image_data)

            if not recognition.full_text:
                logger.info("Recognizer returned no text")
                return ParsedReceipt.empty()

            try:
                parsed = self.parser.parse(recognition.full_text)
            except ParsingFailedError:
                raise
            except Exception as e:
                raise ParsingFailedError(f"Could not parse receipt text: {e}") from e

            ocr_confidence = min(1.0, max(0.0, float(recognition.confidence)))
            result = parsed.with_confidence(
                combine_confidence(ocr_confidence, parsed.confidence),
                **{OCR_CONFIDENCE: ocr_confidence},
            )

            if self.cache is not None:
                self._write_cache(cache_key, result)

            logger.info(
                f"Receipt analyzed: amount={result.amount} rut={result.merchant_rut} "
                f"type={result.document_type.value} confidence={result.confidence:.2f}",
                extra={"language": recognition.language},
            )
            return result
        finally:
            AnalysisContext.clear()
            AnalysisContext.set(**previous_context)

    def _recognize(self, image_data: bytes):
        self._count("recognizer_calls")
        try:
            with log_timing_context("recognizer_call", logger):
                return self.recognizer.analyze_receipt(image_data)
        except RecognitionFailedError:
            self._count("recognizer_failures")
            raise
        except ReceiptOCRError:
            raise
        except Exception as e:
            self._count("recognizer_failures")
            raise RecognitionFailedError(f"Recognizer failed: {e}") from e

    def _write_cache(self, cache_key: str, result: ParsedReceipt):
        try:
            self.cache.put(cache_key, result)
        except CacheWriteFailure as e:
            self._count("cache_write_failures")
            logger.warning(f"OCR result not cached: {e}")

    # =========================================================================
    # URL DOWNLOADS
    # =========================================================================

    def analyze_from_url(self, url: str, cancel_event: Optional[threading.Event] = None) -> ParsedReceipt:
        """
        Download an image and analyze it.

        Raises:
            ImageDownloadError: bad URL, HTTP error status, transport error or timeout
            ImageTooLargeError: body exceeds max_image_bytes
            DownloadCancelled: cancel_event fired during the download
            (plus everything analyze() raises)
        """
        image_data = self.download_image(url, cancel_event)
        return self.analyze(image_data, cancel_event)

    @log_timing("image_download")
    def download_image(self, url: str, cancel_event: Optional[threading.Event] = None) -> bytes:
        if not url:
            raise ImageDownloadError("Image URL is empty")

        deadline = time.monotonic() + self.download_timeout
        chunks = []
        received = 0

        try:
            http = self.session if self.session is not None else requests
            with http.get(url, stream=True, timeout=self.download_timeout) as response:
                if response.status_code != 200:
                    raise ImageDownloadError(
                        f"HTTP {response.status_code} downloading image", status_code=response.status_code
                    )

                for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                    if cancel_event is not None and cancel_event.is_set():
                        raise DownloadCancelled("Cancelled while downloading image")
                    if time.monotonic() > deadline:
                        raise ImageDownloadError(f"Image download exceeded {self.download_timeout}s")

                    received += len(chunk)
                    if received > self.max_image_bytes:
                        raise ImageTooLargeError(received, self.max_image_bytes)
                    chunks.append(chunk)
        except requests.RequestException as e:
            raise ImageDownloadError(f"Error downloading image: {e}") from e

        logger.debug(f"Downloaded {received} bytes from {url[:80]}")
        return b"".join(chunks)

    # =========================================================================
    # OBSERVABILITY
    # =========================================================================

    def _count(self, name: str):
        with self._stats_lock:
            self._counters[name] += 1

    def stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            counters = dict(self._counters)
        return {
            "rate_limiter": self.rate_limiter.stats(),
            "cache_enabled": self.cache is not None,
            **counters,
        }


# =============================================================================
# FACTORY
# =============================================================================

def build_ocr_service(settings: Settings = None, recognizer: Recognizer = None) -> ReceiptOCRService:
    """Wire a service from settings"""
    settings = settings or get_settings()

    if recognizer is None:
        recognizer = GoogleVisionRecognizer(credentials_path=settings.GOOGLE_APPLICATION_CREDENTIALS or None)

    cache = None
    if settings.OCR_CACHE_ENABLED:
        if settings.REDIS_URL:
            store = RedisTTLStore.from_url(settings.REDIS_URL)
        else:
            store = InMemoryTTLStore()
        cache = ResultCache(
            store,
            ttl_seconds=settings.OCR_CACHE_TTL_SECONDS,
            key_func=KEY_STRATEGIES[settings.OCR_CACHE_KEY_STRATEGY],
        )

    logger.info(
        f"OCR service configured: {settings.OCR_RATE_LIMIT_PER_SECOND}/s, "
        f"{settings.OCR_RATE_LIMIT_PER_MINUTE}/min, cache={'redis' if settings.REDIS_URL and cache else 'memory' if cache else 'off'}"
    )

    return ReceiptOCRService(
        recognizer=recognizer,
        rate_limiter=RateLimiter(settings.OCR_RATE_LIMIT_PER_SECOND, settings.OCR_RATE_LIMIT_PER_MINUTE),
        cache=cache,
        parser=ReceiptParser(prefer_keyword_total=settings.OCR_PREFER_KEYWORD_TOTAL),
        download_timeout=settings.OCR_DOWNLOAD_TIMEOUT,
        max_image_bytes=settings.OCR_MAX_IMAGE_BYTES,
    )


_ocr_service = None
_ocr_service_lock = threading.Lock()


def get_ocr_service() -> ReceiptOCRService:
    """Get the process-wide OCR service (thread-safe)"""
    global _ocr_service
    if _ocr_service is None:
        with _ocr_service_lock:
            # Double-check locking pattern
            if _ocr_service is None:
                _ocr_service = build_ocr_service()
    return _ocr_service


__all__ = [
    "ReceiptOCRService",
    "build_ocr_service",
    "get_ocr_service",
    "combine_confidence",
]
