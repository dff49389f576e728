#!/usr/bin/env python3
"""
Unit Tests for the Receipt OCR Service
======================================

Tests for the analysis pipeline with fake collaborators:
- Cache hits bypass the rate limiter and the recognizer
- Empty recognition results are returned but never cached
- Confidence fusion of recognizer and parser
- Error mapping (recognizer, cache write, cancellation)
- URL downloads (status, size cap, cancellation, transport errors)
- Factory wiring from settings
"""

import threading
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
import requests

import receipt_ocr_chile.service as service_module
from receipt_ocr_chile.cache_manager import InMemoryTTLStore, RedisTTLStore, ResultCache, content_hash_key
from receipt_ocr_chile.errors import (
    DownloadCancelled,
    EmptyImageError,
    ImageDownloadError,
    ImageTooLargeError,
    ParsingFailedError,
    RateLimitCancelled,
    RecognitionFailedError,
)
from receipt_ocr_chile.logging_config import AnalysisContext
from receipt_ocr_chile.models import DocumentType, ParsedReceipt
from receipt_ocr_chile.rate_limiter import RateLimiter
from receipt_ocr_chile.receipt_parser import ReceiptParser
from receipt_ocr_chile.service import (
    ReceiptOCRService,
    build_ocr_service,
    combine_confidence,
    get_ocr_service,
)
from receipt_ocr_chile.settings import Settings

from conftest import SUPERMARKET_BOLETA, FailingStore, FakeRecognizer


class FakeResponse:
    """Streaming response stand-in usable as a context manager."""

    def __init__(self, status_code=200, chunks=(b"",)):
        self.status_code = status_code
        self.chunks = list(chunks)
        self.closed = False

    def iter_content(self, chunk_size=1):
        yield from self.chunks

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.closed = True
        return False


def make_session(response=None, error=None):
    session = MagicMock(spec=requests.Session)
    if error is not None:
        session.get.side_effect = error
    else:
        session.get.return_value = response
    return session


# =============================================================================
# ANALYZE
# =============================================================================

class TestAnalyze:

    @pytest.mark.unit
    def test_simple_boleta(self, ocr_service, receipt_image):
        receipt = ocr_service.analyze(receipt_image)

        assert receipt.amount == Decimal("15000")
        assert receipt.document_type == DocumentType.BOLETA
        assert receipt.merchant_rut == "12.345.678-5"

    @pytest.mark.unit
    def test_combined_confidence(self, ocr_service, receipt_image):
        receipt = ocr_service.analyze(receipt_image)

        assert receipt.field_confidence["ocr_confidence"] == 0.95
        # 0.6 * 0.95 + 0.4 * 0.885
        assert receipt.confidence == pytest.approx(0.924)

    @pytest.mark.unit
    def test_second_call_is_cache_hit(self, ocr_service, fake_recognizer, receipt_image):
        first = ocr_service.analyze(receipt_image)
        second = ocr_service.analyze(receipt_image)

        assert second == first
        assert len(fake_recognizer.calls) == 1
        assert ocr_service.rate_limiter.stats()["requests_last_minute"] == 1

        stats = ocr_service.stats()
        assert stats["cache_hits"] == 1
        assert stats["cache_misses"] == 1
        assert stats["recognizer_calls"] == 1

    @pytest.mark.unit
    def test_cache_hit_skips_rate_limiter(self, fake_recognizer, result_cache, receipt_image):
        limiter = MagicMock(spec=RateLimiter)
        service = ReceiptOCRService(fake_recognizer, rate_limiter=limiter, cache=result_cache)

        service.analyze(receipt_image)
        service.analyze(receipt_image)

        assert limiter.wait.call_count == 1

    @pytest.mark.unit
    def test_without_cache_always_recognizes(self, fake_recognizer, receipt_image):
        service = ReceiptOCRService(fake_recognizer, rate_limiter=RateLimiter(100, 1000))
        service.analyze(receipt_image)
        service.analyze(receipt_image)

        assert len(fake_recognizer.calls) == 2
        assert service.stats()["cache_enabled"] is False

    @pytest.mark.unit
    def test_empty_image_rejected(self, ocr_service, fake_recognizer):
        with pytest.raises(EmptyImageError):
            ocr_service.analyze(b"")
        assert fake_recognizer.calls == []

    @pytest.mark.unit
    def test_oversized_image_rejected(self, fake_recognizer):
        service = ReceiptOCRService(fake_recognizer, max_image_bytes=10)
        with pytest.raises(ImageTooLargeError) as exc_info:
            service.analyze(b"x" * 11)

        assert exc_info.value.size == 11
        assert exc_info.value.limit == 10
        assert fake_recognizer.calls == []

    @pytest.mark.unit
    def test_empty_text_returns_empty_result_uncached(self, result_cache, receipt_image):
        recognizer = FakeRecognizer(text="", confidence=0.0)
        service = ReceiptOCRService(recognizer, rate_limiter=RateLimiter(100, 1000), cache=result_cache)

        receipt = service.analyze(receipt_image)

        assert receipt == ParsedReceipt.empty()
        assert receipt.confidence == 0.0
        assert result_cache.get(result_cache.key_for(receipt_image)) is None

        service.analyze(receipt_image)
        assert len(recognizer.calls) == 2

    @pytest.mark.unit
    def test_result_written_to_cache(self, ocr_service, result_cache, receipt_image):
        receipt = ocr_service.analyze(receipt_image)
        assert result_cache.get(result_cache.key_for(receipt_image)) == receipt

    @pytest.mark.unit
    def test_uses_configured_parser_policy(self, receipt_image):
        service = ReceiptOCRService(
            FakeRecognizer(text=SUPERMARKET_BOLETA),
            rate_limiter=RateLimiter(100, 1000),
            parser=ReceiptParser(prefer_keyword_total=True),
        )
        assert service.analyze(receipt_image).amount == Decimal("2280")


class TestAnalyzeErrors:

    @pytest.mark.unit
    def test_recognizer_exception_wrapped(self, result_cache, receipt_image):
        service = ReceiptOCRService(
            FakeRecognizer(error=RuntimeError("vision unavailable")),
            rate_limiter=RateLimiter(100, 1000),
            cache=result_cache,
        )

        with pytest.raises(RecognitionFailedError) as exc_info:
            service.analyze(receipt_image)

        assert exc_info.value.retryable
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert service.stats()["recognizer_failures"] == 1
        assert result_cache.get(result_cache.key_for(receipt_image)) is None

    @pytest.mark.unit
    def test_recognition_failed_passes_through(self, receipt_image):
        error = RecognitionFailedError("quota exceeded")
        service = ReceiptOCRService(FakeRecognizer(error=error), rate_limiter=RateLimiter(100, 1000))

        with pytest.raises(RecognitionFailedError) as exc_info:
            service.analyze(receipt_image)
        assert exc_info.value is error

    @pytest.mark.unit
    def test_unexpected_parser_error_wrapped(self, fake_recognizer, receipt_image):
        parser = MagicMock()
        parser.parse.side_effect = KeyError("boom")
        service = ReceiptOCRService(fake_recognizer, rate_limiter=RateLimiter(100, 1000), parser=parser)

        with pytest.raises(ParsingFailedError):
            service.analyze(receipt_image)

    @pytest.mark.unit
    def test_cache_write_failure_is_swallowed(self, fake_recognizer, receipt_image):
        service = ReceiptOCRService(
            fake_recognizer,
            rate_limiter=RateLimiter(100, 1000),
            cache=ResultCache(FailingStore()),
        )

        receipt = service.analyze(receipt_image)

        assert receipt.amount == Decimal("15000")
        assert service.stats()["cache_write_failures"] == 1

    @pytest.mark.unit
    def test_caller_log_context_restored(self, ocr_service, receipt_image):
        AnalysisContext.set(job_id="batch-7")
        try:
            ocr_service.analyze(receipt_image)
            assert AnalysisContext.as_dict() == {"job_id": "batch-7"}
        finally:
            AnalysisContext.clear()

    @pytest.mark.unit
    def test_caller_log_context_restored_after_error(self, receipt_image):
        service = ReceiptOCRService(
            FakeRecognizer(error=RuntimeError("vision unavailable")),
            rate_limiter=RateLimiter(100, 1000),
        )
        AnalysisContext.set(job_id="batch-7")
        try:
            with pytest.raises(RecognitionFailedError):
                service.analyze(receipt_image)
            assert AnalysisContext.as_dict() == {"job_id": "batch-7"}
        finally:
            AnalysisContext.clear()

    @pytest.mark.unit
    def test_cancelled_while_rate_limited(self, fake_recognizer, fake_clock):
        service = ReceiptOCRService(fake_recognizer, rate_limiter=RateLimiter(1, 1000, clock=fake_clock))
        service.analyze(b"a" * 10)

        cancel = threading.Event()
        cancel.set()
        with pytest.raises(RateLimitCancelled):
            service.analyze(b"b" * 20, cancel_event=cancel)

        assert len(fake_recognizer.calls) == 1


class TestCombineConfidence:

    @pytest.mark.unit
    def test_weights(self):
        assert combine_confidence(1.0, 0.0) == pytest.approx(0.6)
        assert combine_confidence(0.0, 1.0) == pytest.approx(0.4)

    @pytest.mark.unit
    def test_clamped(self):
        assert combine_confidence(1.0, 1.0) == pytest.approx(1.0)
        assert combine_confidence(0.0, 0.0) == 0.0


# =============================================================================
# DOWNLOADS
# =============================================================================

class TestDownload:

    @pytest.mark.unit
    def test_default_download_uses_one_off_request(self, fake_recognizer):
        """Without an injected session each download gets its own connection."""
        service = ReceiptOCRService(fake_recognizer, download_timeout=7.0)
        assert service.session is None

        with patch.object(service_module.requests, "get",
                          side_effect=lambda *a, **kw: FakeResponse(200, [b"img"])) as get:
            threads = [
                threading.Thread(target=service.download_image, args=(f"https://bucket.example/{i}.jpg",))
                for i in range(4)
            ]
            for t in threads:
                t.start()
            for t in threads:
                t.join(timeout=5)

        assert get.call_count == 4
        get.assert_any_call("https://bucket.example/0.jpg", stream=True, timeout=7.0)

    @pytest.mark.unit
    def test_download_joins_chunks(self, fake_recognizer):
        response = FakeResponse(200, [b"abc", b"def"])
        session = make_session(response)
        service = ReceiptOCRService(fake_recognizer, session=session, download_timeout=12.5)

        assert service.download_image("https://bucket.example/r.jpg") == b"abcdef"
        session.get.assert_called_once_with("https://bucket.example/r.jpg", stream=True, timeout=12.5)
        assert response.closed

    @pytest.mark.unit
    def test_analyze_from_url(self, fake_recognizer):
        session = make_session(FakeResponse(200, [b"image-bytes"]))
        service = ReceiptOCRService(fake_recognizer, rate_limiter=RateLimiter(100, 1000), session=session)

        receipt = service.analyze_from_url("https://bucket.example/r.jpg")

        assert receipt.amount == Decimal("15000")
        assert fake_recognizer.calls == [b"image-bytes"]

    @pytest.mark.unit
    def test_http_error_status(self, fake_recognizer):
        service = ReceiptOCRService(fake_recognizer, session=make_session(FakeResponse(404)))

        with pytest.raises(ImageDownloadError) as exc_info:
            service.analyze_from_url("https://bucket.example/missing.jpg")

        assert exc_info.value.status_code == 404
        assert fake_recognizer.calls == []

    @pytest.mark.unit
    def test_transport_error(self, fake_recognizer):
        session = make_session(error=requests.ConnectionError("connection refused"))
        service = ReceiptOCRService(fake_recognizer, session=session)

        with pytest.raises(ImageDownloadError) as exc_info:
            service.download_image("https://bucket.example/r.jpg")
        assert exc_info.value.status_code is None

    @pytest.mark.unit
    def test_timeout_error(self, fake_recognizer):
        session = make_session(error=requests.Timeout("read timed out"))
        service = ReceiptOCRService(fake_recognizer, session=session)

        with pytest.raises(ImageDownloadError):
            service.download_image("https://bucket.example/r.jpg")

    @pytest.mark.unit
    def test_empty_url(self, fake_recognizer):
        service = ReceiptOCRService(fake_recognizer, session=make_session())
        with pytest.raises(ImageDownloadError):
            service.download_image("")

    @pytest.mark.unit
    def test_oversized_body(self, fake_recognizer):
        session = make_session(FakeResponse(200, [b"abc", b"def"]))
        service = ReceiptOCRService(fake_recognizer, session=session, max_image_bytes=5)

        with pytest.raises(ImageTooLargeError) as exc_info:
            service.download_image("https://bucket.example/big.jpg")
        assert exc_info.value.size == 6

    @pytest.mark.unit
    def test_cancelled_download(self, fake_recognizer):
        session = make_session(FakeResponse(200, [b"abc", b"def"]))
        service = ReceiptOCRService(fake_recognizer, session=session)
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(DownloadCancelled):
            service.analyze_from_url("https://bucket.example/r.jpg", cancel_event=cancel)
        assert fake_recognizer.calls == []

    @pytest.mark.unit
    def test_empty_body_is_empty_image(self, fake_recognizer):
        session = make_session(FakeResponse(200, []))
        service = ReceiptOCRService(fake_recognizer, session=session)

        with pytest.raises(EmptyImageError):
            service.analyze_from_url("https://bucket.example/empty.jpg")


# =============================================================================
# FACTORY
# =============================================================================

class TestBuildService:

    @pytest.mark.unit
    def test_from_settings_with_memory_cache(self, fake_recognizer):
        settings = Settings(
            OCR_RATE_LIMIT_PER_SECOND=5,
            OCR_RATE_LIMIT_PER_MINUTE=300,
            OCR_CACHE_TTL_SECONDS=120,
            OCR_CACHE_KEY_STRATEGY="sha256",
            OCR_DOWNLOAD_TIMEOUT=10.0,
            OCR_MAX_IMAGE_BYTES=1024,
            REDIS_URL="",
        )
        service = build_ocr_service(settings, recognizer=fake_recognizer)

        assert service.recognizer is fake_recognizer
        assert service.rate_limiter.max_per_second == 5
        assert service.rate_limiter.max_per_minute == 300
        assert isinstance(service.cache.store, InMemoryTTLStore)
        assert service.cache.ttl_seconds == 120
        assert service.cache.key_func is content_hash_key
        assert service.download_timeout == 10.0
        assert service.max_image_bytes == 1024

    @pytest.mark.unit
    def test_cache_disabled(self, fake_recognizer):
        service = build_ocr_service(Settings(OCR_CACHE_ENABLED=False), recognizer=fake_recognizer)
        assert service.cache is None

    @pytest.mark.unit
    def test_redis_store_when_url_set(self, fake_recognizer):
        settings = Settings(REDIS_URL="redis://localhost:6379/0")
        service = build_ocr_service(settings, recognizer=fake_recognizer)
        assert isinstance(service.cache.store, RedisTTLStore)

    @pytest.mark.unit
    def test_parser_policy_from_settings(self, fake_recognizer):
        service = build_ocr_service(Settings(OCR_PREFER_KEYWORD_TOTAL=True), recognizer=fake_recognizer)
        assert service.parser.prefer_keyword_total is True

    @pytest.mark.unit
    def test_get_ocr_service_is_singleton(self, monkeypatch, fake_recognizer):
        built = ReceiptOCRService(fake_recognizer)
        monkeypatch.setattr(service_module, "_ocr_service", None)

        with patch.object(service_module, "build_ocr_service", return_value=built) as factory:
            assert get_ocr_service() is built
            assert get_ocr_service() is built

        factory.assert_called_once_with()
