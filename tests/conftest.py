#!/usr/bin/env python3
"""
Receipt OCR Test Configuration and Fixtures
===========================================

Provides shared fixtures, fake collaborators, and test utilities for the entire test suite.
"""

import io
import sys
import threading
from pathlib import Path
from typing import List, Optional

import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from receipt_ocr_chile.cache_manager import InMemoryTTLStore, ResultCache
from receipt_ocr_chile.models import RecognitionResult
from receipt_ocr_chile.rate_limiter import RateLimiter
from receipt_ocr_chile.receipt_parser import ReceiptParser
from receipt_ocr_chile.recognizer import Recognizer
from receipt_ocr_chile.service import ReceiptOCRService


# =============================================================================
# PYTEST CONFIGURATION
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "slow: Slow tests (real sleeps)")
    config.addinivalue_line("markers", "requires_api: Requires external API")


def pytest_collection_modifyitems(config, items):
    """Auto-mark based on file name."""
    for item in items:
        if "test_unit_" in item.nodeid:
            item.add_marker(pytest.mark.unit)
        elif "test_integration_" in item.nodeid:
            item.add_marker(pytest.mark.integration)


# =============================================================================
# SAMPLE RECEIPT TEXTS
# =============================================================================

SIMPLE_BOLETA = "TOTAL $15.000\nBOLETA\n12.345.678-5\n01/10/2024"

SUPERMARKET_BOLETA = """SUPERMERCADO LIDER
Av. Providencia 1234
RUT: 76.086.428-5
BOLETA ELECTRONICA
15 de octubre de 2024
PAN HALLULLA 1.290
LECHE ENTERA 990
TOTAL A PAGAR $2.280
"""

RESTAURANT_FACTURA = """Restaurante El Huaso
FACTURA ELECTRONICA N 4521
R.U.T. 96.505.760-9
Fecha: 2024-03-07
Consumo 45.000
Propina 4.500
Monto Total $49.500
"""

# All pass the Módulo-11 check
VALID_RUTS = ["12.345.678-5", "76.086.428-5", "96.505.760-9", "11.111.111-1", "5.126.663-3"]


# =============================================================================
# FAKE COLLABORATORS
# =============================================================================

class FakeRecognizer(Recognizer):
    """Recognizer returning canned results and recording calls."""

    def __init__(self, text: str = SIMPLE_BOLETA, confidence: float = 0.95, language: str = "es",
                 error: Optional[Exception] = None):
        self.result = RecognitionResult(full_text=text, confidence=confidence, language=language)
        self.error = error
        self.calls: List[bytes] = []
        self._lock = threading.Lock()

    def analyze_receipt(self, image_data: bytes) -> RecognitionResult:
        with self._lock:
            self.calls.append(image_data)
        if self.error is not None:
            raise self.error
        return self.result


class FailingStore:
    """TTL store whose every operation fails."""

    def __init__(self, error: Exception = None):
        self.error = error or ConnectionError("store unavailable")
        self.data = {}

    def get(self, key):
        raise self.error

    def set(self, key, value, ttl_seconds):
        raise self.error


class FakeClock:
    """Manually advanced clock for TTL tests."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def parser():
    return ReceiptParser()


@pytest.fixture
def memory_store():
    return InMemoryTTLStore()


@pytest.fixture
def result_cache(memory_store):
    return ResultCache(memory_store, ttl_seconds=3600)


@pytest.fixture
def fake_recognizer():
    return FakeRecognizer()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def ocr_service(fake_recognizer, result_cache):
    """Service wired with fakes and a generous rate limit."""
    return ReceiptOCRService(
        recognizer=fake_recognizer,
        rate_limiter=RateLimiter(max_per_second=100, max_per_minute=1000),
        cache=result_cache,
    )


@pytest.fixture
def receipt_image():
    return create_test_image_bytes()


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def create_test_image_bytes(width: int = 100, height: int = 100, color: str = 'white') -> bytes:
    """Create JPEG test image bytes."""
    from PIL import Image

    img = Image.new('RGB', (width, height), color=color)
    buffer = io.BytesIO()
    img.save(buffer, format='JPEG')
    return buffer.getvalue()


def assert_confidences_in_range(receipt):
    """Every confidence, field-level or aggregate, lies in [0, 1]."""
    assert 0.0 <= receipt.confidence <= 1.0, f"aggregate confidence {receipt.confidence}"
    for name, value in receipt.field_confidence.items():
        assert 0.0 <= value <= 1.0, f"{name}={value}"
