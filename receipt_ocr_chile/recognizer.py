"""
Text recognizers for receipt images.

GoogleVisionRecognizer uses DOCUMENT_TEXT_DETECTION, which handles dense
printed receipts better than plain TEXT_DETECTION, and reports the mean
block confidence plus the first detected language.
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Optional

from google.cloud import vision

from .errors import EmptyImageError, RecognitionFailedError
from .models import RecognitionResult

logger = logging.getLogger(__name__)


class Recognizer(ABC):
    """Image bytes in, recognized text out"""

    @abstractmethod
    def analyze_receipt(self, image_data: bytes) -> RecognitionResult:
        ...


class GoogleVisionRecognizer(Recognizer):
    """
    Google Cloud Vision recognizer.

    Args:
        client: Pre-built ImageAnnotatorClient (created lazily otherwise)
        credentials_path: Service-account JSON used when creating the client
    """

    def __init__(self, client: Optional[vision.ImageAnnotatorClient] = None,
                 credentials_path: Optional[str] = None):
        self._client = client
        self._credentials_path = credentials_path
        self._client_lock = threading.Lock()

    @property
    def client(self) -> vision.ImageAnnotatorClient:
        # Double-checked so concurrent first calls build a single gRPC client
        if self._client is None:
            with self._client_lock:
                if self._client is None:
                    if self._credentials_path:
                        self._client = vision.ImageAnnotatorClient.from_service_account_file(
                            self._credentials_path
                        )
                    else:
                        self._client = vision.ImageAnnotatorClient()
                    logger.info("Google Vision client initialized")
        return self._client

    def analyze_receipt(self, image_data: bytes) -> RecognitionResult:
        if not image_data:
            raise EmptyImageError("Image data is empty")

        response = self.client.document_text_detection(image=vision.Image(content=image_data))
        if response.error.message:
            raise RecognitionFailedError(f"Vision API error: {response.error.message}")

        annotation = response.full_text_annotation
        if not annotation or not annotation.text:
            return RecognitionResult(full_text="", confidence=0.0)

        block_confidences = [
            block.confidence
            for page in annotation.pages
            for block in page.blocks
        ]
        confidence = sum(block_confidences) / len(block_confidences) if block_confidences else 0.0

        language = ""
        if annotation.pages and annotation.pages[0].property.detected_languages:
            language = annotation.pages[0].property.detected_languages[0].language_code

        return RecognitionResult(
            full_text=annotation.text,
            confidence=min(1.0, max(0.0, confidence)),
            language=language,
        )

    def detect_text(self, image_data: bytes) -> str:
        """Plain TEXT_DETECTION; returns the full text or an empty string."""
        if not image_data:
            raise EmptyImageError("Image data is empty")

        response = self.client.text_detection(image=vision.Image(content=image_data))
        if response.error.message:
            raise RecognitionFailedError(f"Vision API error: {response.error.message}")

        if response.text_annotations:
            # First annotation holds the entire text
            return response.text_annotations[0].description
        return ""

    def close(self):
        if self._client is not None:
            self._client.transport.close()
