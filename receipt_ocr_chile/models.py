"""
Receipt OCR data models
=======================
RecognitionResult - what the recognizer hands back
ParsedReceipt     - structured fields extracted from a Chilean receipt
"""

from dataclasses import dataclass, field, replace
import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

from .rut import validate_rut


class DocumentType(str, Enum):
    """Chilean fiscal document types"""
    BOLETA = "boleta"
    FACTURA = "factura"
    TICKET = "ticket"
    COMPROBANTE = "comprobante"
    UNKNOWN = "unknown"


# Field-confidence keys
AMOUNT_CONFIDENCE = "amount_confidence"
DATE_CONFIDENCE = "date_confidence"
RUT_CONFIDENCE = "rut_confidence"
MERCHANT_CONFIDENCE = "merchant_confidence"
DOCUMENT_TYPE_CONFIDENCE = "document_type_confidence"
OCR_CONFIDENCE = "ocr_confidence"


def _check_confidence(name: str, value: float):
    if not 0.0 <= value <= 1.0:
        raise ValueError(f"{name} must be within [0, 1], got {value}")


@dataclass(frozen=True)
class RecognitionResult:
    """Output of the external text recognizer"""
    full_text: str
    confidence: float = 0.0
    language: str = ""

    def __post_init__(self):
        _check_confidence("confidence", self.confidence)


@dataclass(frozen=True)
class ParsedReceipt:
    """
    Structured data extracted from a receipt.

    Fields that could not be extracted are None (amount falls back to 0)
    and have no entry in field_confidence.
    """
    amount: Decimal = Decimal("0")
    date: Optional[datetime.date] = None
    merchant_rut: Optional[str] = None
    merchant_name: Optional[str] = None
    document_type: DocumentType = DocumentType.UNKNOWN
    confidence: float = 0.0
    raw_text: str = ""
    field_confidence: Mapping[str, float] = field(default_factory=dict)

    def __post_init__(self):
        if self.amount < 0:
            raise ValueError(f"amount must be >= 0, got {self.amount}")
        if self.merchant_rut is not None and not validate_rut(self.merchant_rut):
            raise ValueError(f"merchant_rut fails checksum: {self.merchant_rut}")

        _check_confidence("confidence", self.confidence)
        for name, value in self.field_confidence.items():
            _check_confidence(name, value)

        # Read-only view; never mutated after construction
        object.__setattr__(self, "field_confidence", MappingProxyType(dict(self.field_confidence)))

    def __hash__(self):
        # mappingproxy is unhashable; hash its items instead
        return hash((
            self.amount,
            self.date,
            self.merchant_rut,
            self.merchant_name,
            self.document_type,
            self.confidence,
            self.raw_text,
            tuple(sorted(self.field_confidence.items())),
        ))

    @classmethod
    def empty(cls, raw_text: str = "") -> "ParsedReceipt":
        """Zero-confidence result with no fields"""
        return cls(raw_text=raw_text)

    def with_confidence(self, confidence: float, **extra_confidence: float) -> "ParsedReceipt":
        """Copy with a new aggregate confidence and extra field confidences merged in."""
        merged = dict(self.field_confidence)
        merged.update(extra_confidence)
        return replace(self, confidence=confidence, field_confidence=merged)

    # =========================================================================
    # SERIALIZATION
    # =========================================================================

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the JSON payload stored in the cache"""
        data: Dict[str, Any] = {
            "amount": int(self.amount) if self.amount == self.amount.to_integral_value() else str(self.amount),
            "confidence": self.confidence,
            "raw_text": self.raw_text,
        }
        if self.date is not None:
            data["date"] = self.date.isoformat() + "T00:00:00Z"
        if self.merchant_rut:
            data["merchant_rut"] = self.merchant_rut
        if self.merchant_name:
            data["merchant_name"] = self.merchant_name
        if self.document_type != DocumentType.UNKNOWN:
            data["document_type"] = self.document_type.value
        if self.field_confidence:
            data["extracted_data"] = dict(self.field_confidence)
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ParsedReceipt":
        """
        Rebuild from a cache payload.

        Raises:
            ValueError: payload is malformed or violates an invariant
        """
        try:
            amount = Decimal(str(data.get("amount", 0)))
        except InvalidOperation as e:
            raise ValueError(f"Invalid amount: {data.get('amount')!r}") from e

        receipt_date = None
        if data.get("date"):
            # Accepts both "2024-10-01" and "2024-10-01T00:00:00Z"
            receipt_date = datetime.date.fromisoformat(str(data["date"])[:10])

        return cls(
            amount=amount,
            date=receipt_date,
            merchant_rut=data.get("merchant_rut") or None,
            merchant_name=data.get("merchant_name") or None,
            document_type=DocumentType(data.get("document_type") or DocumentType.UNKNOWN.value),
            confidence=float(data.get("confidence", 0.0)),
            raw_text=data.get("raw_text", ""),
            field_confidence={k: float(v) for k, v in (data.get("extracted_data") or {}).items()},
        )


__all__ = [
    "DocumentType",
    "RecognitionResult",
    "ParsedReceipt",
    "AMOUNT_CONFIDENCE",
    "DATE_CONFIDENCE",
    "RUT_CONFIDENCE",
    "MERCHANT_CONFIDENCE",
    "DOCUMENT_TYPE_CONFIDENCE",
    "OCR_CONFIDENCE",
]
