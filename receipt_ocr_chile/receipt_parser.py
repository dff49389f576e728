#!/usr/bin/env python3
"""
Chilean Receipt Parser
======================
Extracts structured fields from raw OCR text of Chilean receipts
(boletas, facturas, tickets, comprobantes).

Each field is extracted independently and carries its own confidence:
- Amount       - largest amount, favouring lines with a "total" keyword
- Date         - DD/MM/YYYY, "15 de octubre de 2024", YYYY-MM-DD
- RUT          - first taxpayer ID passing the Módulo-11 check
- Merchant     - capitalized run in the first lines of the receipt
- Document     - fiscal document type keyword

Missing fields are simply left out; only empty input is an error.

Usage:
    parser = ReceiptParser()
    receipt = parser.parse(ocr_text)
    print(receipt.amount, receipt.merchant_rut, receipt.confidence)
"""

import datetime
import logging
import re
from decimal import Decimal, InvalidOperation
from typing import List, Optional, Tuple

from .errors import EmptyInputError, NoAmountFoundError
from .models import (
    AMOUNT_CONFIDENCE,
    DATE_CONFIDENCE,
    DOCUMENT_TYPE_CONFIDENCE,
    MERCHANT_CONFIDENCE,
    RUT_CONFIDENCE,
    DocumentType,
    ParsedReceipt,
)
from .rut import clean_rut, format_rut, validate_rut

logger = logging.getLogger(__name__)

# Bumped whenever extraction rules change; cached results from other versions are ignored
PARSER_VERSION = "1"


# =============================================================================
# PATTERNS & CONSTANTS
# =============================================================================

# $15.000 / 15000 / $ 15000
AMOUNT_RE = re.compile(r"\$?\s*(\d{1,3}(?:\.\d{3})+|\d+)")

# 12.345.678-9 / 12345678-K
RUT_RE = re.compile(r"(\d{1,2}\.?\d{3}\.?\d{3}-[\dkK])")

MERCHANT_RE = re.compile(r"^([A-ZÁÉÍÓÚÑ][A-ZÁÉÍÓÚÑa-záéíóúñ\s.]+)")
NUMERIC_LINE_RE = re.compile(r"^\d+$")

SPANISH_MONTHS = {
    "enero": 1,
    "febrero": 2,
    "marzo": 3,
    "abril": 4,
    "mayo": 5,
    "junio": 6,
    "julio": 7,
    "agosto": 8,
    "septiembre": 9,
    "octubre": 10,
    "noviembre": 11,
    "diciembre": 12,
}

# Digit lookarounds keep "2024-03-07" from also reading as 24-03-07
DMY_RE = re.compile(r"(?<!\d)(\d{1,2})[/-](\d{1,2})[/-](\d{2,4})(?!\d)")
SPANISH_DATE_RE = re.compile(
    r"(?<!\d)(\d{1,2})\s+de\s+(" + "|".join(SPANISH_MONTHS) + r")\s+de\s+(\d{4})"
)
YMD_RE = re.compile(r"(?<!\d)(\d{4})[/-](\d{1,2})[/-](\d{1,2})(?!\d)")

AMOUNT_KEYWORDS = ("total", "total a pagar", "total $", "monto total", "importe")

KEYWORD_AMOUNT_CONFIDENCE = 0.9
PLAIN_AMOUNT_CONFIDENCE = 0.5
RUT_FOUND_CONFIDENCE = 0.9
MERCHANT_FIRST_LINE_CONFIDENCE = 0.9
MERCHANT_OTHER_LINE_CONFIDENCE = 0.7
MERCHANT_SEARCH_LINES = 5

# Priority order: formal tax documents first, generic vouchers last
DOCUMENT_TYPE_KEYWORDS: List[Tuple[DocumentType, float]] = [
    (DocumentType.FACTURA, 0.95),
    (DocumentType.BOLETA, 0.95),
    (DocumentType.TICKET, 0.80),
    (DocumentType.COMPROBANTE, 0.70),
]

FIELD_WEIGHTS = {
    AMOUNT_CONFIDENCE: 0.35,
    DATE_CONFIDENCE: 0.20,
    RUT_CONFIDENCE: 0.20,
    MERCHANT_CONFIDENCE: 0.15,
    DOCUMENT_TYPE_CONFIDENCE: 0.10,
}


def _year(value: str) -> int:
    year = int(value)
    return year + 2000 if year < 100 else year


# (pattern, confidence, match -> (year, month, day))
DATE_PATTERNS = [
    (DMY_RE, 0.8, lambda m: (_year(m.group(3)), int(m.group(2)), int(m.group(1)))),
    (SPANISH_DATE_RE, 0.6, lambda m: (int(m.group(3)), SPANISH_MONTHS[m.group(2)], int(m.group(1)))),
    (YMD_RE, 0.4, lambda m: (int(m.group(1)), int(m.group(2)), int(m.group(3)))),
]


class ReceiptParser:
    """
    Parses OCR text from Chilean receipts into a ParsedReceipt.

    Args:
        prefer_keyword_total: When False (default), a candidate amount only
            replaces the current best if it is larger AND at least as
            confident, so a large line-item number seen before the total line
            wins over a smaller "TOTAL" amount. When True, a keyword-line
            amount always beats a non-keyword one.
    """

    def __init__(self, prefer_keyword_total: bool = False):
        self.prefer_keyword_total = prefer_keyword_total

    def parse(self, text: str) -> ParsedReceipt:
        """
        Parse a full OCR text.

        Raises:
            EmptyInputError: text is empty
        """
        if not text:
            raise EmptyInputError("Receipt text is empty")

        confidences = {}
        fields = {}

        try:
            amount, amount_conf = self.extract_amount(text)
            fields["amount"] = amount
            confidences[AMOUNT_CONFIDENCE] = amount_conf
        except NoAmountFoundError:
            logger.debug("No amount found in receipt text")

        found_date = self.extract_date(text)
        if found_date:
            fields["date"], confidences[DATE_CONFIDENCE] = found_date

        found_rut = self.extract_rut(text)
        if found_rut:
            fields["merchant_rut"], confidences[RUT_CONFIDENCE] = found_rut

        found_merchant = self.extract_merchant_name(text)
        if found_merchant:
            fields["merchant_name"], confidences[MERCHANT_CONFIDENCE] = found_merchant

        found_type = self.detect_document_type(text)
        if found_type:
            fields["document_type"], confidences[DOCUMENT_TYPE_CONFIDENCE] = found_type

        return ParsedReceipt(
            raw_text=text,
            confidence=self.calculate_overall_confidence(confidences),
            field_confidence=confidences,
            **fields,
        )

    # =========================================================================
    # AMOUNT
    # =========================================================================

    def extract_amount(self, text: str) -> Tuple[Decimal, float]:
        """
        Find the receipt total.

        Returns:
            (amount, confidence)

        Raises:
            NoAmountFoundError: no positive amount anywhere in the text
        """
        best_amount = Decimal("0")
        best_confidence = 0.0

        for line in text.split("\n"):
            line_lower = line.lower()
            contains_keyword = any(keyword in line_lower for keyword in AMOUNT_KEYWORDS)
            confidence = KEYWORD_AMOUNT_CONFIDENCE if contains_keyword else PLAIN_AMOUNT_CONFIDENCE

            for match in AMOUNT_RE.finditer(line):
                try:
                    amount = Decimal(match.group(1).replace(".", ""))
                except InvalidOperation:
                    continue

                if self._is_better_amount(amount, confidence, best_amount, best_confidence):
                    best_amount = amount
                    best_confidence = confidence

        if best_amount == 0:
            raise NoAmountFoundError()

        return best_amount, best_confidence

    def _is_better_amount(self, amount: Decimal, confidence: float,
                          best_amount: Decimal, best_confidence: float) -> bool:
        if self.prefer_keyword_total and confidence > best_confidence and amount > 0:
            return True
        return amount > best_amount and confidence >= best_confidence

    # =========================================================================
    # DATE
    # =========================================================================

    def extract_date(self, text: str) -> Optional[Tuple[datetime.date, float]]:
        """
        Find the receipt date; the first pattern that yields a real calendar date wins.

        Returns:
            (date, confidence) or None
        """
        text_lower = text.lower()

        for pattern, confidence, to_ymd in DATE_PATTERNS:
            for match in pattern.finditer(text_lower):
                year, month, day = to_ymd(match)
                try:
                    return datetime.date(year, month, day), confidence
                except ValueError:
                    # 31/02 and friends
                    continue

        return None

    # =========================================================================
    # RUT
    # =========================================================================

    def extract_rut(self, text: str) -> Optional[Tuple[str, float]]:
        """
        Find the first RUT with a valid check character.

        Returns:
            (formatted RUT, confidence) or None
        """
        for match in RUT_RE.finditer(text):
            candidate = clean_rut(match.group(1))
            if validate_rut(candidate):
                return format_rut(candidate), RUT_FOUND_CONFIDENCE

        return None

    # Kept on the parser for callers that only hold a parser instance
    validate_rut = staticmethod(validate_rut)
    format_rut = staticmethod(format_rut)

    # =========================================================================
    # MERCHANT
    # =========================================================================

    def extract_merchant_name(self, text: str) -> Optional[Tuple[str, float]]:
        """
        Merchant name is usually printed in capitals at the top of the receipt.

        Returns:
            (name, confidence) or None
        """
        lines = text.split("\n")

        for i, raw_line in enumerate(lines[:MERCHANT_SEARCH_LINES]):
            line = raw_line.strip()

            if len(line) < 3 or NUMERIC_LINE_RE.match(line):
                continue

            match = MERCHANT_RE.match(line)
            if match:
                confidence = MERCHANT_FIRST_LINE_CONFIDENCE if i == 0 else MERCHANT_OTHER_LINE_CONFIDENCE
                return match.group(1).strip(), confidence

        return None

    # =========================================================================
    # DOCUMENT TYPE
    # =========================================================================

    def detect_document_type(self, text: str) -> Optional[Tuple[DocumentType, float]]:
        text_lower = text.lower()

        for doc_type, confidence in DOCUMENT_TYPE_KEYWORDS:
            if doc_type.value in text_lower:
                return doc_type, confidence

        return None

    # =========================================================================
    # CONFIDENCE
    # =========================================================================

    @staticmethod
    def calculate_overall_confidence(field_confidence) -> float:
        """
        Weighted average of the field confidences that are present,
        normalized by the weights actually used.
        """
        total_weight = 0.0
        weighted_sum = 0.0

        for field_name, weight in FIELD_WEIGHTS.items():
            confidence = field_confidence.get(field_name, 0.0)
            if confidence > 0:
                weighted_sum += confidence * weight
                total_weight += weight

        if total_weight == 0:
            return 0.0

        return min(1.0, weighted_sum / total_weight)


def parse_chilean_receipt(text: str, prefer_keyword_total: bool = False) -> ParsedReceipt:
    """Convenience wrapper around ReceiptParser.parse"""
    return ReceiptParser(prefer_keyword_total=prefer_keyword_total).parse(text)


__all__ = [
    "ReceiptParser",
    "parse_chilean_receipt",
    "validate_rut",
    "format_rut",
    "PARSER_VERSION",
    "DOCUMENT_TYPE_KEYWORDS",
    "FIELD_WEIGHTS",
]
