#!/usr/bin/env python3
"""
Analyze a receipt image from the command line.

Usage:
    python -m receipt_ocr_chile boleta.jpg
    python -m receipt_ocr_chile https://bucket.example/boleta.jpg --json
    python -m receipt_ocr_chile boleta.jpg --no-cache --log-level DEBUG
"""

import argparse
import json
import sys
from pathlib import Path

from dotenv import load_dotenv

from .errors import ReceiptOCRError
from .logging_config import setup_logging
from .service import build_ocr_service
from .settings import get_settings


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Extract fields from a Chilean receipt image")
    parser.add_argument("source", help="Image file path or http(s) URL")
    parser.add_argument("--json", action="store_true", help="Print the full result as JSON")
    parser.add_argument("--no-cache", action="store_true", help="Skip the OCR result cache")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    args = parser.parse_args(argv)

    load_dotenv()
    settings = get_settings()
    if args.no_cache:
        settings = settings.model_copy(update={"OCR_CACHE_ENABLED": False})

    setup_logging(
        level=args.log_level or settings.LOG_LEVEL,
        json_output=settings.LOG_JSON,
        log_file=settings.LOG_FILE,
    )

    service = build_ocr_service(settings)

    try:
        if args.source.startswith(("http://", "https://")):
            receipt = service.analyze_from_url(args.source)
        else:
            receipt = service.analyze(Path(args.source).read_bytes())
    except ReceiptOCRError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2 if e.retryable else 1
    except OSError as e:
        print(f"Error reading {args.source}: {e}", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps(receipt.to_dict(), ensure_ascii=False, indent=2))
    else:
        print(f"Amount:     {receipt.amount}")
        print(f"Date:       {receipt.date.isoformat() if receipt.date else '-'}")
        print(f"RUT:        {receipt.merchant_rut or '-'}")
        print(f"Merchant:   {receipt.merchant_name or '-'}")
        print(f"Document:   {receipt.document_type.value}")
        print(f"Confidence: {receipt.confidence:.2f}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
