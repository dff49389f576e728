"""
Chilean RUT helpers (Módulo-11 check character).
"""

import re

_BODY_RE = re.compile(r"[0-9]+")

# Weights applied right-to-left over the RUT body
RUT_WEIGHTS = (2, 3, 4, 5, 6, 7)


def clean_rut(rut: str) -> str:
    """Strip dots, hyphens and whitespace."""
    return re.sub(r"[.\-\s]", "", rut or "")


def compute_check_character(body: str) -> str:
    """
    Compute the Módulo-11 check character for a RUT body.

    Args:
        body: Digits only, e.g. "12345678"

    Returns:
        "0"-"9" or "K"
    """
    total = 0
    for i, digit in enumerate(reversed(body)):
        total += int(digit) * RUT_WEIGHTS[i % len(RUT_WEIGHTS)]

    expected = 11 - (total % 11)
    if expected == 11:
        return "0"
    if expected == 10:
        return "K"
    return str(expected)


def validate_rut(rut: str) -> bool:
    """
    Validate a RUT in any common notation ("12.345.678-5", "12345678-5", "123456785").
    """
    rut = clean_rut(rut)
    if len(rut) < 2:
        return False

    body, check = rut[:-1], rut[-1].upper()
    if not _BODY_RE.fullmatch(body):
        return False

    return compute_check_character(body) == check


def format_rut(rut: str) -> str:
    """Format as XX.XXX.XXX-D (dots every 3 digits from the right)."""
    rut = clean_rut(rut)
    if len(rut) < 2:
        return rut

    body, check = rut[:-1], rut[-1].upper()
    groups = []
    while len(body) > 3:
        groups.insert(0, body[-3:])
        body = body[:-3]
    groups.insert(0, body)

    return ".".join(groups) + "-" + check
