# utils.py
"""
Utility functions for the casino engine

Includes:
- Money & multiplier quantization (Decimal only, never float arithmetic)
- Cryptographic helpers for crash-point commitments
- Identifier generation
"""

from __future__ import annotations

import secrets
import hashlib
import hmac
import logging
from decimal import Decimal, InvalidOperation, ROUND_DOWN
from typing import Union

logger = logging.getLogger("casino.utils")

NumberType = Union[float, Decimal, int, str]

MONEY_QUANT = Decimal("0.01")
MULTIPLIER_QUANT = Decimal("0.0001")
ZERO = Decimal("0.00")

# =========================
# IDENTIFIERS & SEEDS
# =========================

def generate_unique_id(length: int = 8) -> str:
    """
    Generate a short, URL-safe unique ID (hex).
    Used for round ids and crash session ids.
    """
    return secrets.token_hex(length)


def generate_server_seed(length: int = 32) -> str:
    """
    Cryptographically secure secret used to sign a crash commitment.
    """
    return secrets.token_hex(length)


def hmac_sha256(key: str, message: str) -> str:
    """
    Compute HMAC-SHA256 hash.

    Args:
        key: The secret key (e.g., server_seed).
        message: The data to sign (e.g., session_id:crash_point).

    Returns:
        Hexadecimal string of the hash.
    """
    return hmac.new(key.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def crash_commitment(server_seed: str, session_id: str, crash_point: Decimal) -> str:
    """
    Commitment handed out at crash start. Revealing the seed and the point
    afterwards lets anyone check the point was fixed before the cashout.
    """
    return hmac_sha256(server_seed, f"{session_id}:{crash_point:.2f}")


def verify_crash_commitment(
    server_seed: str,
    session_id: str,
    crash_point: NumberType,
    commitment: str,
) -> bool:
    calculated = crash_commitment(server_seed, session_id, Decimal(str(crash_point)))
    # constant_time_compare prevents timing attacks
    return hmac.compare_digest(calculated, commitment)


# =========================
# DECIMAL HELPERS
# =========================

def safe_decimal(value: NumberType) -> Decimal:
    """
    Convert API input to Decimal without going through binary floats.
    Raises ValueError on garbage so callers can reject the request.
    """
    try:
        result = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError) as e:
        logger.warning(f"Failed to convert {value!r} to Decimal")
        raise ValueError(f"Not a number: {value!r}") from e
    if not result.is_finite():
        raise ValueError(f"Not a finite number: {value!r}")
    return result


def to_money(value: NumberType) -> Decimal:
    """Quantize to cents, rounding toward zero (house never over-pays)."""
    return Decimal(str(value)).quantize(MONEY_QUANT, rounding=ROUND_DOWN)


def to_multiplier(value: NumberType) -> Decimal:
    return Decimal(str(value)).quantize(MULTIPLIER_QUANT, rounding=ROUND_DOWN)


def payout_for(stake: Decimal, multiplier: Decimal) -> Decimal:
    return to_money(stake * multiplier)


def clamp(value: float, min_value: float, max_value: float) -> float:
    return max(min_value, min(value, max_value))


def format_multiplier(mult: NumberType) -> str:
    """
    Format multiplier with 2 decimals (e.g., 'x1.00').
    """
    return f"x{Decimal(str(mult)):.2f}"
