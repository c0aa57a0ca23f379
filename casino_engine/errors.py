# errors.py
"""
Exception taxonomy for the outcome & settlement engine.

Every rejection raised before settlement leaves balances and the ledger
untouched. InternalGeneratorError is the only one that signals a bug or a
misconfiguration rather than a bad request.
"""

from __future__ import annotations


class EngineError(Exception):
    """Base engine error"""


class ValidationError(EngineError):
    """Malformed or out-of-range stake, target, multiplier or bet type"""


class InsufficientBalance(EngineError):
    """Stake exceeds the player's current balance"""


class PlayerNotFound(EngineError):
    """No account for the given player id"""


class PlayerBanned(EngineError):
    """Account is flagged as banned"""


class StateError(EngineError):
    """Action performed in invalid state"""


class SessionNotFound(EngineError):
    """Crash cashout against an unknown session"""


class SessionAlreadyClosed(EngineError):
    """Crash cashout against a session that was already resolved"""


class SessionExpired(SessionAlreadyClosed):
    """Crash session outlived its TTL and was settled as a loss"""


class InternalGeneratorError(EngineError):
    """Distribution or weight misconfiguration. Should be unreachable."""
