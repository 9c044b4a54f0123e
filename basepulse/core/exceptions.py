"""
Custom exception classes for the indexer.
Provides structured error handling across all modules.
"""

from typing import Any, Optional, Dict


class BasePulseException(Exception):
    """Base exception class for the BasePulse indexer."""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationError(BasePulseException):
    """Raised when there's a configuration error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CONFIGURATION_ERROR", details)


class DatabaseError(BasePulseException):
    """Raised when there's a database error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "DATABASE_ERROR", details)


class ChainClientError(BasePulseException):
    """Raised when a node RPC call fails for good."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        code: str = "CHAIN_CLIENT_ERROR"
    ):
        super().__init__(message, code, details)


class TransientRPCError(ChainClientError):
    """Raised for RPC failures worth retrying (timeouts, dropped connections)."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, "TRANSIENT_RPC_ERROR")


class SubscriptionStalledError(ChainClientError):
    """Raised when a log subscription stays silent past its timeout."""

    def __init__(self, timeout: float):
        super().__init__(
            f"No subscription activity for {timeout}s",
            {"timeout": timeout},
            "SUBSCRIPTION_STALLED"
        )


class DecodeError(BasePulseException):
    """Raised when a raw log can't be mapped to a known contract event."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "DECODE_ERROR", details)


class IndexerError(BasePulseException):
    """Raised when there's an event indexer error."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        code: str = "INDEXER_ERROR"
    ):
        super().__init__(message, code, details)


class CheckpointRegressionError(IndexerError):
    """Raised when a chain's stored checkpoint went backwards under us."""

    def __init__(self, chain_id: int, stored: int, expected: int):
        super().__init__(
            f"Checkpoint for chain {chain_id} regressed: stored {stored}, expected >= {expected}",
            {"chain_id": chain_id, "stored": stored, "expected": expected},
            "CHECKPOINT_REGRESSION"
        )
