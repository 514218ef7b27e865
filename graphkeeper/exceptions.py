"""
Custom exception hierarchy for graphkeeper.

Typed exceptions let the batch pipeline tell degradable item failures apart
from failures that must abort a batch.

Exception Hierarchy:
    GraphkeeperError (base)
    ├── ValidationError → ConfigurationError, TemporalInvariantError
    ├── ProviderError → APIKeyError, RateLimitError, ProviderTimeoutError,
    │                   ArbitrationError, SummarizationError
    ├── StorageError → DatabaseConnectionError → StorageConnectionError
    │                  GraphStoreError
    ├── RetrievalError → EmbeddingError
    └── ConsistencyError → IdentityMapError, MembershipDirectionError

Usage:
    from graphkeeper.exceptions import ArbitrationError, StorageConnectionError

    try:
        verdict = await arbiter.decide_node(candidate, related)
    except ArbitrationError as e:
        logger.warning(f"Arbitration failed, treating as novel: {e}")
"""

from typing import Any, Dict, Optional


class GraphkeeperError(Exception):
    """Base exception for all graphkeeper errors."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.cause = cause

    def __str__(self) -> str:
        if self.cause:
            return f"{self.message} (caused by: {type(self.cause).__name__}: {self.cause})"
        return self.message


# =============================================================================
# Validation Errors
# =============================================================================

class ValidationError(GraphkeeperError):
    """Error validating input data or configuration."""
    pass


class ConfigurationError(ValidationError):
    """Error in configuration (missing keys, invalid values)."""
    pass


class TemporalInvariantError(ValidationError):
    """Edge temporal fields are out of order (valid_from <= invalid_at <= expired_at)."""
    pass


# =============================================================================
# Provider Errors (LLM API)
# =============================================================================

class ProviderError(GraphkeeperError):
    """Error from LLM provider (API error, rate limit, etc.)."""
    pass


class APIKeyError(ProviderError):
    """Missing or invalid API key."""
    pass


class RateLimitError(ProviderError):
    """API rate limit exceeded."""
    pass


class ProviderTimeoutError(ProviderError):
    """LLM provider request timed out."""
    pass


class ArbitrationError(ProviderError):
    """Arbitration call failed or returned a response that could not be parsed."""
    pass


class SummarizationError(ProviderError):
    """Summarization or naming call failed."""
    pass


# =============================================================================
# Storage Errors
# =============================================================================

class StorageError(GraphkeeperError):
    """Error in storage layer."""
    pass


class DatabaseConnectionError(StorageError):
    """Failed to connect to database."""
    pass


class StorageConnectionError(DatabaseConnectionError):
    """Required graph storage is unreachable. Fatal for a batch."""
    pass


class GraphStoreError(StorageError):
    """Error in a single graph store operation (query or write)."""
    pass


# =============================================================================
# Retrieval Errors
# =============================================================================

class RetrievalError(GraphkeeperError):
    """Error in retrieval pipeline."""
    pass


class EmbeddingError(RetrievalError):
    """Error generating embeddings."""
    pass


# =============================================================================
# Consistency Errors (programming errors, never self-corrected)
# =============================================================================

class ConsistencyError(GraphkeeperError):
    """A graph invariant was violated."""
    pass


class IdentityMapError(ConsistencyError):
    """Identity map contains a cycle or an unresolved chain."""
    pass


class MembershipDirectionError(ConsistencyError):
    """Membership edge does not point community -> member."""
    pass


# =============================================================================
# Helper functions
# =============================================================================

def wrap_exception(
    exception: Exception,
    target_type: type = GraphkeeperError,
    message: Optional[str] = None
) -> GraphkeeperError:
    """
    Wrap a generic exception in a typed graphkeeper exception.

    Args:
        exception: Original exception
        target_type: Type of GraphkeeperError to create
        message: Optional custom message (defaults to str(exception))

    Returns:
        Typed GraphkeeperError with original exception as cause
    """
    msg = message or str(exception)
    return target_type(
        message=msg,
        details={"original_type": type(exception).__name__},
        cause=exception
    )


def is_recoverable(exception: BaseException) -> bool:
    """
    Check if an exception is recoverable (batch can continue with a fallback).

    Unrecoverable exceptions:
    - KeyboardInterrupt, SystemExit
    - MemoryError, RecursionError
    - ConfigurationError (fix config first)
    - APIKeyError (fix credentials first)
    - StorageConnectionError (storage is gone, nothing downstream can persist)
    - ConsistencyError (data corruption risk)

    Returns:
        True if execution can continue with fallback
    """
    unrecoverable_types = (
        KeyboardInterrupt,
        SystemExit,
        MemoryError,
        RecursionError,
        ConfigurationError,
        APIKeyError,
        StorageConnectionError,
        ConsistencyError,
    )
    return not isinstance(exception, unrecoverable_types)
