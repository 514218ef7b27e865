"""
Utility modules for graphkeeper.

This package provides shared utilities for:
- Logging setup
- Async retry logic with exponential backoff
- Error sanitization (security)
- LLM response parsing and text normalization
- Async fan-out and vector helpers
"""

from .async_helpers import (
    cosine_similarity,
    gather_bounded,
    l2_normalize,
    pgvector_to_vec,
    run_async_safe,
    vec_to_pgvector,
)
from .logger import setup_logger
from .retry import (
    async_retry_with_exponential_backoff,
    is_retryable_error,
)
from .security import mask_api_key, sanitize_error
from .text_helpers import normalize_fact, normalize_name, parse_json_object, strip_code_fences

__all__ = [
    "cosine_similarity",
    "gather_bounded",
    "l2_normalize",
    "pgvector_to_vec",
    "run_async_safe",
    "vec_to_pgvector",
    "setup_logger",
    "async_retry_with_exponential_backoff",
    "is_retryable_error",
    "mask_api_key",
    "sanitize_error",
    "normalize_fact",
    "normalize_name",
    "parse_json_object",
    "strip_code_fences",
]
