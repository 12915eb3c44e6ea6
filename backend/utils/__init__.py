"""
Utils Package

Provides utility modules for:
- retry: Bounded exponential-backoff retry policy for external calls
"""

from .retry import (
    RetryPolicy,
    RetryExhausted,
    is_transient_error,
)

__all__ = [
    'RetryPolicy',
    'RetryExhausted',
    'is_transient_error',
]
