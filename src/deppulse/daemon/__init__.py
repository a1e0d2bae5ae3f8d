"""Fallback retry scanner daemon for deppulse."""

from .continuous import RateLimitExhausted, RetryScanner

__all__ = ["RateLimitExhausted", "RetryScanner"]
