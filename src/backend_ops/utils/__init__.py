"""Shared utilities: backoff schedule and decorators."""
from .backoff import BackoffPolicy
from .decorators import log_execution_time, retry

__all__ = ["BackoffPolicy", "log_execution_time", "retry"]
