"""
Failure recovery: backoff curves, error classification, circuit breaking
and the retry policy that composes them.
"""

from pyconductor.recovery.backoff import compute_delay, fibonacci
from pyconductor.recovery.circuit_breaker import CircuitBreaker, CircuitBreakerState
from pyconductor.recovery.classifier import ErrorClassifier
from pyconductor.recovery.policy import RecoveryHooks, RecoveryPolicy

__all__ = [
    "compute_delay",
    "fibonacci",
    "CircuitBreaker",
    "CircuitBreakerState",
    "ErrorClassifier",
    "RecoveryHooks",
    "RecoveryPolicy",
]
