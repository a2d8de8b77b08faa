"""
Error classification.

Maps an exception to an ErrorCategory with ordered rules:

1. Exception type (TimeoutError, ConnectionError, MemoryError, ...)
2. Regex patterns matched against ``"{ExceptionType}: {message}"``,
   category by category in a fixed order. First match wins.
3. Otherwise ``unknown``.

Classification never decides retryability. RecoveryPolicy combines the
category with its own retryable classes, patterns and categories.
"""

from __future__ import annotations

import re

from pyconductor.core.errors import CircuitOpenError, SchedulingError, TaskCancelledError
from pyconductor.models.retry import ErrorCategory

# Checked before any pattern. Order matters: subclasses first.
TYPE_RULES: tuple[tuple[type[BaseException], ErrorCategory], ...] = (
    (TaskCancelledError, ErrorCategory.PERMANENT),
    (SchedulingError, ErrorCategory.PERMANENT),
    (CircuitOpenError, ErrorCategory.TRANSIENT),
    (TimeoutError, ErrorCategory.TIMEOUT),
    (ConnectionError, ErrorCategory.TRANSIENT),
    (MemoryError, ErrorCategory.RESOURCE),
)

# Pattern rules, in match order
PATTERN_RULES: tuple[tuple[ErrorCategory, tuple[str, ...]], ...] = (
    (
        ErrorCategory.RATE_LIMIT,
        (r"rate.?limit", r"too.?many.?requests", r"\b429\b"),
    ),
    (
        ErrorCategory.AUTH,
        (
            r"\b401\b",
            r"\b403\b",
            r"unauthori[sz]ed",
            r"forbidden",
            r"invalid.?api.?key",
            r"authentication",
        ),
    ),
    (
        ErrorCategory.TIMEOUT,
        (r"timeout", r"timed.?out"),
    ),
    (
        ErrorCategory.TRANSIENT,
        (
            r"ECONNRESET",
            r"ECONNREFUSED",
            r"ENOTFOUND",
            r"\b50[234]\b",
            r"temporarily.?unavailable",
            r"service.?unavailable",
            r"connection.?(reset|refused|aborted)",
        ),
    ),
    (
        ErrorCategory.RESOURCE,
        (r"quota", r"limit.?exceeded", r"ENOMEM", r"out.?of.?memory", r"too.?large"),
    ),
    (
        ErrorCategory.PERMANENT,
        (r"\b404\b", r"not.?found"),
    ),
    (
        ErrorCategory.VALIDATION,
        (r"invalid", r"validation", r"required", r"must.?be", r"expected"),
    ),
)


class ErrorClassifier:
    """
    Ordered-rule error classifier.

    Example:
        ```python
        classifier = ErrorClassifier()
        classifier.classify(ConnectionResetError("peer hung up"))
        # ErrorCategory.TRANSIENT
        classifier.classify(RuntimeError("HTTP 429 Too Many Requests"))
        # ErrorCategory.RATE_LIMIT
        ```

    Extra rules are consulted before the built-in pattern rules:

        ```python
        classifier = ErrorClassifier(
            extra_rules=[(ErrorCategory.PERMANENT, [r"context length"])]
        )
        ```
    """

    def __init__(
        self,
        extra_rules: list[tuple[ErrorCategory, list[str]]] | None = None,
    ):
        rules = list(extra_rules or []) + [(c, list(p)) for c, p in PATTERN_RULES]
        self._rules: list[tuple[ErrorCategory, list[re.Pattern[str]]]] = [
            (category, [re.compile(p, re.IGNORECASE) for p in patterns])
            for category, patterns in rules
        ]

    def classify(self, error: BaseException) -> ErrorCategory:
        for error_type, category in TYPE_RULES:
            if isinstance(error, error_type):
                return category

        text = f"{type(error).__name__}: {error}"
        for category, patterns in self._rules:
            if any(p.search(text) for p in patterns):
                return category

        return ErrorCategory.UNKNOWN

    __call__ = classify
