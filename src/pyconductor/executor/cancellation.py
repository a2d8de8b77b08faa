"""Cooperative cancellation tokens.

A token is a flag passed explicitly into each unit of work and checked
at resume points (before an attempt starts, after in-flight work settles).
In-flight calls are never aborted: their result is discarded and the
unit of work reports ``cancelled``.

Tokens form a tree. Cancelling a run token cancels every node token
derived from it; cancelling a node token leaves its siblings alone.
"""

from __future__ import annotations

from collections.abc import Callable

from pyconductor.core.errors import TaskCancelledError


class CancellationToken:
    """Cancellation flag shared between a scheduler and one unit of work.

    Usage:
        ```python
        run_token = CancellationToken()
        node_token = run_token.child()

        run_token.cancel("shutdown")
        assert node_token.cancelled
        ```
    """

    def __init__(self, parent: CancellationToken | None = None):
        self._cancelled = False
        self._reason: str | None = None
        self._parent = parent
        self._callbacks: list[Callable[[CancellationToken], None]] = []

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self.cancelled})"

    @property
    def cancelled(self) -> bool:
        """True once this token or any ancestor has been cancelled."""
        if self._cancelled:
            return True
        return self._parent is not None and self._parent.cancelled

    @property
    def reason(self) -> str | None:
        """Reason given to the nearest cancelled token, if any."""
        if self._cancelled:
            return self._reason
        if self._parent is not None:
            return self._parent.reason
        return None

    def cancel(self, reason: str | None = None) -> bool:
        """Cancel this token.

        Returns:
            True if this call cancelled the token, False if it already was.
        """
        if self._cancelled:
            return False
        self._cancelled = True
        self._reason = reason
        for callback in list(self._callbacks):
            callback(self)
        return True

    def child(self) -> CancellationToken:
        """Create a token that is cancelled whenever this one is."""
        return CancellationToken(parent=self)

    def on_cancel(self, callback: Callable[[CancellationToken], None]) -> None:
        """Register a callback fired when this token itself is cancelled."""
        self._callbacks.append(callback)

    def raise_if_cancelled(self, operation: str = "operation") -> None:
        """Raise TaskCancelledError at a resume point if cancelled."""
        if self.cancelled:
            raise TaskCancelledError(operation, self.reason)
