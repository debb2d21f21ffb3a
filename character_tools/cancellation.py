"""Cooperative cancellation and the generation error taxonomy.

A CancellationToken is created per generation attempt and shared by the
transport call and the stream loop. Cancelling never interrupts work on the
backend side; it only makes this process stop waiting at the next check.
"""

from __future__ import annotations

CANCELLED_MESSAGE = "Generation cancelled"


class CancellationToken:
    """One-shot cancellation flag."""

    def __init__(self) -> None:
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise GenerationAborted()


class GenerationAborted(Exception):
    """Raised when a cancellation token was observed during generation."""

    def __init__(self, message: str = "Aborted") -> None:
        super().__init__(message)


class GenerationError(RuntimeError):
    """Raised when the backend fails or reports an error."""
