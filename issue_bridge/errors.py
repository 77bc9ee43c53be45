"""
Failure kinds raised by the GitHub and Discord adapters.

The reconciler reacts differently to each branch: a missing thread is skipped
for the tick, a transient failure is skipped and naturally retried next tick,
and a fatal failure stops the project's scheduled loop.
"""

from typing import Optional


class SyncError(Exception):
    """Base class for every error raised by the sync engine."""


class ThreadNotFound(SyncError):
    """The thread was deleted, is not visible, or is outside the project's forum."""

    def __init__(self, thread_id: int, detail: str = "") -> None:
        self.thread_id = thread_id
        self.detail = detail
        msg = f"thread {thread_id} not found"
        if detail:
            msg += f" ({detail})"
        super().__init__(msg)


class TransientError(SyncError):
    """Timeouts, 5xx responses and dropped connections."""


class RateLimited(TransientError):
    def __init__(self, message: str = "rate limited", retry_after: Optional[float] = None) -> None:
        self.retry_after = retry_after
        if retry_after is not None:
            message = f"{message} (retry after {retry_after:.0f}s)"
        super().__init__(message)


class FatalSyncError(SyncError):
    """Invalid credentials or similar; the project's loop must stop."""


class ProjectConfigError(FatalSyncError):
    """A project definition that cannot be used (bad ids, unknown repository...)."""
