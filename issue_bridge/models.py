"""
Value types shared by the fetchers, the reconciler and the executor.

Everything here is rebuilt from the two remote systems on every tick; nothing
is persisted.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import List, Optional, Tuple


DEFAULT_THREAD_PREFIXES: Tuple[str, ...] = ("[BUG]", "[FEATURE]", "[QUESTION]", "[FEEDBACK]")


class IssueState(str, enum.Enum):
    OPEN = "open"
    CLOSED = "closed"


class IntentKind(str, enum.Enum):
    LOCK = "lock"
    UNLOCK = "unlock"
    ANNOUNCE = "announce"
    REACT = "react"


@dataclass(frozen=True)
class Project:
    """One forum channel paired with one GitHub repository."""

    owner: str
    repo: str
    guild_id: int
    forum_channel_id: int
    allowed_role_id: Optional[int] = None
    sync_enabled: bool = True
    poll_interval: int = 10
    name: Optional[str] = None
    thread_prefixes: Tuple[str, ...] = DEFAULT_THREAD_PREFIXES

    @property
    def key(self) -> Tuple[str, str, int]:
        return (self.owner.lower(), self.repo.lower(), self.forum_channel_id)

    @property
    def slug(self) -> str:
        return f"{self.owner}/{self.repo}"

    @property
    def label(self) -> str:
        return self.name or self.slug

    def describe(self) -> str:
        """One-line settings summary for the ``show`` command."""
        parts = [f"<#{self.forum_channel_id}>", f"every {self.poll_interval}s"]
        if self.allowed_role_id:
            parts.append(f"role <@&{self.allowed_role_id}>")
        return " · ".join(parts)


@dataclass(frozen=True)
class IssueSummary:
    number: int
    title: str
    state: IssueState
    labels: Tuple[str, ...] = ()
    assignee: Optional[str] = None
    html_url: str = ""


@dataclass(frozen=True)
class ThreadState:
    thread_id: int
    locked: bool
    archived: bool
    exists: bool = True
    name: Optional[str] = None


@dataclass(frozen=True)
class SyncIntent:
    """A single mutation to apply to a thread.

    ``payload`` carries the message text for ANNOUNCE and the emoji for REACT.
    """

    thread_id: int
    kind: IntentKind
    reason: str
    payload: Optional[str] = None

    def describe(self) -> str:
        if self.payload:
            return f"{self.kind.value}({self.thread_id}, {self.payload!r})"
        return f"{self.kind.value}({self.thread_id})"


@dataclass
class IntentResult:
    intent: SyncIntent
    ok: bool
    error: Optional[str] = None
    skipped: bool = False


@dataclass
class TickReport:
    """Counters for one reconciliation pass over a project."""

    project: Project
    dry_run: bool = False
    issues_seen: int = 0
    skipped_no_id: int = 0
    threads_missing: int = 0
    transient_failures: int = 0
    thread_errors: int = 0
    intents_emitted: int = 0
    intents_applied: int = 0
    intents_failed: int = 0
    intents_abandoned: int = 0
    results: List[IntentResult] = field(default_factory=list)
    planned: List[SyncIntent] = field(default_factory=list)

    def record(self, results: List[IntentResult]) -> None:
        self.results.extend(results)
        for result in results:
            if result.skipped:
                self.intents_abandoned += 1
            elif result.ok:
                self.intents_applied += 1
            else:
                self.intents_failed += 1

    def summary(self) -> str:
        return (
            f"{self.issues_seen} issues, {self.skipped_no_id} without id, "
            f"{self.threads_missing} missing threads, {self.transient_failures} transient failures, "
            f"{self.thread_errors} thread errors, "
            f"{self.intents_emitted} intents ({self.intents_applied} applied, "
            f"{self.intents_failed} failed, {self.intents_abandoned} abandoned)"
        )


@dataclass
class ThreadAudit:
    issue: IssueSummary
    thread_id: int
    thread: Optional[ThreadState]
    intents: List[SyncIntent] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def in_sync(self) -> bool:
        return self.thread is not None and not self.intents
