from __future__ import annotations

from typing import Any, List, Optional

import logging

from .codec import extract_thread_id
from .config import DONE_REACTION, MSG_ISSUE_CLOSED, MSG_ISSUE_REOPENED, REASON_CLOSED, REASON_OPEN
from .errors import SyncError, ThreadNotFound, TransientError
from .executor import MutationExecutor
from .models import IntentKind, IssueState, IssueSummary, Project, SyncIntent, ThreadAudit, ThreadState, TickReport

log = logging.getLogger("red.issue_bridge.reconciler")


def plan_intents(issue_state: IssueState, thread: ThreadState) -> List[SyncIntent]:
    """Intents that bring ``thread`` in line with an issue in ``issue_state``.

    GitHub is authoritative. A thread already in the target lock state gets
    nothing, which is what keeps announcements from repeating every tick.
    """
    if not thread.exists:
        return []
    tid = thread.thread_id
    if issue_state is IssueState.OPEN and thread.locked:
        return [
            SyncIntent(tid, IntentKind.UNLOCK, REASON_OPEN),
            SyncIntent(tid, IntentKind.ANNOUNCE, REASON_OPEN, MSG_ISSUE_REOPENED),
        ]
    if issue_state is IssueState.CLOSED and not thread.locked:
        return [
            SyncIntent(tid, IntentKind.LOCK, REASON_CLOSED),
            SyncIntent(tid, IntentKind.REACT, REASON_CLOSED, DONE_REACTION),
            SyncIntent(tid, IntentKind.ANNOUNCE, REASON_CLOSED, MSG_ISSUE_CLOSED),
        ]
    return []


class Reconciler:
    """Drives a project's forum threads towards the state of their issues.

    ``issues`` must provide ``search_issues(project, state)`` and ``threads``
    must provide ``get_thread(project, thread_id)`` plus the mutations used by
    MutationExecutor.
    """

    def __init__(self, issues: Any, threads: Any, executor: Optional[MutationExecutor] = None) -> None:
        self.issues = issues
        self.threads = threads
        self.executor = executor or MutationExecutor(threads)

    async def _fetch(self, project: Project, state: IssueState, report: TickReport) -> List[IssueSummary]:
        try:
            return await self.issues.search_issues(project, state)
        except TransientError as e:
            report.transient_failures += 1
            log.warning("[%s] Could not search %s issues, skipping them this tick: %s", project.label, state.value, e)
            return []

    async def _thread_state(self, project: Project, issue: IssueSummary, thread_id: int, report: TickReport) -> Optional[ThreadState]:
        try:
            return await self.threads.get_thread(project, thread_id)
        except ThreadNotFound as e:
            report.threads_missing += 1
            log.info("[%s] Thread %s for issue #%s not found: %s (%s)", project.label, thread_id, issue.number, e.detail or e, issue.html_url)
            return None
        except TransientError as e:
            report.transient_failures += 1
            log.warning("[%s] Could not fetch thread %s for issue #%s: %s", project.label, thread_id, issue.number, e)
            return None
        except SyncError as e:
            report.thread_errors += 1
            log.warning("[%s] Skipping issue #%s, thread %s could not be read: %s", project.label, issue.number, thread_id, e)
            return None
        except Exception:
            report.thread_errors += 1
            log.exception("[%s] Unexpected error reading thread %s for issue #%s", project.label, thread_id, issue.number)
            return None

    async def _reconcile_state(self, project: Project, state: IssueState, report: TickReport) -> None:
        for issue in await self._fetch(project, state, report):
            report.issues_seen += 1
            thread_id = extract_thread_id(issue.title)
            if thread_id is None:
                report.skipped_no_id += 1
                continue
            thread = await self._thread_state(project, issue, thread_id, report)
            if thread is None:
                continue
            intents = plan_intents(state, thread)
            if not intents:
                continue
            report.intents_emitted += len(intents)
            report.planned.extend(intents)
            if report.dry_run:
                continue
            log.debug("[%s] Issue #%s is %s, applying %d intent(s) to thread %s", project.label, issue.number, state.value, len(intents), thread_id)
            report.record(await self.executor.apply(project, thread_id, intents))

    async def reconcile(self, project: Project, *, dry_run: bool = False) -> TickReport:
        """Run one tick for ``project``: open issues first, then closed ones.

        Issues are handled one at a time in search order and each thread is
        read right before its intents are planned, so two issues embedding the
        same id see each other's effects (the last one processed wins).

        Raises:
            FatalSyncError: when a search fails for a non-transient reason.
        """
        report = TickReport(project=project, dry_run=dry_run)
        await self._reconcile_state(project, IssueState.OPEN, report)
        await self._reconcile_state(project, IssueState.CLOSED, report)
        if report.intents_emitted or report.transient_failures or report.thread_errors:
            log.info("[%s] Tick done: %s", project.label, report.summary())
        else:
            log.debug("[%s] Tick done: %s", project.label, report.summary())
        return report

    async def audit(self, project: Project) -> List[ThreadAudit]:
        """List every linked issue with its thread state and pending intents, changing nothing."""
        rows: List[ThreadAudit] = []
        for state in (IssueState.OPEN, IssueState.CLOSED):
            for issue in await self.issues.search_issues(project, state):
                thread_id = extract_thread_id(issue.title)
                if thread_id is None:
                    continue
                try:
                    thread = await self.threads.get_thread(project, thread_id)
                except SyncError as e:
                    rows.append(ThreadAudit(issue=issue, thread_id=thread_id, thread=None, error=str(e)))
                    continue
                rows.append(ThreadAudit(issue=issue, thread_id=thread_id, thread=thread, intents=plan_intents(state, thread)))
        return rows
