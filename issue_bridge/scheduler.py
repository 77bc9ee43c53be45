from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple

import asyncio
import logging

from discord.ext import tasks

from .errors import FatalSyncError
from .models import Project

log = logging.getLogger("red.issue_bridge.scheduler")

ProjectKey = Tuple[str, str, int]


class SyncScheduler:
    """One ``tasks.Loop`` per project.

    Projects never share reconciliation state; they only meet in the shared
    API clients used by ``reconcile``. A tick always finishes (or times out)
    before the same project's next tick starts.
    """

    def __init__(self, reconcile: Callable[[Project], Awaitable[Any]], *, tick_timeout: Optional[float] = None) -> None:
        self._reconcile = reconcile
        self._tick_timeout = tick_timeout
        self._stopping = asyncio.Event()
        self._loops: Dict[ProjectKey, tasks.Loop] = {}
        self._projects: Dict[ProjectKey, Project] = {}
        self._in_tick: Set[ProjectKey] = set()
        self._last_results: Dict[ProjectKey, Any] = {}
        self._failures: Dict[ProjectKey, str] = {}

    def _timeout_for(self, project: Project) -> float:
        if self._tick_timeout is not None:
            return self._tick_timeout
        return max(60.0, 6.0 * project.poll_interval)

    def start(self, projects: Iterable[Project]) -> None:
        self._stopping.clear()
        for project in projects:
            if not project.sync_enabled:
                log.info("[%s] Sync disabled, not scheduling", project.label)
                continue
            if self.is_running(project):
                log.debug("[%s] Already scheduled", project.label)
                continue
            self._projects[project.key] = project
            self._failures.pop(project.key, None)
            loop = tasks.loop(seconds=project.poll_interval, reconnect=False)(self._poll)
            self._loops[project.key] = loop
            loop.start(project)
            log.info("[%s] Scheduled every %ss", project.label, project.poll_interval)

    async def _tick(self, project: Project) -> None:
        timeout = self._timeout_for(project)
        try:
            self._last_results[project.key] = await asyncio.wait_for(self._reconcile(project), timeout=timeout)
        except asyncio.TimeoutError:
            log.warning("[%s] Tick did not finish within %ss and was cut short", project.label, timeout)

    async def _poll(self, project: Project) -> None:
        # Loop.stop() only takes effect after the sleep that follows the
        # current iteration, so a tick woken after shutdown must do nothing.
        if self._stopping.is_set():
            return
        self._in_tick.add(project.key)
        try:
            await self._tick(project)
        except FatalSyncError as e:
            self._failures[project.key] = str(e)
            log.error("[%s] Stopping sync for this project: %s", project.label, e)
            self._loops[project.key].stop()
        except Exception:
            log.exception("[%s] Unexpected error during tick", project.label)
        finally:
            self._in_tick.discard(project.key)

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Stop scheduling ticks and wait for in-flight ticks to finish.

        Loops that are sleeping between ticks are cancelled right away. Ticks
        still running after ``timeout`` seconds are cancelled.
        """
        self._stopping.set()
        running: List[asyncio.Task] = []
        for key, loop in self._loops.items():
            task = loop.get_task()
            if task is None or task.done():
                continue
            if key in self._in_tick:
                loop.stop()
            else:
                loop.cancel()
            running.append(task)
        if running:
            done, pending = await asyncio.wait(running, timeout=timeout)
            for task in pending:
                log.warning("Cancelling a polling loop, tick still running at shutdown")
                task.cancel()
            await asyncio.gather(*running, return_exceptions=True)
        self._loops.clear()
        log.info("Issue sync scheduler stopped")

    def is_running(self, project: Project) -> bool:
        loop = self._loops.get(project.key)
        return loop is not None and loop.is_running()

    def running_projects(self) -> List[Project]:
        return [self._projects[key] for key, loop in self._loops.items() if loop.is_running()]

    def last_result(self, project: Project) -> Any:
        return self._last_results.get(project.key)

    def failure(self, project: Project) -> Optional[str]:
        return self._failures.get(project.key)
