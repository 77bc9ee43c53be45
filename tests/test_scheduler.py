import asyncio
import logging

import pytest

from issue_bridge.config import DONE_REACTION, MSG_ISSUE_CLOSED
from issue_bridge.errors import FatalSyncError
from issue_bridge.models import IssueState
from issue_bridge.reconciler import Reconciler
from issue_bridge.scheduler import SyncScheduler

from .fakes import FakeForums, FakeIssues, make_issue, make_project

FAST = 0.01


async def _wait_for(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(FAST)


@pytest.mark.asyncio
async def test_ticks_each_project_repeatedly():
    alpha = make_project(repo="alpha", forum_channel_id=1, poll_interval=FAST)
    beta = make_project(repo="beta", forum_channel_id=2, poll_interval=FAST)
    ticks = {alpha.key: 0, beta.key: 0}

    async def reconcile(project):
        ticks[project.key] += 1
        return ticks[project.key]

    scheduler = SyncScheduler(reconcile)
    scheduler.start([alpha, beta])
    await _wait_for(lambda: min(ticks.values()) >= 3)
    await scheduler.stop()

    assert scheduler.last_result(alpha) >= 3
    assert not scheduler.is_running(alpha)


@pytest.mark.asyncio
async def test_disabled_projects_are_not_scheduled():
    project = make_project(sync_enabled=False, poll_interval=FAST)
    calls = []

    async def reconcile(p):
        calls.append(p)

    scheduler = SyncScheduler(reconcile)
    scheduler.start([project])
    await asyncio.sleep(0.05)
    await scheduler.stop()

    assert calls == []
    assert scheduler.running_projects() == []


@pytest.mark.asyncio
async def test_fatal_error_stops_only_that_project():
    broken = make_project(repo="broken", forum_channel_id=1, poll_interval=FAST)
    healthy = make_project(repo="healthy", forum_channel_id=2, poll_interval=FAST)
    ticks = {broken.key: 0, healthy.key: 0}

    async def reconcile(project):
        ticks[project.key] += 1
        if project is broken:
            raise FatalSyncError("bad credentials")

    scheduler = SyncScheduler(reconcile)
    scheduler.start([broken, healthy])
    await _wait_for(lambda: ticks[healthy.key] >= 5)

    assert ticks[broken.key] == 1
    assert not scheduler.is_running(broken)
    assert scheduler.is_running(healthy)
    assert scheduler.failure(broken) == "bad credentials"
    assert scheduler.running_projects() == [healthy]
    await scheduler.stop()


@pytest.mark.asyncio
async def test_unexpected_error_keeps_the_loop_alive():
    project = make_project(poll_interval=FAST)
    ticks = []

    async def reconcile(p):
        ticks.append(1)
        if len(ticks) == 1:
            raise RuntimeError("first tick blew up")

    scheduler = SyncScheduler(reconcile)
    scheduler.start([project])
    await _wait_for(lambda: len(ticks) >= 3)
    assert scheduler.is_running(project)
    await scheduler.stop()


@pytest.mark.asyncio
async def test_stop_lets_the_running_tick_finish_and_starts_no_new_one():
    project = make_project(poll_interval=FAST)
    started = asyncio.Event()
    release = asyncio.Event()
    finished = []
    ticks = []

    async def reconcile(p):
        ticks.append(1)
        started.set()
        await release.wait()
        finished.append(1)

    scheduler = SyncScheduler(reconcile)
    scheduler.start([project])
    await started.wait()

    stopper = asyncio.create_task(scheduler.stop())
    await asyncio.sleep(FAST)
    assert not stopper.done()
    release.set()
    await stopper

    assert finished == [1]
    assert ticks == [1]


@pytest.mark.asyncio
async def test_stop_timeout_cancels_stuck_ticks():
    project = make_project(poll_interval=FAST)
    started = asyncio.Event()

    async def reconcile(p):
        started.set()
        await asyncio.sleep(10)

    scheduler = SyncScheduler(reconcile)
    scheduler.start([project])
    await started.wait()
    await scheduler.stop(timeout=0.05)

    assert not scheduler.is_running(project)


@pytest.mark.asyncio
async def test_tick_timeout_cuts_a_slow_tick_and_continues():
    project = make_project(poll_interval=FAST)
    ticks = []

    async def reconcile(p):
        ticks.append(1)
        if len(ticks) == 1:
            await asyncio.sleep(10)

    scheduler = SyncScheduler(reconcile, tick_timeout=0.05)
    scheduler.start([project])
    await _wait_for(lambda: len(ticks) >= 2)
    await scheduler.stop()


@pytest.mark.asyncio
async def test_waits_for_the_interval_between_ticks():
    project = make_project(poll_interval=10)
    ticks = []

    async def reconcile(p):
        ticks.append(1)

    scheduler = SyncScheduler(reconcile)
    scheduler.start([project])
    await _wait_for(lambda: ticks)
    await asyncio.sleep(0.05)
    await scheduler.stop()

    assert ticks == [1]


@pytest.mark.asyncio
async def test_no_tick_starts_after_stop():
    project = make_project(poll_interval=FAST)
    ticks = []

    async def reconcile(p):
        ticks.append(1)

    scheduler = SyncScheduler(reconcile)
    scheduler.start([project])
    await _wait_for(lambda: len(ticks) >= 2)
    await scheduler.stop()
    seen = len(ticks)
    await asyncio.sleep(0.05)

    assert len(ticks) == seen
    assert not scheduler.is_running(project)


@pytest.mark.asyncio
async def test_restart_after_stop_schedules_again():
    project = make_project(poll_interval=FAST)
    ticks = []

    async def reconcile(p):
        ticks.append(1)

    scheduler = SyncScheduler(reconcile)
    scheduler.start([project])
    await _wait_for(lambda: ticks)
    await scheduler.stop()

    scheduler.start([project])
    await _wait_for(lambda: len(ticks) >= 3)
    assert scheduler.is_running(project)
    await scheduler.stop()


class SlowReactionForums(FakeForums):
    def __init__(self) -> None:
        super().__init__()
        self.release = asyncio.Event()

    async def add_reaction(self, project, thread_id, emoji):
        await self.release.wait()
        await super().add_reaction(project, thread_id, emoji)


@pytest.mark.asyncio
async def test_tick_timeout_does_not_lose_a_half_applied_chain(caplog):
    caplog.set_level(logging.WARNING, logger="red.issue_bridge")
    project = make_project(poll_interval=FAST)
    issues = FakeIssues()
    issues.set(project, make_issue(1, "Crash on load [555]", IssueState.CLOSED))
    forums = SlowReactionForums()
    thread = forums.add(project, 555)
    reconciler = Reconciler(issues, forums)

    scheduler = SyncScheduler(reconciler.reconcile, tick_timeout=0.1)
    scheduler.start([project])
    await _wait_for(lambda: "cut short" in caplog.text)

    assert thread.locked
    assert "finishing its intents in the background" in caplog.text
    forums.release.set()
    await scheduler.stop()
    await reconciler.executor.drain(timeout=1)

    assert thread.reactions == [DONE_REACTION]
    assert thread.messages == [MSG_ISSUE_CLOSED]
