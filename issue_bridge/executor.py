"""
Applies a thread's intent chain against Discord.

A failing intent ends its own chain only; the remaining intents of that chain
are reported as abandoned and the next tick re-derives them.

A chain is not cut short when the tick awaiting it is cancelled (tick timeout
or shutdown): it keeps running in the background until it finishes or is
cancelled itself through ``drain``, which logs every intent it drops.
"""
from __future__ import annotations

from typing import Any, List, Optional, Sequence, Set

import asyncio
import logging

from .errors import SyncError, ThreadNotFound, TransientError
from .models import IntentKind, IntentResult, Project, SyncIntent

log = logging.getLogger("red.issue_bridge.executor")


class MutationExecutor:
    def __init__(self, threads: Any) -> None:
        self.threads = threads
        self._chains: Set[asyncio.Task] = set()

    async def _apply_one(self, project: Project, intent: SyncIntent) -> None:
        if intent.kind is IntentKind.LOCK:
            await self.threads.lock(project, intent.thread_id, intent.reason)
        elif intent.kind is IntentKind.UNLOCK:
            await self.threads.unlock(project, intent.thread_id, intent.reason)
        elif intent.kind is IntentKind.ANNOUNCE:
            await self.threads.send_message(project, intent.thread_id, intent.payload)
        elif intent.kind is IntentKind.REACT:
            await self.threads.add_reaction(project, intent.thread_id, intent.payload)
        else:
            raise SyncError(f"Unknown intent kind {intent.kind!r}")

    async def _apply_chain(self, project: Project, thread_id: int, intents: Sequence[SyncIntent]) -> List[IntentResult]:
        results: List[IntentResult] = []
        for index, intent in enumerate(intents):
            try:
                await self._apply_one(project, intent)
            except asyncio.CancelledError:
                log.warning(
                    "[%s] Cancelled on thread %s, abandoned: %s",
                    project.label, thread_id, ", ".join(i.describe() for i in intents[index:]),
                )
                raise
            except ThreadNotFound as e:
                log.warning("[%s] %s failed, thread is gone: %s", project.label, intent.describe(), e)
                results.append(IntentResult(intent, ok=False, error=str(e)))
            except TransientError as e:
                log.warning("[%s] %s failed, will retry next tick: %s", project.label, intent.describe(), e)
                results.append(IntentResult(intent, ok=False, error=str(e)))
            except SyncError as e:
                log.warning("[%s] %s failed: %s", project.label, intent.describe(), e)
                results.append(IntentResult(intent, ok=False, error=str(e)))
            except Exception as e:
                log.exception("[%s] Unexpected error applying %s", project.label, intent.describe())
                results.append(IntentResult(intent, ok=False, error=repr(e)))
            else:
                log.debug("[%s] Applied %s (%s)", project.label, intent.describe(), intent.reason)
                results.append(IntentResult(intent, ok=True))
                continue

            rest = list(intents[index + 1:])
            if rest:
                log.warning(
                    "[%s] Abandoned %d intent(s) on thread %s: %s",
                    project.label, len(rest), thread_id, ", ".join(i.describe() for i in rest),
                )
                results.extend(IntentResult(i, ok=False, skipped=True, error="previous intent failed") for i in rest)
            break

        if results and all(r.ok for r in results):
            log.info(
                "[%s] Thread %s updated: %s",
                project.label, thread_id, ", ".join(r.intent.kind.value for r in results),
            )
        return results

    async def apply(self, project: Project, thread_id: int, intents: Sequence[SyncIntent]) -> List[IntentResult]:
        chain = asyncio.ensure_future(self._apply_chain(project, thread_id, intents))
        self._chains.add(chain)
        chain.add_done_callback(self._chains.discard)
        try:
            return await asyncio.shield(chain)
        except asyncio.CancelledError:
            if not chain.done():
                log.warning(
                    "[%s] Tick cancelled while updating thread %s, finishing its intents in the background",
                    project.label, thread_id,
                )
            raise

    @property
    def pending(self) -> int:
        return sum(1 for chain in self._chains if not chain.done())

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for chains that outlived their tick; cancel what is left after ``timeout``."""
        chains = [c for c in self._chains if not c.done()]
        if not chains:
            return
        done, pending = await asyncio.wait(chains, timeout=timeout)
        for chain in pending:
            chain.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
