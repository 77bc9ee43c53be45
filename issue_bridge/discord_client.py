from __future__ import annotations

from typing import Any, Awaitable, Callable, List, Optional, TypeVar

import asyncio
import logging

import aiohttp
import discord

from .errors import RateLimited, SyncError, ThreadNotFound, TransientError
from .models import Project, ThreadState

T = TypeVar("T")

log = logging.getLogger("red.issue_bridge.discord")


class DiscordThreadClient:
    """Thread lookups and mutations scoped to a project's forum.

    discord.py already sleeps and retries on 429 inside its HTTP client; what
    reaches us here is a rate limit it gave up on, which is reported as
    RateLimited like any other transient failure.
    """

    def __init__(self, bot: discord.Client, *, timeout: float = 30, concurrency: int = 5) -> None:
        self.bot = bot
        self.timeout = timeout
        self._semaphore = asyncio.Semaphore(max(1, concurrency))

    async def _call(
        self,
        fn: Callable[[], Awaitable[T]],
        what: str,
        thread_id: int,
        *,
        forbidden_means_missing: bool = False,
    ) -> T:
        async with self._semaphore:
            try:
                return await asyncio.wait_for(fn(), timeout=self.timeout)
            except asyncio.TimeoutError:
                raise TransientError(f"Timed out after {self.timeout}s during {what} on thread {thread_id}") from None
            except discord.NotFound as e:
                raise ThreadNotFound(thread_id, f"{what}: {e.text or 'unknown channel'}") from e
            except discord.Forbidden as e:
                if forbidden_means_missing:
                    raise ThreadNotFound(thread_id, f"{what}: no access") from e
                raise SyncError(f"Missing permissions for {what} on thread {thread_id} (code {e.code})") from e
            except discord.HTTPException as e:
                if e.status == 429:
                    raise RateLimited(f"Discord rate limit during {what} on thread {thread_id}") from e
                if e.status >= 500:
                    raise TransientError(f"Discord {e.status} during {what} on thread {thread_id}") from e
                raise SyncError(f"Discord HTTP error during {what} on thread {thread_id} (code {e.code}): {e.text}") from e
            except (aiohttp.ClientError, OSError) as e:
                raise TransientError(f"Connection error during {what} on thread {thread_id}: {e}") from e

    async def _resolve_thread(self, project: Project, thread_id: int) -> discord.Thread:
        channel: Any = self.bot.get_channel(thread_id)
        if channel is None:
            channel = await self._call(
                lambda: self.bot.fetch_channel(thread_id), "fetch_channel", thread_id, forbidden_means_missing=True
            )
        if not isinstance(channel, discord.Thread):
            raise ThreadNotFound(thread_id, "not a thread")
        guild = getattr(channel, "guild", None)
        if guild is not None and guild.id != project.guild_id:
            raise ThreadNotFound(thread_id, f"belongs to guild {guild.id}, not {project.guild_id}")
        if channel.parent_id != project.forum_channel_id:
            raise ThreadNotFound(thread_id, f"not in forum {project.forum_channel_id}")
        return channel

    async def get_thread(self, project: Project, thread_id: int) -> ThreadState:
        thread = await self._resolve_thread(project, thread_id)
        return ThreadState(
            thread_id=thread.id,
            locked=bool(thread.locked),
            archived=bool(thread.archived),
            exists=True,
            name=thread.name,
        )

    async def lock(self, project: Project, thread_id: int, reason: str) -> None:
        thread = await self._resolve_thread(project, thread_id)
        await self._call(lambda: thread.edit(locked=True, reason=reason), "lock", thread_id)

    async def unlock(self, project: Project, thread_id: int, reason: str) -> None:
        thread = await self._resolve_thread(project, thread_id)
        # An archived thread can't be edited without unarchiving it too
        await self._call(lambda: thread.edit(locked=False, archived=False, reason=reason), "unlock", thread_id)

    async def send_message(
        self, project: Project, thread_id: int, content: Optional[str] = None, *, embed: Optional[discord.Embed] = None
    ) -> None:
        thread = await self._resolve_thread(project, thread_id)
        await self._call(lambda: thread.send(content=content, embed=embed), "send_message", thread_id)

    async def add_reaction(self, project: Project, thread_id: int, emoji: str) -> None:
        """React on the forum post itself; its starter message shares the thread id."""
        thread = await self._resolve_thread(project, thread_id)
        starter = thread.get_partial_message(thread.id)
        try:
            await self._call(lambda: starter.add_reaction(emoji), "add_reaction", thread_id)
        except ThreadNotFound as e:
            raise SyncError(f"Starter message of thread {thread_id} is gone") from e

    async def list_forum_threads(self, project: Project) -> List[discord.Thread]:
        guild = self.bot.get_guild(project.guild_id)
        if guild is None:
            raise ThreadNotFound(project.forum_channel_id, f"guild {project.guild_id} not available")
        threads = await self._call(guild.active_threads, "active_threads", project.forum_channel_id)
        return [t for t in threads if t.parent_id == project.forum_channel_id]

    async def archive(self, project: Project, thread_id: int, reason: str) -> None:
        thread = await self._resolve_thread(project, thread_id)
        await self._call(lambda: thread.edit(archived=True, reason=reason), "archive", thread_id)
