from __future__ import annotations

from typing import List, Optional

import asyncio
import contextlib
import logging

import discord
from redbot.core import commands, Config
from redbot.core.bot import Red
from redbot.core.utils.chat_formatting import box, humanize_list, pagify

from .config import (
    DEFAULT_GLOBAL_CONFIG,
    DEFAULT_GUILD_CONFIG,
    DEFAULT_PROJECT_CONFIG,
    MIN_POLL_INTERVAL,
    build_project,
    build_projects,
)
from .discord_client import DiscordThreadClient
from .errors import FatalSyncError, ProjectConfigError, SyncError
from .github_client import GitHubIssueSearch
from .models import Project, TickReport
from .reconciler import Reconciler
from .scheduler import SyncScheduler


class IssueBridge(commands.Cog):
    """
    Keep Discord forum threads in step with the GitHub issues that embed their id.

    Issues titled like ``Crash on load [1234567890]`` are linked to forum
    thread 1234567890. Closing the issue locks the thread, reopening it unlocks
    the thread. Nothing is stored about the links: they are read back from the
    issue titles on every poll.
    """

    __author__ = "Mosley"
    __version__ = "1.0.0"

    def __init__(self, bot: Red) -> None:
        self.bot = bot
        self.config = Config.get_conf(self, identifier=908039527271104515, force_registration=True)
        self.config.register_global(**DEFAULT_GLOBAL_CONFIG)
        self.config.register_guild(**DEFAULT_GUILD_CONFIG)
        self.log = logging.getLogger("red.issue_bridge")

        self.github: Optional[GitHubIssueSearch] = None
        self.threads: Optional[DiscordThreadClient] = None
        self.reconciler: Optional[Reconciler] = None
        self.scheduler: Optional[SyncScheduler] = None
        self._startup_task: Optional[asyncio.Task] = None
        self._restart_lock = asyncio.Lock()

    # ----------------------
    # Lifecycle
    # ----------------------
    async def cog_load(self) -> None:
        self._startup_task = asyncio.create_task(self._start_when_ready())

    async def cog_unload(self) -> None:
        if self._startup_task and not self._startup_task.done():
            self._startup_task.cancel()
        await self._stop_sync()

    async def _start_when_ready(self) -> None:
        await self.bot.wait_until_red_ready()
        await self._restart_sync()

    async def _stop_sync(self) -> None:
        if self.scheduler is not None:
            await self.scheduler.stop(timeout=30)
            self.scheduler = None
        if self.reconciler is not None:
            await self.reconciler.executor.drain(timeout=30)
        if self.github is not None:
            with contextlib.suppress(Exception):
                self.github.close()
            self.github = None

    async def _all_projects(self) -> List[Project]:
        projects: List[Project] = []
        for guild_id, data in (await self.config.all_guilds()).items():
            projects.extend(build_projects(guild_id, data.get("projects", {})))
        return projects

    async def _restart_sync(self) -> None:
        """(Re)build the shared clients and reschedule every configured project."""
        async with self._restart_lock:
            await self._stop_sync()
            settings = await self.config.all()
            token = settings.get("github_token")
            if not token:
                self.log.warning("No GitHub token set, issue sync is idle")
                return

            self.github = GitHubIssueSearch(
                token, timeout=settings["github_timeout"], concurrency=settings["github_concurrency"]
            )
            self.threads = DiscordThreadClient(
                self.bot, timeout=settings["discord_timeout"], concurrency=settings["discord_concurrency"]
            )
            self.reconciler = Reconciler(self.github, self.threads)
            self.scheduler = SyncScheduler(self.reconciler.reconcile)

            projects = await self._all_projects()
            self.scheduler.start(projects)
            self.log.info("Issue sync started for %d project(s)", len(self.scheduler.running_projects()))

    # ----------------------
    # Helpers
    # ----------------------
    async def _get_project(self, ctx: commands.Context, forum: discord.ForumChannel) -> Optional[Project]:
        data = await self.config.guild(ctx.guild).get_raw("projects", str(forum.id), default=None)
        if data is None:
            await ctx.send(f"❌ {forum.mention} is not linked to a repository.")
            return None
        try:
            return build_project(ctx.guild.id, forum.id, data)
        except ProjectConfigError as e:
            await ctx.send(f"❌ Stored project for {forum.mention} is invalid: {e}")
            return None

    async def _require_engine(self, ctx: commands.Context) -> Optional[Reconciler]:
        if self.reconciler is None:
            await ctx.send("❌ Sync is not running. Set a token with `bridgeset token` first.")
            return None
        return self.reconciler

    @staticmethod
    def _format_report(report: TickReport) -> str:
        lines = [report.summary()]
        for result in report.results:
            status = "ok" if result.ok else ("skipped" if result.skipped else f"failed: {result.error}")
            lines.append(f"{result.intent.describe()} -> {status}")
        if report.dry_run:
            lines.extend(f"{intent.describe()} (planned)" for intent in report.planned)
        return "\n".join(lines)

    # ----------------------
    # Configuration Commands
    # ----------------------
    @commands.group(name="bridgeset")
    @commands.guild_only()
    @commands.admin_or_permissions(manage_guild=True)
    async def bridgeset(self, ctx: commands.Context) -> None:
        """Configure GitHub issue ↔ forum thread sync."""

    @bridgeset.command(name="token")
    @commands.is_owner()
    async def bridgeset_token(self, ctx: commands.Context, token: str) -> None:
        """Set the GitHub token used for every project's searches."""
        with contextlib.suppress(discord.HTTPException):
            await ctx.message.delete()
        candidate = GitHubIssueSearch(token)
        try:
            login = await candidate.whoami()
        except FatalSyncError:
            await ctx.send("❌ Token validation failed.")
            self.log.warning("GitHub token validation failed")
            return
        except SyncError as e:
            await ctx.send(f"❌ Error validating token: {e}")
            return
        finally:
            candidate.close()
        await self.config.github_token.set(token)
        await ctx.send(f"✅ GitHub token set (authenticated as `{login}`).")
        await self._restart_sync()

    @bridgeset.command(name="add")
    async def bridgeset_add(
        self, ctx: commands.Context, forum: discord.ForumChannel, owner: str, repo: str, *, name: Optional[str] = None
    ) -> None:
        """Link a forum channel to the GitHub repository OWNER REPO."""
        data = dict(DEFAULT_PROJECT_CONFIG, owner=owner, repo=repo, name=name)
        try:
            build_project(ctx.guild.id, forum.id, data)
        except ProjectConfigError as e:
            await ctx.send(f"❌ {e}")
            return
        await self.config.guild(ctx.guild).set_raw("projects", str(forum.id), value=data)
        self.log.debug("Project %s/%s linked to forum %s (guild=%s)", owner, repo, forum.id, ctx.guild.id)
        await ctx.send(f"✅ {forum.mention} now follows `{owner}/{repo}`.")
        await self._restart_sync()

    @bridgeset.command(name="remove")
    async def bridgeset_remove(self, ctx: commands.Context, forum: discord.ForumChannel) -> None:
        """Unlink a forum channel."""
        async with self.config.guild(ctx.guild).projects() as projects:
            removed = projects.pop(str(forum.id), None)
        if removed is None:
            await ctx.send(f"❌ {forum.mention} is not linked to a repository.")
            return
        await ctx.send(f"✅ {forum.mention} unlinked from `{removed.get('owner')}/{removed.get('repo')}`.")
        await self._restart_sync()

    @bridgeset.command(name="poll")
    async def bridgeset_poll(
        self, ctx: commands.Context, forum: discord.ForumChannel, enabled: Optional[bool] = None, interval: Optional[int] = None
    ) -> None:
        """Enable/disable polling for a forum and/or set its interval in seconds."""
        project = await self._get_project(ctx, forum)
        if project is None:
            return
        if interval is not None and interval < MIN_POLL_INTERVAL:
            await ctx.send(f"❌ Minimum interval is {MIN_POLL_INTERVAL} seconds.")
            return
        async with self.config.guild(ctx.guild).projects() as projects:
            entry = projects[str(forum.id)]
            if enabled is not None:
                entry["sync_enabled"] = bool(enabled)
            if interval is not None:
                entry["interval_seconds"] = int(interval)
            current_enabled = entry.get("sync_enabled", True)
            current_interval = entry.get("interval_seconds", project.poll_interval)

        embed = discord.Embed(
            title="📊 Polling Configuration",
            color=discord.Color.green() if current_enabled else discord.Color.red(),
        )
        embed.add_field(name="Status", value="✅ Enabled" if current_enabled else "❌ Disabled", inline=True)
        embed.add_field(name="Interval", value=f"{current_interval}s", inline=True)
        await ctx.send(embed=embed)
        if enabled is not None or interval is not None:
            await self._restart_sync()

    @bridgeset.command(name="role")
    async def bridgeset_role(self, ctx: commands.Context, forum: discord.ForumChannel, role: Optional[discord.Role] = None) -> None:
        """Record (or clear) the role that owns a forum's issues.

        The role is only stored and listed by `show`; syncing does not check it.
        """
        if await self._get_project(ctx, forum) is None:
            return
        await self.config.guild(ctx.guild).set_raw("projects", str(forum.id), "allowed_role_id", value=role.id if role else None)
        await ctx.send(f"✅ Project role {'set to ' + role.name if role else 'cleared'}.")

    @bridgeset.command(name="prefixes")
    async def bridgeset_prefixes(self, ctx: commands.Context, forum: discord.ForumChannel, *prefixes: str) -> None:
        """Set the thread name prefixes considered by `archivelocked`."""
        project = await self._get_project(ctx, forum)
        if project is None:
            return
        if not prefixes:
            await ctx.send(f"Current prefixes: {humanize_list([f'`{p}`' for p in project.thread_prefixes])}")
            return
        await self.config.guild(ctx.guild).set_raw("projects", str(forum.id), "thread_prefixes", value=list(prefixes))
        await ctx.send(f"✅ Prefixes set to {humanize_list([f'`{p}`' for p in prefixes])}.")

    @bridgeset.command(name="show")
    async def bridgeset_show(self, ctx: commands.Context) -> None:
        """Show the linked forums and their sync status."""
        raw = await self.config.guild(ctx.guild).projects()
        embed = discord.Embed(title="Issue Bridge Configuration", color=await ctx.embed_color())
        embed.add_field(name="Token", value="Set" if await self.config.github_token() else "Not set", inline=False)
        if not raw:
            embed.add_field(name="Projects", value="None linked", inline=False)
        for project in build_projects(ctx.guild.id, raw):
            if not project.sync_enabled:
                status = "❌ Disabled"
            elif self.scheduler is not None and self.scheduler.is_running(project):
                status = "🟢 Running"
            else:
                failure = self.scheduler.failure(project) if self.scheduler is not None else None
                status = f"🔴 Stopped{': ' + failure if failure else ''}"
            value = f"{project.describe()}\n{status}"
            last = self.scheduler.last_result(project) if self.scheduler is not None else None
            if isinstance(last, TickReport):
                value += f"\nLast tick: {last.summary()}"
            embed.add_field(name=project.label, value=value[:1024], inline=False)
        await ctx.send(embed=embed)

    # ----------------------
    # Maintenance Commands
    # ----------------------
    @bridgeset.command(name="syncnow")
    async def bridgeset_syncnow(self, ctx: commands.Context, forum: discord.ForumChannel) -> None:
        """Run one reconciliation pass for a forum right now."""
        project = await self._get_project(ctx, forum)
        reconciler = await self._require_engine(ctx) if project else None
        if reconciler is None:
            return
        async with ctx.typing():
            try:
                report = await reconciler.reconcile(project)
            except FatalSyncError as e:
                await ctx.send(f"❌ Sync failed: {e}")
                return
        for page in pagify(self._format_report(report)):
            await ctx.send(box(page))

    @bridgeset.command(name="audit")
    async def bridgeset_audit(self, ctx: commands.Context, forum: discord.ForumChannel) -> None:
        """Compare linked threads with their issues without changing anything."""
        project = await self._get_project(ctx, forum)
        reconciler = await self._require_engine(ctx) if project else None
        if reconciler is None:
            return
        async with ctx.typing():
            try:
                rows = await reconciler.audit(project)
            except SyncError as e:
                await ctx.send(f"❌ Audit failed: {e}")
                return

        wrong = [r for r in rows if r.thread is not None and r.intents]
        missing = [r for r in rows if r.thread is None]
        lines = [
            f"Linked issues: {len(rows)}",
            f"In sync: {sum(1 for r in rows if r.in_sync)}",
            f"Wrong state: {len(wrong)}",
            f"Missing threads: {len(missing)}",
        ]
        for row in wrong:
            should = "UNLOCKED" if row.issue.state.value == "open" else "LOCKED"
            lines.append(f"  #{row.issue.number} -> thread {row.thread_id}: should be {should}")
        for row in missing[:10]:
            lines.append(f"  #{row.issue.number} -> thread {row.thread_id}: {row.error}")
        if len(missing) > 10:
            lines.append(f"  (+{len(missing) - 10} more)")
        for page in pagify("\n".join(lines)):
            await ctx.send(box(page))

    @bridgeset.command(name="lookup")
    async def bridgeset_lookup(self, ctx: commands.Context, thread: discord.Thread) -> None:
        """Find the GitHub issue(s) linked to a forum thread."""
        if thread.parent_id is None:
            await ctx.send("❌ That thread has no parent forum.")
            return
        forum = ctx.guild.get_channel(thread.parent_id)
        if not isinstance(forum, discord.ForumChannel):
            await ctx.send("❌ That thread is not in a forum channel.")
            return
        project = await self._get_project(ctx, forum)
        if project is None or self.github is None:
            if project is not None:
                await self._require_engine(ctx)
            return
        try:
            issues = await self.github.find_issues_for_thread(project, thread.id)
        except SyncError as e:
            await ctx.send(f"❌ Lookup failed: {e}")
            return
        if not issues:
            await ctx.send(f"No issue in `{project.slug}` embeds thread `{thread.id}`.")
            return
        await ctx.send("\n".join(f"#{i.number} ({i.state.value}): <{i.html_url}>" for i in issues))

    @bridgeset.command(name="archivelocked")
    async def bridgeset_archivelocked(self, ctx: commands.Context, forum: discord.ForumChannel) -> None:
        """Archive locked, still-active threads whose name has one of the project's prefixes."""
        project = await self._get_project(ctx, forum)
        if project is None or self.threads is None:
            if project is not None:
                await self._require_engine(ctx)
            return
        archived = 0
        failed = 0
        async with ctx.typing():
            try:
                threads = await self.threads.list_forum_threads(project)
            except SyncError as e:
                await ctx.send(f"❌ Could not list threads: {e}")
                return
            for thread in threads:
                if not thread.locked or thread.archived:
                    continue
                if not any(thread.name.startswith(p) for p in project.thread_prefixes):
                    continue
                try:
                    await self.threads.archive(project, thread.id, "locked thread cleanup")
                except SyncError as e:
                    failed += 1
                    self.log.warning("Could not archive thread %s: %s", thread.id, e)
                    continue
                archived += 1
        msg = f"✅ Archived {archived} locked thread(s)."
        if failed:
            msg += f" {failed} could not be archived, see logs."
        await ctx.send(msg)
