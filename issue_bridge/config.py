"""
Default configuration and project registry for the IssueBridge cog.
This module defines the Red Config defaults and turns stored guild data into
validated Project descriptors.
"""

import logging
from typing import Any, Dict, List, Mapping

from .errors import ProjectConfigError
from .models import DEFAULT_THREAD_PREFIXES, Project

log = logging.getLogger("red.issue_bridge.config")

DEFAULT_POLL_INTERVAL = 10
MIN_POLL_INTERVAL = 5

# Bot messages
MSG_ISSUE_CLOSED = "🔒 Issue closed on GitHub"
MSG_ISSUE_REOPENED = "🔓 Issue reopened on GitHub"
DONE_REACTION = "✅"

REASON_CLOSED = "issue closed on GitHub"
REASON_OPEN = "issue open on GitHub"

# Default global configuration
DEFAULT_GLOBAL_CONFIG = {
    "github_token": None,  # Token shared by every project's searches
    "github_timeout": 15,  # seconds per GitHub request
    "discord_timeout": 30,  # seconds per Discord request
    "github_concurrency": 3,
    "discord_concurrency": 5,
}

# Default guild configuration
DEFAULT_GUILD_CONFIG = {
    "projects": {},  # forum channel id (str) -> DEFAULT_PROJECT_CONFIG shaped dict
}

# Shape of one stored project
DEFAULT_PROJECT_CONFIG = {
    "owner": None,
    "repo": None,
    "name": None,
    "allowed_role_id": None,
    "sync_enabled": True,
    "interval_seconds": DEFAULT_POLL_INTERVAL,
    "thread_prefixes": list(DEFAULT_THREAD_PREFIXES),
}


def _snowflake(value: Any, field_name: str) -> int:
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        raise ProjectConfigError(f"{field_name} must be a numeric id, got {value!r}") from None
    if parsed <= 0:
        raise ProjectConfigError(f"{field_name} must be positive, got {parsed}")
    return parsed


def build_project(guild_id: Any, forum_channel_id: Any, data: Mapping[str, Any]) -> Project:
    """Validate one stored project entry.

    Raises:
        ProjectConfigError: if the entry is missing the repository or carries bad ids.
    """
    owner = (data.get("owner") or "").strip()
    repo = (data.get("repo") or "").strip()
    if not owner or not repo:
        raise ProjectConfigError("owner and repo are required")
    if "/" in owner or "/" in repo:
        raise ProjectConfigError(f"owner and repo must be given separately, got {owner!r} {repo!r}")

    sync = data.get("sync") or {}
    enabled = data.get("sync_enabled", sync.get("enabled", True))
    interval = data.get("interval_seconds", sync.get("interval_seconds", DEFAULT_POLL_INTERVAL))
    try:
        interval = int(interval if interval is not None else DEFAULT_POLL_INTERVAL)
    except (TypeError, ValueError):
        raise ProjectConfigError(f"interval_seconds must be an integer, got {interval!r}") from None
    if interval < MIN_POLL_INTERVAL:
        raise ProjectConfigError(f"interval_seconds must be at least {MIN_POLL_INTERVAL}, got {interval}")

    role = data.get("allowed_role_id")
    prefixes = data.get("thread_prefixes")
    if prefixes is None:
        prefixes = DEFAULT_THREAD_PREFIXES

    return Project(
        owner=owner,
        repo=repo,
        guild_id=_snowflake(guild_id, "guild_id"),
        forum_channel_id=_snowflake(forum_channel_id, "forum_channel_id"),
        allowed_role_id=_snowflake(role, "allowed_role_id") if role else None,
        sync_enabled=bool(enabled),
        poll_interval=interval,
        name=data.get("name") or None,
        thread_prefixes=tuple(str(p) for p in prefixes),
    )


def build_projects(guild_id: Any, raw: Mapping[str, Mapping[str, Any]]) -> List[Project]:
    """Build every valid project of a guild, skipping malformed entries."""
    projects: List[Project] = []
    seen: Dict[tuple, Project] = {}
    for forum_id, data in (raw or {}).items():
        try:
            project = build_project(guild_id, forum_id, data)
        except ProjectConfigError as e:
            log.error("Skipping project for forum %s in guild %s: %s", forum_id, guild_id, e)
            continue
        if project.key in seen:
            log.warning("Duplicate project %s for forum %s ignored", project.slug, forum_id)
            continue
        seen[project.key] = project
        projects.append(project)
    return projects
