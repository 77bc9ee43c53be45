from __future__ import annotations

from typing import Any, Callable, List, Optional, TypeVar

import asyncio
import logging
import time

import requests
from github import Auth, Github, GithubException
from github import BadCredentialsException, RateLimitExceededException, UnknownObjectException

from .codec import build_search_query, build_thread_lookup_query
from .errors import FatalSyncError, ProjectConfigError, RateLimited, TransientError
from .models import IssueState, IssueSummary, Project

T = TypeVar("T")

SEARCH_PAGE_SIZE = 100  # GitHub search maximum
DEFAULT_RATE_LIMIT_BACKOFF = 60.0

log = logging.getLogger("red.issue_bridge.github")


def _header(headers: Optional[dict], name: str) -> Optional[str]:
    if not headers:
        return None
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None


def retry_after_from_headers(headers: Optional[dict], now: Optional[float] = None) -> Optional[float]:
    """Seconds to wait according to ``Retry-After`` or ``X-RateLimit-Reset``."""
    raw = _header(headers, "retry-after")
    if raw is not None:
        try:
            return max(0.0, float(raw))
        except ValueError:
            pass
    reset = _header(headers, "x-ratelimit-reset")
    if reset is not None:
        try:
            return max(0.0, float(reset) - (now if now is not None else time.time()))
        except ValueError:
            pass
    return None


def to_issue_summary(issue: Any) -> IssueSummary:
    assignee = getattr(issue, "assignee", None)
    return IssueSummary(
        number=int(issue.number),
        title=issue.title or "",
        state=IssueState(str(issue.state).lower()),
        labels=tuple(label.name for label in (issue.labels or [])),
        assignee=assignee.login if assignee is not None else None,
        html_url=issue.html_url or "",
    )


class GitHubIssueSearch:
    """Issue search shared by every project task.

    PyGithub is blocking, so calls run in worker threads behind a semaphore.
    A rate-limit answer puts the whole client in cooldown: until it expires
    every search fails fast with RateLimited instead of hitting the API.
    """

    def __init__(
        self,
        token: Optional[str] = None,
        *,
        client: Optional[Github] = None,
        timeout: int = 15,
        concurrency: int = 3,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if client is None:
            if not token:
                raise FatalSyncError("No GitHub token configured")
            # retry=None: rate limits are handled by our own cooldown
            client = Github(auth=Auth.Token(token), timeout=timeout, per_page=SEARCH_PAGE_SIZE, retry=None)
        self._gh = client
        self._semaphore = asyncio.Semaphore(max(1, concurrency))
        self._clock = clock
        self._cooldown_until = 0.0

    @property
    def cooldown_remaining(self) -> float:
        return max(0.0, self._cooldown_until - self._clock())

    def _enter_cooldown(self, seconds: Optional[float]) -> float:
        wait = seconds if seconds is not None else DEFAULT_RATE_LIMIT_BACKOFF
        self._cooldown_until = max(self._cooldown_until, self._clock() + wait)
        return wait

    def _translate(self, exc: Exception, what: str) -> Exception:
        if isinstance(exc, RateLimitExceededException):
            wait = self._enter_cooldown(retry_after_from_headers(getattr(exc, "headers", None)))
            return RateLimited(f"GitHub rate limit hit during {what}", retry_after=wait)
        if isinstance(exc, BadCredentialsException):
            return FatalSyncError(f"GitHub rejected the token during {what}")
        if isinstance(exc, UnknownObjectException):
            return ProjectConfigError(f"GitHub returned 404 during {what}")
        if isinstance(exc, GithubException):
            status = exc.status or 0
            message = str(exc.data or exc).lower()
            if status == 429 or (status == 403 and "rate limit" in message):
                wait = self._enter_cooldown(retry_after_from_headers(getattr(exc, "headers", None)))
                return RateLimited(f"GitHub rate limit hit during {what}", retry_after=wait)
            if status == 401:
                return FatalSyncError(f"GitHub rejected the token during {what}")
            if status == 422:
                return ProjectConfigError(f"GitHub refused the query during {what}: {exc.data}")
            if status >= 500:
                return TransientError(f"GitHub {status} during {what}")
            return TransientError(f"GitHub error {status} during {what}: {exc.data}")
        if isinstance(exc, (requests.exceptions.Timeout, requests.exceptions.ConnectionError)):
            return TransientError(f"GitHub unreachable during {what}: {exc}")
        if isinstance(exc, requests.exceptions.RequestException):
            return TransientError(f"GitHub request failed during {what}: {exc}")
        return exc

    async def _gh_call(self, fn_noargs: Callable[[], T], what: str) -> T:
        remaining = self.cooldown_remaining
        if remaining > 0:
            raise RateLimited("GitHub client cooling down", retry_after=remaining)
        async with self._semaphore:
            try:
                return await asyncio.to_thread(fn_noargs)
            except (GithubException, requests.exceptions.RequestException) as e:
                raise self._translate(e, what) from e

    def _search_page(self, query: str) -> tuple:
        results = self._gh.search_issues(query, sort="updated", order="desc")
        page = list(results.get_page(0))
        return page, results.totalCount

    async def search_issues(self, project: Project, state: IssueState) -> List[IssueSummary]:
        """Return the first page of ``state`` issues of the project's repository.

        Results are ordered by last update so a state flip lands on the first
        page. Truncation past one page is logged, never silent.
        """
        query = build_search_query(project.owner, project.repo, IssueState(state).value)
        page, total = await self._gh_call(lambda: self._search_page(query), f"search {query!r}")
        if total and total > len(page):
            log.warning(
                "Search for %s %s issues matched %d but only %d were returned; the rest are not reconciled",
                project.slug, IssueState(state).value, total, len(page),
            )
        summaries = [to_issue_summary(issue) for issue in page]
        log.debug("Fetched %d %s issues for %s", len(summaries), IssueState(state).value, project.slug)
        return summaries

    async def find_issues_for_thread(self, project: Project, thread_id: int) -> List[IssueSummary]:
        query = build_thread_lookup_query(project.owner, project.repo, thread_id)
        page, _ = await self._gh_call(lambda: self._search_page(query), f"lookup {query!r}")
        return [to_issue_summary(issue) for issue in page]

    async def whoami(self) -> str:
        return await self._gh_call(lambda: self._gh.get_user().login, "token validation")

    def close(self) -> None:
        self._gh.close()
