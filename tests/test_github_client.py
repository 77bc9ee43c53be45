import logging
from unittest.mock import MagicMock

import pytest
import requests
from github import BadCredentialsException, GithubException, RateLimitExceededException, UnknownObjectException

from issue_bridge.errors import FatalSyncError, ProjectConfigError, RateLimited, TransientError
from issue_bridge.github_client import GitHubIssueSearch, retry_after_from_headers, to_issue_summary
from issue_bridge.models import IssueState

from .fakes import make_project


def _gh_issue(number, title, state="open", labels=(), assignee=None):
    issue = MagicMock()
    issue.number = number
    issue.title = title
    issue.state = state
    label_mocks = []
    for name in labels:
        label = MagicMock()
        label.name = name
        label_mocks.append(label)
    issue.labels = label_mocks
    if assignee:
        issue.assignee = MagicMock()
        issue.assignee.login = assignee
    else:
        issue.assignee = None
    issue.html_url = f"https://github.com/acme/app/issues/{number}"
    return issue


def _client(page=(), total=None, side_effect=None):
    gh = MagicMock()
    results = MagicMock()
    results.get_page.return_value = list(page)
    results.totalCount = len(page) if total is None else total
    if side_effect is not None:
        gh.search_issues.side_effect = side_effect
    else:
        gh.search_issues.return_value = results
    return gh


class Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_to_issue_summary():
    summary = to_issue_summary(_gh_issue(5, "Crash [555]", "closed", labels=("bug",), assignee="octocat"))
    assert summary.number == 5
    assert summary.state is IssueState.CLOSED
    assert summary.labels == ("bug",)
    assert summary.assignee == "octocat"
    assert summary.html_url.endswith("/issues/5")


def test_retry_after_from_headers():
    assert retry_after_from_headers({"Retry-After": "30"}) == 30
    assert retry_after_from_headers({"x-ratelimit-reset": "1060"}, now=1000) == 60
    assert retry_after_from_headers({"x-ratelimit-reset": "900"}, now=1000) == 0
    assert retry_after_from_headers({}) is None
    assert retry_after_from_headers(None) is None


def test_missing_token_is_fatal():
    with pytest.raises(FatalSyncError):
        GitHubIssueSearch(None)


@pytest.mark.asyncio
async def test_search_issues_builds_query_and_maps_results():
    gh = _client([_gh_issue(1, "Crash [555]"), _gh_issue(2, "Other")])
    search = GitHubIssueSearch(client=gh)

    issues = await search.search_issues(make_project(), IssueState.OPEN)

    gh.search_issues.assert_called_once_with("repo:acme/app is:issue is:open in:title", sort="updated", order="desc")
    assert [i.number for i in issues] == [1, 2]
    assert issues[0].title == "Crash [555]"


@pytest.mark.asyncio
async def test_truncation_is_logged(caplog):
    caplog.set_level(logging.WARNING, logger="red.issue_bridge.github")
    gh = _client([_gh_issue(1, "Crash [555]")], total=250)

    issues = await GitHubIssueSearch(client=gh).search_issues(make_project(), IssueState.CLOSED)

    assert len(issues) == 1
    assert "matched 250 but only 1" in caplog.text


@pytest.mark.asyncio
async def test_rate_limit_starts_shared_cooldown():
    clock = Clock()
    exc = RateLimitExceededException(403, {"message": "API rate limit exceeded"}, {"Retry-After": "30"})
    gh = _client(side_effect=exc)
    search = GitHubIssueSearch(client=gh, clock=clock)

    with pytest.raises(RateLimited) as info:
        await search.search_issues(make_project(), IssueState.OPEN)
    assert info.value.retry_after == 30

    # Another project during the cooldown fails fast without calling GitHub
    with pytest.raises(RateLimited):
        await search.search_issues(make_project(repo="other"), IssueState.OPEN)
    assert gh.search_issues.call_count == 1

    clock.now += 31
    gh.search_issues.side_effect = None
    gh.search_issues.return_value = _client([]).search_issues.return_value
    assert await search.search_issues(make_project(), IssueState.OPEN) == []


@pytest.mark.asyncio
async def test_secondary_rate_limit_403_is_rate_limited():
    exc = GithubException(403, {"message": "You have exceeded a secondary rate limit"}, {})
    search = GitHubIssueSearch(client=_client(side_effect=exc))
    with pytest.raises(RateLimited):
        await search.search_issues(make_project(), IssueState.OPEN)
    assert search.cooldown_remaining > 0


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "exc,expected",
    [
        (BadCredentialsException(401, {"message": "Bad credentials"}, {}), FatalSyncError),
        (UnknownObjectException(404, {"message": "Not Found"}, {}), ProjectConfigError),
        (GithubException(422, {"message": "Validation Failed"}, {}), ProjectConfigError),
        (GithubException(502, {"message": "Bad Gateway"}, {}), TransientError),
        (requests.exceptions.ReadTimeout("read timed out"), TransientError),
        (requests.exceptions.ConnectionError("reset"), TransientError),
    ],
)
async def test_error_classification(exc, expected):
    search = GitHubIssueSearch(client=_client(side_effect=exc))
    with pytest.raises(expected):
        await search.search_issues(make_project(), IssueState.OPEN)


@pytest.mark.asyncio
async def test_transient_errors_are_not_fatal():
    exc = GithubException(503, {"message": "unavailable"}, {})
    search = GitHubIssueSearch(client=_client(side_effect=exc))
    with pytest.raises(TransientError) as info:
        await search.search_issues(make_project(), IssueState.OPEN)
    assert not isinstance(info.value, FatalSyncError)


@pytest.mark.asyncio
async def test_find_issues_for_thread_uses_lookup_query():
    gh = _client([_gh_issue(3, "Crash [555]", "closed")])
    issues = await GitHubIssueSearch(client=gh).find_issues_for_thread(make_project(), 555)
    gh.search_issues.assert_called_once_with('"[555]" in:title repo:acme/app is:issue', sort="updated", order="desc")
    assert issues[0].state is IssueState.CLOSED
