"""
Thread id embedding in issue titles.

The issue title is the only link between an issue and its forum thread:
``"Crash on load [555]"`` belongs to thread ``555``.
"""

import re
from typing import Optional

THREAD_ID_PATTERN = re.compile(r"\[([0-9]+)\]")
MAX_THREAD_ID = 2**64 - 1
_MAX_THREAD_ID_DIGITS = len(str(MAX_THREAD_ID))


def extract_thread_id(text: Optional[str]) -> Optional[int]:
    """Return the thread id from the first ``[digits]`` token in ``text``.

    Only the first token is considered; a zero or out-of-range value yields
    ``None`` rather than falling through to a later token.
    """
    if not isinstance(text, str):
        return None
    m = THREAD_ID_PATTERN.search(text)
    if not m:
        return None
    digits = m.group(1).lstrip("0")
    # Checked before int() so arbitrarily long digit runs never reach the parser
    if not digits or len(digits) > _MAX_THREAD_ID_DIGITS:
        return None
    value = int(digits)
    if value > MAX_THREAD_ID:
        return None
    return value


def build_search_query(owner: str, repo: str, state: str) -> str:
    # Search can't match "[digits]", titles are filtered with extract_thread_id.
    return f"repo:{owner}/{repo} is:issue is:{state} in:title"


def build_thread_lookup_query(owner: str, repo: str, thread_id: int) -> str:
    return f'"[{thread_id}]" in:title repo:{owner}/{repo} is:issue'
