from issue_bridge.codec import (
    MAX_THREAD_ID,
    build_search_query,
    build_thread_lookup_query,
    extract_thread_id,
)


def test_extract_bracketed_id():
    assert extract_thread_id("Bug with login [12345]") == 12345
    assert extract_thread_id("Feature request [9876543210]") == 9876543210


def test_extract_without_token():
    assert extract_thread_id("Bug with login") is None
    assert extract_thread_id("") is None
    assert extract_thread_id(None) is None


def test_extract_rejects_non_numeric_token():
    assert extract_thread_id("[abc]") is None
    assert extract_thread_id("[not-a-number]") is None
    assert extract_thread_id("[12a]") is None
    assert extract_thread_id("[]") is None


def test_first_match_wins():
    assert extract_thread_id("[12345][67890]") == 12345
    assert extract_thread_id("[BUG] Crash [555] see also [777]") == 555


def test_zero_and_overflow_are_not_ids():
    assert extract_thread_id("[0]") is None
    assert extract_thread_id(f"[{MAX_THREAD_ID}]") == MAX_THREAD_ID
    assert extract_thread_id(f"[{MAX_THREAD_ID + 1}]") is None


def test_leading_zeroes_parse_as_integer():
    assert extract_thread_id("[00042]") == 42


def test_unicode_digits_are_not_ids():
    assert extract_thread_id("[١٢٣]") is None


def test_huge_digit_runs_are_not_ids():
    assert extract_thread_id("[" + "9" * 5000 + "]") is None
    assert extract_thread_id("[" + "9" * 21 + "] [555]") is None
    assert extract_thread_id("[" + "0" * 5000 + "42]") == 42


def test_search_queries():
    assert build_search_query("acme", "app", "open") == "repo:acme/app is:issue is:open in:title"
    assert build_search_query("acme", "app", "closed") == "repo:acme/app is:issue is:closed in:title"
    assert build_thread_lookup_query("acme", "app", 555) == '"[555]" in:title repo:acme/app is:issue'
