"""Unit tests for PaginatedFetcher."""

import pytest
from datetime import datetime, timezone
from unittest.mock import Mock, patch

from adapter.x import (
    PaginatedFetcher,
    FetchFailure,
    FetchTimeout,
    XAPIError,
    XRateLimitError,
)
from adapter.models import Author, Mention, SearchPage


def create_page(mention_ids, author_ids=None, next_token=None):
    """Helper to create a SearchPage with one mention per id."""
    author_ids = author_ids or ["u1"] * len(mention_ids)
    mentions = [
        Mention(id=mid, author_id=aid, created_at=datetime(2024, 6, 15, tzinfo=timezone.utc))
        for mid, aid in zip(mention_ids, author_ids)
    ]
    authors = [Author(id=aid, handle=f"user_{aid}") for aid in dict.fromkeys(author_ids)]
    return SearchPage(
        mentions=mentions,
        authors=authors,
        next_token=next_token,
        result_count=len(mentions)
    )


@pytest.fixture
def adapter():
    return Mock()


@pytest.fixture
def no_sleep():
    with patch("adapter.x.pagination.time.sleep") as mock_sleep:
        yield mock_sleep


class TestPaginatedFetcherPages:
    """Test walking the next_token chain."""

    def test_single_page(self, adapter, no_sleep):
        """A page without a cursor ends the fetch with no delay."""
        adapter.search_page.return_value = create_page(["3", "2", "1"])

        result = PaginatedFetcher(adapter).fetch("@openservai")

        assert [m.id for m in result.mentions] == ["3", "2", "1"]
        assert result.pages == 1
        adapter.search_page.assert_called_once_with("@openservai", since_id=None, next_token=None)
        no_sleep.assert_not_called()

    def test_multiple_pages_concatenated_in_order(self, adapter, no_sleep):
        adapter.search_page.side_effect = [
            create_page(["6", "5"], ["u1", "u2"], next_token="t1"),
            create_page(["4", "3"], ["u2", "u3"], next_token="t2"),
            create_page(["2", "1"], ["u1", "u1"]),
        ]

        result = PaginatedFetcher(adapter, page_delay=1.0).fetch("@openservai")

        assert [m.id for m in result.mentions] == ["6", "5", "4", "3", "2", "1"]
        # Authors are concatenated as returned, duplicates included
        assert [a.id for a in result.authors] == ["u1", "u2", "u2", "u3", "u1"]
        assert result.pages == 3

    def test_cursor_passed_to_next_page(self, adapter, no_sleep):
        adapter.search_page.side_effect = [
            create_page(["2"], next_token="cursor-abc"),
            create_page(["1"]),
        ]

        PaginatedFetcher(adapter).fetch("@openservai")

        second_call = adapter.search_page.call_args_list[1]
        assert second_call.kwargs["next_token"] == "cursor-abc"

    def test_delay_only_between_pages(self, adapter, no_sleep):
        """Sleep happens once per continuation, never after the last page."""
        adapter.search_page.side_effect = [
            create_page(["3"], next_token="t1"),
            create_page(["2"], next_token="t2"),
            create_page(["1"]),
        ]

        PaginatedFetcher(adapter, page_delay=2.5).fetch("@openservai")

        assert no_sleep.call_count == 2
        no_sleep.assert_called_with(2.5)

    def test_since_id_sent_on_every_page(self, adapter, no_sleep):
        adapter.search_page.side_effect = [
            create_page(["12"], next_token="t1"),
            create_page(["11"]),
        ]

        PaginatedFetcher(adapter).fetch("@openservai", since_id="10")

        for call in adapter.search_page.call_args_list:
            assert call.kwargs["since_id"] == "10"

    def test_empty_result(self, adapter, no_sleep):
        adapter.search_page.return_value = create_page([])

        result = PaginatedFetcher(adapter).fetch("@openservai", since_id="10")

        assert result.mentions == []
        assert result.authors == []
        assert result.pages == 1


class TestPaginatedFetcherFailures:
    """Test that a failed fetch never yields a partial result."""

    def test_failure_on_later_page_discards_results(self, adapter, no_sleep):
        adapter.search_page.side_effect = [
            create_page(["3"], next_token="t1"),
            XAPIError("X API error: 500", status_code=500),
        ]

        with pytest.raises(FetchFailure) as exc_info:
            PaginatedFetcher(adapter).fetch("@openservai")

        assert exc_info.value.pages_fetched == 1
        assert isinstance(exc_info.value.cause, XAPIError)

    def test_rate_limit_is_fetch_failure(self, adapter, no_sleep):
        adapter.search_page.side_effect = XRateLimitError("X API rate limit exceeded")

        with pytest.raises(FetchFailure) as exc_info:
            PaginatedFetcher(adapter).fetch("@openservai")

        assert exc_info.value.pages_fetched == 0
        assert not isinstance(exc_info.value, FetchTimeout)

    def test_page_cap_exceeded(self, adapter, no_sleep):
        """An endless cursor chain is cut off with a failure."""
        adapter.search_page.side_effect = lambda *args, **kwargs: create_page(["1"], next_token="again")

        with pytest.raises(FetchFailure) as exc_info:
            PaginatedFetcher(adapter, max_pages=3).fetch("@openservai")

        assert adapter.search_page.call_count == 3
        assert exc_info.value.pages_fetched == 3

    def test_duration_budget_exceeded(self, adapter, no_sleep):
        adapter.search_page.side_effect = [
            create_page(["3"], next_token="t1"),
            create_page(["2"], next_token="t2"),
        ]

        with patch("adapter.x.pagination.time.monotonic", side_effect=[0.0, 5.0, 11.0]):
            with pytest.raises(FetchTimeout) as exc_info:
                PaginatedFetcher(adapter, max_duration=10).fetch("@openservai")

        assert exc_info.value.pages_fetched == 2
        assert isinstance(exc_info.value, FetchFailure)

    def test_unbounded_duration(self, adapter, no_sleep):
        adapter.search_page.side_effect = [
            create_page(["2"], next_token="t1"),
            create_page(["1"]),
        ]

        result = PaginatedFetcher(adapter, max_duration=None).fetch("@openservai")

        assert result.pages == 2

    def test_invalid_page_cap(self, adapter):
        with pytest.raises(ValueError):
            PaginatedFetcher(adapter, max_pages=0)
