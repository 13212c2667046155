"""Unit tests for CandidateCollector — co-occurrence tallies over the index."""
from unittest.mock import AsyncMock

import pytest

from animatch.errors import StoreUnavailableError
from animatch.services.candidate_collector import CandidateCollector
from animatch.services.interest_index import InterestIndex


@pytest.fixture
def index(store, settings):
    return InterestIndex(store, settings)


async def _populate(index, interests_by_user):
    for user_id, items in interests_by_user.items():
        for item in items:
            await index.add_interest(user_id, item)


POPULATION = {
    "me": {"1", "2", "3", "4", "5"},
    "close": {"1", "2", "3", "9"},
    "edge": {"4", "5", "8"},
    "far": {"1", "7"},
    "stranger": {"6"},
}


class TestTally:

    @pytest.mark.asyncio
    async def test_counts_shared_items_and_excludes_self(self, index, settings):
        await _populate(index, POPULATION)
        collector = CandidateCollector(index, settings)

        tallies = await collector.tally("me", POPULATION["me"])

        assert tallies == {"close": 3, "edge": 2, "far": 1}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("batch_size", [1, 2, 3, 10, 50])
    async def test_result_independent_of_batch_size(self, index, settings_factory, batch_size):
        await _populate(index, POPULATION)
        collector = CandidateCollector(
            index, settings_factory(INDEX_SCAN_BATCH_SIZE=batch_size)
        )
        assert await collector.tally("me", POPULATION["me"]) == {
            "close": 3,
            "edge": 2,
            "far": 1,
        }

    @pytest.mark.asyncio
    async def test_empty_interests(self, index, settings):
        collector = CandidateCollector(index, settings)
        assert await collector.tally("me", set()) == {}

    @pytest.mark.asyncio
    async def test_unavailable_item_is_skipped(self, settings):
        index = AsyncMock()

        async def users_for(item):
            if item == "2":
                raise StoreUnavailableError("replica lagging")
            return {"other", "me"}

        index.users_for.side_effect = users_for
        collector = CandidateCollector(index, settings)

        assert await collector.tally("me", {"1", "2", "3"}) == {"other": 2}

    @pytest.mark.asyncio
    async def test_unexpected_error_propagates(self, settings):
        index = AsyncMock()
        index.users_for.side_effect = RuntimeError("bug")
        collector = CandidateCollector(index, settings)

        with pytest.raises(RuntimeError):
            await collector.tally("me", {"1"})


class TestCollectAndThreshold:

    @pytest.mark.asyncio
    async def test_collect_drops_existing_matches(self, index, settings):
        await _populate(index, POPULATION)
        collector = CandidateCollector(index, settings)

        result = await collector.collect(
            "me", POPULATION["me"], exclude_already_matched={"close"}
        )

        assert result == {"edge": 2, "far": 1}

    def test_threshold_boundary(self, settings):
        collector = CandidateCollector(AsyncMock(), settings)
        threshold = settings.MATCH_THRESHOLD
        tallies = {"below": threshold - 1, "exact": threshold, "above": threshold + 2}

        assert collector.eligible(tallies) == {"exact": threshold, "above": threshold + 2}

    def test_explicit_threshold(self, settings):
        collector = CandidateCollector(AsyncMock(), settings)
        assert collector.eligible({"a": 1, "b": 2}, threshold=2) == {"b": 2}

    def test_explicit_zero_threshold_is_honoured(self, settings):
        collector = CandidateCollector(AsyncMock(), settings)
        assert collector.eligible({"a": 0, "b": 1}, threshold=0) == {"a": 0, "b": 1}
