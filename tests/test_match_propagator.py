"""Unit tests for MatchPropagator — symmetric, idempotent match writes."""
import asyncio
import copy
from unittest.mock import AsyncMock, patch

import pytest

from animatch.errors import ErrorKind, InvariantViolationError, StoreUnavailableError
from animatch.schemas.match import PropagationStatus
from animatch.services.match_propagator import MatchPropagator
from animatch.services.profile_repository import USERS_COLLECTION, ProfileRepository
from animatch.store.memory import MemoryDocumentStore


@pytest.fixture
def propagator(store, gate, settings):
    return MatchPropagator(store, gate, ProfileRepository(store, settings), settings)


def _record(store, owner, other):
    return store.dump(USERS_COLLECTION)[owner]["matches_data"].get(other)


class TestPropagate:

    @pytest.mark.asyncio
    async def test_creates_symmetric_records(self, propagator, store, gate, seed_user):
        await seed_user("a", display_name="Aki")
        await seed_user("b", display_name="Ben", photo_url="b.png")

        result = await propagator.propagate("a", "b", 3)

        assert result.success
        assert result.status == PropagationStatus.CREATED
        assert sorted(result.quota_consumed) == ["a", "b"]
        users = store.dump(USERS_COLLECTION)
        assert users["a"]["matches"] == ["b"]
        assert users["b"]["matches"] == ["a"]
        assert _record(store, "a", "b")["display_name"] == "Ben"
        assert _record(store, "a", "b")["display_photo"] == "b.png"
        assert _record(store, "b", "a")["display_name"] == "Aki"
        assert _record(store, "a", "b")["match_strength"] == 3
        assert "quota_pending" not in _record(store, "a", "b")
        assert (await gate.get_state("a")).match_count == 1
        assert (await gate.get_state("b")).match_count == 1
        assert await propagator.check_symmetry("a", "b") is True

    @pytest.mark.asyncio
    async def test_is_idempotent(self, propagator, store, gate, seed_user):
        await seed_user("a")
        await seed_user("b")

        await propagator.propagate("a", "b", 3)
        snapshot = store.dump(USERS_COLLECTION)
        again = await propagator.propagate("a", "b", 3)

        assert again.status == PropagationStatus.UNCHANGED
        assert again.quota_consumed == []
        assert store.dump(USERS_COLLECTION) == snapshot
        assert (await gate.get_state("a")).match_count == 1

    @pytest.mark.asyncio
    async def test_strength_update_consumes_no_quota(self, propagator, store, gate, seed_user):
        await seed_user("a")
        await seed_user("b")
        await propagator.propagate("a", "b", 3)
        matched_at = _record(store, "a", "b")["matched_at"]

        result = await propagator.propagate("a", "b", 5)

        assert result.status == PropagationStatus.UPDATED
        assert _record(store, "a", "b")["match_strength"] == 5
        assert _record(store, "b", "a")["match_strength"] == 5
        assert _record(store, "a", "b")["matched_at"] == matched_at
        assert (await gate.get_state("b")).match_count == 1

    @pytest.mark.asyncio
    async def test_heals_half_written_pair(self, propagator, store, gate, seed_user):
        await seed_user("a", matches=["b"], matches_data={"b": {"match_strength": 2}})
        await seed_user("b")

        with pytest.raises(InvariantViolationError):
            await propagator.check_symmetry("a", "b")

        result = await propagator.propagate("a", "b", 3)

        assert result.status == PropagationStatus.HEALED
        assert result.quota_consumed == ["b"]
        assert await propagator.check_symmetry("a", "b") is True
        assert (await gate.get_state("a")).match_count == 0

    @pytest.mark.asyncio
    async def test_missing_user_reports_not_found(self, propagator, store, seed_user):
        await seed_user("a")

        result = await propagator.propagate("a", "nobody", 3)

        assert not result.success
        assert result.error == ErrorKind.NOT_FOUND
        assert result.status == PropagationStatus.FAILED
        assert store.dump(USERS_COLLECTION)["a"]["matches"] == []

    @pytest.mark.asyncio
    async def test_self_match_is_a_failed_result(self, propagator, store, seed_user):
        await seed_user("a")

        result = await propagator.propagate("a", "a", 3)

        assert not result.success
        assert result.error == ErrorKind.INVARIANT_VIOLATION
        assert result.status == PropagationStatus.FAILED
        assert store.dump(USERS_COLLECTION)["a"]["matches"] == []

    @pytest.mark.asyncio
    async def test_other_side_cooldown_does_not_block_write(self, propagator, store, gate, seed_user):
        await seed_user("a")
        await seed_user("b")
        await gate.record_match_consumed("b")
        await gate.record_match_consumed("b")

        result = await propagator.propagate("a", "b", 4)

        assert result.status == PropagationStatus.CREATED
        assert (await gate.get_state("a")).match_count == 1
        assert (await gate.get_state("b")).match_count == 2
        assert _record(store, "b", "a") is not None


class TestExactlyOnceQuota:

    @pytest.mark.asyncio
    async def test_failed_settle_is_finished_by_rerun(self, propagator, store, gate, seed_user):
        await seed_user("a")
        await seed_user("b")

        original = gate.record_match_consumed
        calls = []

        async def flaky(user_id, match_with=None):
            calls.append(user_id)
            if user_id == "b" and calls.count("b") == 1:
                raise StoreUnavailableError("timeout")
            return await original(user_id, match_with=match_with)

        with patch.object(gate, "record_match_consumed", side_effect=flaky):
            first = await propagator.propagate("a", "b", 3)
            assert first.quota_consumed == ["a"]
            assert _record(store, "b", "a")["quota_pending"] is True

            second = await propagator.propagate("a", "b", 3)

        assert second.status == PropagationStatus.UNCHANGED
        assert second.quota_consumed == ["b"]
        assert (await gate.get_state("a")).match_count == 1
        assert (await gate.get_state("b")).match_count == 1
        assert "quota_pending" not in _record(store, "b", "a")


class TestOverlappingPropagation:

    @pytest.mark.asyncio
    async def test_stale_read_does_not_recreate_match(self, store, gate, settings, seed_user):
        chat = AsyncMock()
        propagator = MatchPropagator(
            store, gate, ProfileRepository(store, settings), settings, chat_service=chat
        )
        await seed_user("a")
        await seed_user("b")
        before = store.dump(USERS_COLLECTION)

        first = await propagator.propagate("a", "b", 3)
        matched_at = _record(store, "a", "b")["matched_at"]

        # A second call that read both documents before the first committed.
        stale = AsyncMock(side_effect=lambda uid: copy.deepcopy(before[uid]))
        with patch.object(propagator, "_read_user", stale):
            second = await propagator.propagate("a", "b", 3)
        await propagator.wait_for_hooks()

        assert first.status == PropagationStatus.CREATED
        assert second.status == PropagationStatus.UNCHANGED
        assert second.quota_consumed == []
        assert (await gate.get_state("a")).match_count == 1
        assert (await gate.get_state("b")).match_count == 1
        assert _record(store, "a", "b")["matched_at"] == matched_at
        assert "quota_pending" not in _record(store, "a", "b")
        assert store.dump(USERS_COLLECTION)["a"]["matches"] == ["b"]
        chat.create_chat.assert_awaited_once_with("a", "b")

    @pytest.mark.asyncio
    async def test_concurrent_calls_count_each_side_once(self, propagator, gate, seed_user):
        await seed_user("a")
        await seed_user("b")

        results = await asyncio.gather(
            propagator.propagate("a", "b", 3),
            propagator.propagate("a", "b", 3),
        )

        statuses = sorted(r.status.value for r in results)
        assert statuses.count(PropagationStatus.CREATED.value) == 1
        assert (await gate.get_state("a")).match_count == 1
        assert (await gate.get_state("b")).match_count == 1
        assert await propagator.check_symmetry("a", "b") is True

    @pytest.mark.asyncio
    async def test_stale_pass_does_not_recount(self, propagator, store, gate, seed_user):
        await seed_user("owner")
        await seed_user("c1")
        await seed_user("c2")
        before = store.dump(USERS_COLLECTION)

        await propagator.propagate_all("owner", {"c1": 3, "c2": 3})

        stale = AsyncMock(side_effect=lambda uid: copy.deepcopy(before[uid]))
        with patch.object(propagator, "_read_user", stale):
            again = await propagator.propagate_all("owner", {"c1": 3, "c2": 3})

        assert [r.status for r in again] == [PropagationStatus.UNCHANGED] * 2
        assert (await gate.get_state("c1")).match_count == 1
        assert (await gate.get_state("c2")).match_count == 1
        assert sorted(store.dump(USERS_COLLECTION)["owner"]["matches"]) == ["c1", "c2"]


class TestPropagateAll:

    @pytest.mark.asyncio
    async def test_chunks_stay_within_batch_limit(self, settings_factory, clock, seed_user):
        from animatch.services.cooldown_gate import CooldownGate

        settings = settings_factory(MAX_BATCH_OPERATIONS=4)
        store = MemoryDocumentStore(max_batch_operations=4)
        gate = CooldownGate(store, settings, clock=clock)
        propagator = MatchPropagator(store, gate, ProfileRepository(store, settings), settings)
        await gate.set_premium("owner", True)

        for user_id in ["owner"] + [f"c{i}" for i in range(7)]:
            await store.set(USERS_COLLECTION, user_id, {"matches": [], "matches_data": {}})

        original = store.transaction
        sizes = []

        async def spy(keys, fn):
            async def counted(txn):
                result = await fn(txn)
                if all(k[0] == USERS_COLLECTION for k in keys):
                    sizes.append(len(txn.writes))
                return result

            return await original(keys, counted)

        with patch.object(store, "transaction", side_effect=spy):
            results = await propagator.propagate_all(
                "owner", {f"c{i}": 3 for i in range(7)}
            )

        assert all(r.status == PropagationStatus.CREATED for r in results)
        assert sizes and max(sizes) <= 4
        assert len(store.dump(USERS_COLLECTION)["owner"]["matches"]) == 7

    @pytest.mark.asyncio
    async def test_failing_pair_is_isolated(self, propagator, store, seed_user):
        for user_id in ["owner", "good1", "bad", "good2"]:
            await seed_user(user_id)

        original = store.transaction

        async def reject_bad(keys, fn):
            keys = list(keys)
            if (USERS_COLLECTION, "bad") in keys:
                raise StoreUnavailableError("shard down")
            return await original(keys, fn)

        with patch.object(store, "transaction", side_effect=reject_bad):
            results = await propagator.propagate_all(
                "owner", {"good1": 3, "bad": 3, "good2": 3}
            )

        by_id = {r.user_b_id: r for r in results}
        assert by_id["good1"].status == PropagationStatus.CREATED
        assert by_id["good2"].status == PropagationStatus.CREATED
        assert by_id["bad"].status == PropagationStatus.FAILED
        assert by_id["bad"].error == ErrorKind.STORE_UNAVAILABLE
        owner = store.dump(USERS_COLLECTION)["owner"]
        assert sorted(owner["matches"]) == ["good1", "good2"]
        assert store.dump(USERS_COLLECTION)["bad"]["matches"] == []

    @pytest.mark.asyncio
    async def test_missing_candidate_reported(self, propagator, seed_user):
        await seed_user("owner")
        await seed_user("real")

        results = await propagator.propagate_all("owner", {"real": 3, "gone": 4})

        assert [r.user_b_id for r in results] == ["real", "gone"]
        assert results[0].success
        assert results[1].error == ErrorKind.NOT_FOUND


class TestChatHook:

    @pytest.mark.asyncio
    async def test_hook_called_once_for_new_match(self, store, gate, settings, seed_user):
        chat = AsyncMock()
        propagator = MatchPropagator(
            store, gate, ProfileRepository(store, settings), settings, chat_service=chat
        )
        await seed_user("a")
        await seed_user("b")

        await propagator.propagate("a", "b", 3)
        await propagator.propagate("a", "b", 4)
        await propagator.wait_for_hooks()

        chat.create_chat.assert_awaited_once_with("a", "b")

    @pytest.mark.asyncio
    async def test_hook_failure_keeps_match(self, store, gate, settings, seed_user):
        chat = AsyncMock()
        chat.create_chat.side_effect = RuntimeError("chat backend down")
        propagator = MatchPropagator(
            store, gate, ProfileRepository(store, settings), settings, chat_service=chat
        )
        await seed_user("a")
        await seed_user("b")

        result = await propagator.propagate("a", "b", 3)
        await propagator.wait_for_hooks()

        assert result.success
        assert await propagator.check_symmetry("a", "b") is True
