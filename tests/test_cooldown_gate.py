"""Unit tests for CooldownGate — quota, cooldown transitions, premium bypass."""
import asyncio

import pytest

from animatch.services.cooldown_gate import SUBSCRIPTIONS_COLLECTION
from animatch.services.profile_repository import USERS_COLLECTION


class TestDefaults:

    @pytest.mark.asyncio
    async def test_first_check_creates_default_state(self, gate, store, settings):
        check = await gate.check_and_advance("newbie")

        assert check.available_for_matching is True
        assert check.just_reset is False
        assert check.remaining_matches == settings.FREE_MATCH_QUOTA
        doc = store.dump(SUBSCRIPTIONS_COLLECTION)["newbie"]
        assert doc["match_count"] == 0
        assert doc["match_threshold"] == settings.FREE_MATCH_QUOTA
        assert doc["cooldown_started_at"] is None

    @pytest.mark.asyncio
    async def test_get_state_does_not_write(self, gate, store):
        state = await gate.get_state("ghost")
        assert state.match_count == 0
        assert store.dump(SUBSCRIPTIONS_COLLECTION) == {}

    @pytest.mark.asyncio
    async def test_check_is_idempotent(self, gate, store):
        await gate.check_and_advance("u")
        first = store.dump(SUBSCRIPTIONS_COLLECTION)["u"]
        await gate.check_and_advance("u")
        assert store.dump(SUBSCRIPTIONS_COLLECTION)["u"] == first


class TestCooldownTransition:

    @pytest.mark.asyncio
    async def test_threshold_trips_cooldown(self, gate, clock):
        await gate.record_match_consumed("u")
        state = await gate.record_match_consumed("u")

        assert state.match_count == 2
        assert state.available_for_matching is False
        assert state.cooldown_started_at == clock.now

    @pytest.mark.asyncio
    async def test_check_before_expiry_leaves_state(self, gate, store, clock, settings):
        await gate.record_match_consumed("u")
        await gate.record_match_consumed("u")
        before = store.dump(SUBSCRIPTIONS_COLLECTION)["u"]

        clock.advance(settings.COOLDOWN_SECONDS - 1)
        check = await gate.check_and_advance("u")

        assert check.available_for_matching is False
        assert check.just_reset is False
        assert check.remaining_seconds == pytest.approx(1.0)
        assert check.remaining_matches == 0
        assert store.dump(SUBSCRIPTIONS_COLLECTION)["u"] == before

    @pytest.mark.asyncio
    async def test_check_after_expiry_resets(self, gate, clock, settings):
        await gate.record_match_consumed("u")
        await gate.record_match_consumed("u")

        clock.advance(settings.COOLDOWN_SECONDS)
        check = await gate.check_and_advance("u")

        assert check.available_for_matching is True
        assert check.just_reset is True
        state = await gate.get_state("u")
        assert state.match_count == 0
        assert state.cooldown_started_at is None

        again = await gate.check_and_advance("u")
        assert again.just_reset is False

    @pytest.mark.asyncio
    async def test_consume_during_cooldown_is_noop(self, gate, clock):
        await gate.record_match_consumed("u")
        await gate.record_match_consumed("u")
        clock.advance(60)

        state = await gate.record_match_consumed("u")

        assert state.match_count == 2
        assert state.available_for_matching is False

    @pytest.mark.asyncio
    async def test_unavailable_without_start_is_repaired(self, gate, store):
        await store.set(SUBSCRIPTIONS_COLLECTION, "broken", {
            "match_count": 2,
            "match_threshold": 2,
            "available_for_matching": False,
            "cooldown_started_at": None,
        })
        check = await gate.check_and_advance("broken")
        assert check.available_for_matching is True
        assert check.just_reset is True

    @pytest.mark.asyncio
    async def test_concurrent_consumption_loses_no_increment(self, store, settings_factory, clock):
        from animatch.services.cooldown_gate import CooldownGate

        gate = CooldownGate(store, settings_factory(FREE_MATCH_QUOTA=50), clock=clock)
        await asyncio.gather(*(gate.record_match_consumed("u") for _ in range(10)))
        assert (await gate.get_state("u")).match_count == 10


class TestPremium:

    @pytest.mark.asyncio
    async def test_premium_never_trips_but_counts(self, gate):
        await gate.set_premium("vip", True)
        for _ in range(5):
            state = await gate.record_match_consumed("vip")

        assert state.match_count == 5
        assert state.available_for_matching is True
        assert gate.remaining_quota(state) is None

    @pytest.mark.asyncio
    async def test_upgrade_lifts_active_cooldown(self, gate):
        await gate.record_match_consumed("u")
        await gate.record_match_consumed("u")

        state = await gate.set_premium("u", True)

        assert state.available_for_matching is True
        assert state.match_count == 0
        check = await gate.check_and_advance("u")
        assert check.is_premium is True
        assert check.remaining_matches is None

    @pytest.mark.asyncio
    async def test_downgrade_restores_quota(self, gate):
        await gate.set_premium("u", True)
        await gate.record_match_consumed("u")
        state = await gate.set_premium("u", False)
        assert gate.remaining_quota(state) == state.match_threshold - 1

    @pytest.mark.asyncio
    async def test_downgrade_over_quota_starts_cooldown(self, gate, clock, settings):
        await gate.set_premium("u", True)
        for _ in range(settings.FREE_MATCH_QUOTA + 3):
            await gate.record_match_consumed("u")

        state = await gate.set_premium("u", False)

        assert state.available_for_matching is False
        assert state.cooldown_started_at == clock.now
        assert await gate.admit("u", ["x"]) == []

        clock.advance(settings.COOLDOWN_SECONDS)
        check = await gate.check_and_advance("u")
        assert check.available_for_matching is True
        assert check.just_reset is True
        assert check.remaining_matches == settings.FREE_MATCH_QUOTA

    @pytest.mark.asyncio
    async def test_available_state_over_quota_is_repaired(self, gate, store, clock, settings):
        await store.set(SUBSCRIPTIONS_COLLECTION, "stale", {
            "match_count": 5,
            "match_threshold": 2,
            "is_premium": False,
            "available_for_matching": True,
        })

        check = await gate.check_and_advance("stale")

        assert check.available_for_matching is False
        assert check.remaining_seconds == pytest.approx(settings.COOLDOWN_SECONDS)
        state = await gate.get_state("stale")
        assert state.cooldown_started_at == clock.now


class TestExactlyOnce:

    async def _pending_match(self, store, owner, other):
        await store.set(USERS_COLLECTION, owner, {
            "matches": [other],
            "matches_data": {other: {"match_strength": 3, "quota_pending": True}},
        })

    @pytest.mark.asyncio
    async def test_pending_flag_consumed_once(self, gate, store):
        await self._pending_match(store, "a", "b")

        await gate.record_match_consumed("a", match_with="b")
        state = await gate.record_match_consumed("a", match_with="b")

        assert state.match_count == 1
        record = store.dump(USERS_COLLECTION)["a"]["matches_data"]["b"]
        assert "quota_pending" not in record
        assert record["match_strength"] == 3

    @pytest.mark.asyncio
    async def test_no_pending_flag_consumes_nothing(self, gate, store):
        await store.set(USERS_COLLECTION, "a", {
            "matches": ["b"],
            "matches_data": {"b": {"match_strength": 3}},
        })
        state = await gate.record_match_consumed("a", match_with="b")
        assert state.match_count == 0

    @pytest.mark.asyncio
    async def test_pending_flag_cleared_even_in_cooldown(self, gate, store):
        await gate.record_match_consumed("a")
        await gate.record_match_consumed("a")
        await self._pending_match(store, "a", "c")

        state = await gate.record_match_consumed("a", match_with="c")

        assert state.match_count == 2
        assert "quota_pending" not in store.dump(USERS_COLLECTION)["a"]["matches_data"]["c"]


class TestAdmit:

    @pytest.mark.asyncio
    async def test_admit_clips_to_remaining_quota(self, gate):
        await gate.record_match_consumed("u")
        assert await gate.admit("u", ["x", "y", "z"]) == ["x"]

    @pytest.mark.asyncio
    async def test_admit_nothing_in_cooldown(self, gate):
        await gate.record_match_consumed("u")
        await gate.record_match_consumed("u")
        assert await gate.admit("u", ["x"]) == []

    @pytest.mark.asyncio
    async def test_premium_admits_everything(self, gate):
        await gate.set_premium("u", True)
        assert await gate.admit("u", ["x", "y", "z"]) == ["x", "y", "z"]
