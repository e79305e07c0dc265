"""Tests for memory selection and the cooldown/engagement rules.

Writes are fire-and-forget, so every test that checks the store first
drains the policy's pending writes.
"""

import logging
import random
from datetime import timedelta

import pytest

from echo_adaptive.models import Interaction, Memory, utcnow
from echo_adaptive.policy import SelectionPolicy
from echo_adaptive.session import FeedSession
from echo_adaptive.store import ContentStore, InteractionLog, StoreError


class FlakyStore(ContentStore):
    """Cooldown writes fail a set number of times before going through."""

    def __init__(self, patient_id: str, cooldown_failures: int) -> None:
        super().__init__(patient_id)
        self.cooldown_failures = cooldown_failures
        self.cooldown_calls = 0

    async def update_cooldown(self, memory_id, until):
        self.cooldown_calls += 1
        if self.cooldown_failures > 0:
            self.cooldown_failures -= 1
            raise StoreError("connection reset")
        await super().update_cooldown(memory_id, until)


class BrokenPoolStore(ContentStore):
    async def list_eligible(self, now=None):
        raise StoreError("timeout")


def make_policy(store, log, **kwargs) -> SelectionPolicy:
    kwargs.setdefault("rng", random.Random(7))
    return SelectionPolicy(store, log, "p1", **kwargs)


class TestCandidatePool:
    @pytest.mark.anyio
    async def test_excludes_cooling_down_and_unapproved(self, store, add_memory) -> None:
        now = utcnow()
        ok = add_memory()
        lapsed = add_memory(cooldown_until=(now - timedelta(hours=1)).isoformat())
        add_memory(cooldown_until=(now + timedelta(hours=1)).isoformat())
        add_memory(status="needs_review")
        add_memory(status="processing")
        add_memory(patient_id="someone-else")

        eligible = await store.list_eligible(now)
        assert {m._id for m in eligible} == {ok._id, lapsed._id}


class TestSelection:
    @pytest.mark.anyio
    async def test_pool_of_one_returns_exactly_one(self, store, log, add_memory) -> None:
        only = add_memory()
        policy = make_policy(store, log)

        batch = await policy.next_batch(FeedSession("p1"), 10)
        assert [m._id for m in batch] == [only._id]

    @pytest.mark.anyio
    async def test_empty_pool_returns_nothing_without_error(self, store, log, db) -> None:
        policy = make_policy(store, log)
        assert await policy.next_batch(FeedSession("p1"), 10) == []

    @pytest.mark.anyio
    async def test_top_up_skips_materialised_items(self, store, log, add_memory) -> None:
        for _ in range(6):
            add_memory()
        policy = make_policy(store, log)
        session = FeedSession("p1")

        session.extend(await policy.next_batch(session, 4))
        more = await policy.next_batch(session, 4)

        assert len(more) == 2
        assert not {m._id for m in more} & {m._id for m in session.sequence[:4]}

    @pytest.mark.anyio
    async def test_repeats_allowed_once_everything_shown(self, store, log, add_memory) -> None:
        for _ in range(3):
            add_memory()
        policy = make_policy(store, log)
        session = FeedSession("p1")

        session.extend(await policy.next_batch(session, 10))
        repeats = await policy.next_batch(session, 5)

        assert len(repeats) == 3
        assert {m._id for m in repeats} == session.shown

    @pytest.mark.anyio
    async def test_never_picks_cooling_down_while_pool_has_items(self, store, log, add_memory) -> None:
        hidden = add_memory(cooldown_until=(utcnow() + timedelta(hours=5)).isoformat())
        for _ in range(3):
            add_memory()
        policy = make_policy(store, log)
        session = FeedSession("p1")

        for _ in range(5):
            session.extend(await policy.next_batch(session, 5))

        assert hidden._id not in session.shown

    @pytest.mark.anyio
    async def test_falls_back_to_session_items_when_pool_empties(self, store, log, add_memory) -> None:
        memory = add_memory()
        policy = make_policy(store, log)
        session = FeedSession("p1")
        session.extend(await policy.next_batch(session, 10))

        policy.record_like(memory._id, session.materialized(memory._id))
        await policy.drain()

        repeats = await policy.next_batch(session, 5)
        assert [m._id for m in repeats] == [memory._id]

    @pytest.mark.anyio
    async def test_pool_fetch_failure_is_contained(self, log, db) -> None:
        policy = make_policy(BrokenPoolStore("p1"), log)
        assert await policy.next_batch(FeedSession("p1"), 10) == []

    @pytest.mark.anyio
    async def test_locally_cooling_memory_is_not_repeated(self, log, add_memory) -> None:
        """A like whose cooldown write was dropped still keeps the memory away."""
        liked = add_memory()
        other = add_memory()
        store = FlakyStore("p1", cooldown_failures=10)
        policy = make_policy(store, log)
        session = FeedSession("p1")
        session.extend(await policy.next_batch(session, 10))

        policy.record_like(liked._id, session.materialized(liked._id))
        await policy.drain()
        assert Memory.from_id(liked._id).cooldown_until is None

        for _ in range(5):
            repeats = await policy.next_batch(session, 5)
            assert [m._id for m in repeats] == [other._id]

    @pytest.mark.anyio
    async def test_repeat_batch_does_not_open_on_last_item(self, store, log, add_memory) -> None:
        for _ in range(3):
            add_memory()
        session = FeedSession("p1")
        session.extend(await make_policy(store, log).next_batch(session, 10))
        session.index = len(session.sequence) - 1
        last = session.sequence[-1]._id

        for seed in range(20):
            policy = make_policy(store, log, rng=random.Random(seed))
            assert [m._id for m in await policy.next_batch(session, 1)] != [last]
            repeats = await policy.next_batch(session, 5)
            assert len(repeats) == 3
            assert repeats[0]._id != last


class TestScoring:
    def test_engagement_lowers_weight(self) -> None:
        policy = make_policy(None, None)
        now = utcnow()
        fresh = Memory(patient_id="p1", image_ref="a.jpg", engagement_count=0)
        worn = Memory(patient_id="p1", image_ref="b.jpg", engagement_count=5)

        policy.rng = random.Random(1)
        fresh_weight = policy.weight(fresh, now)
        policy.rng = random.Random(1)
        worn_weight = policy.weight(worn, now)

        assert fresh_weight > worn_weight

    def test_weight_is_never_zero(self) -> None:
        policy = make_policy(None, None)
        worn = Memory(patient_id="p1", image_ref="b.jpg", engagement_count=1000)
        assert policy.weight(worn, utcnow()) >= 1.0

    def test_sample_size_is_capped_by_pool(self) -> None:
        policy = make_policy(None, None)
        pool = [Memory(patient_id="p1", image_ref=f"{i}.jpg") for i in range(3)]
        picked = policy.sample(pool, 10)
        assert len(picked) == 3
        assert len({id(m) for m in picked}) == 3

    def test_higher_novelty_favours_low_engagement(self) -> None:
        """Over many draws, high novelty shows more low-engagement memories."""
        pool = [
            Memory(patient_id="p1", image_ref=f"low{i}.jpg", engagement_count=0)
            for i in range(5)
        ] + [
            Memory(patient_id="p1", image_ref=f"high{i}.jpg", engagement_count=5)
            for i in range(5)
        ]

        def low_share(level: str) -> float:
            policy = make_policy(None, None, novelty_weight=level, rng=random.Random(42))
            picks = 0
            low = 0
            for _ in range(2000):
                for m in policy.sample(pool, 3):
                    picks += 1
                    low += m.engagement_count == 0
            return low / picks

        assert low_share("high") > low_share("low")


class TestEngagementUpdates:
    @pytest.mark.anyio
    async def test_like_sets_cooldown_and_increments(self, store, log, add_memory) -> None:
        memory = add_memory(engagement_count=2)
        policy = make_policy(store, log)
        before = utcnow()

        until = policy.record_like(memory._id, [memory])
        assert memory.engagement_count == 3
        await policy.drain()

        stored = Memory.from_id(memory._id)
        assert stored.engagement_count == 3
        assert stored.cooldown_expires() >= before + timedelta(hours=24)
        assert stored.cooldown_expires() == until

    @pytest.mark.anyio
    async def test_like_uses_configured_hours(self, store, log, add_memory) -> None:
        memory = add_memory()
        policy = make_policy(store, log, cooldown_hours=6)
        before = utcnow()

        policy.record_like(memory._id)
        await policy.drain()

        expires = Memory.from_id(memory._id).cooldown_expires()
        assert before + timedelta(hours=6) <= expires < before + timedelta(hours=7)

    @pytest.mark.anyio
    async def test_like_is_logged(self, store, log, add_memory) -> None:
        memory = add_memory()
        policy = make_policy(store, log)

        policy.record_like(memory._id)
        await policy.drain()

        kinds = [i.interaction_type for i in Interaction.query().all()]
        assert kinds == ["like"]

    @pytest.mark.anyio
    async def test_recall_logs_and_keeps_cooldown(self, store, log, add_memory) -> None:
        cooldown = (utcnow() + timedelta(hours=3)).isoformat()
        memory = add_memory(cooldown_until=cooldown)
        policy = make_policy(store, log)

        policy.record_recall(memory._id)
        await policy.drain()

        stored = Memory.from_id(memory._id)
        assert stored.engagement_count == 1
        assert stored.cooldown_until == cooldown
        assert await log.list_recalled("p1") == {memory._id}

    @pytest.mark.anyio
    async def test_clear_cooldown(self, store, log, add_memory) -> None:
        memory = add_memory(cooldown_until=(utcnow() + timedelta(hours=30)).isoformat())
        policy = make_policy(store, log)

        policy.clear_cooldown(memory._id, [memory])
        assert memory.cooldown_until is None
        await policy.drain()

        assert Memory.from_id(memory._id).cooldown_until is None

    @pytest.mark.anyio
    async def test_writes_for_one_memory_apply_in_order(self, store, log, add_memory) -> None:
        memory = add_memory()
        policy = make_policy(store, log)

        policy.record_like(memory._id)
        policy.clear_cooldown(memory._id)
        await policy.drain()

        assert Memory.from_id(memory._id).cooldown_until is None


class TestWriteFailures:
    @pytest.mark.anyio
    async def test_single_failure_is_retried(self, log, add_memory) -> None:
        memory = add_memory()
        store = FlakyStore("p1", cooldown_failures=1)
        policy = make_policy(store, log)

        policy.record_like(memory._id)
        await policy.drain()

        assert store.cooldown_calls == 2
        assert Memory.from_id(memory._id).cooldown_until is not None

    @pytest.mark.anyio
    async def test_repeated_failure_is_dropped_without_blocking_others(self, log, add_memory) -> None:
        memory = add_memory()
        store = FlakyStore("p1", cooldown_failures=10)
        policy = make_policy(store, log)

        policy.record_like(memory._id, [memory])
        await policy.drain()

        stored = Memory.from_id(memory._id)
        assert store.cooldown_calls == 2
        assert stored.cooldown_until is None
        assert stored.engagement_count == 1
        # optimistic local state survives the failed write
        assert memory.cooldown_until is not None
        assert await log.list_recalled("p1") == set()

    @pytest.mark.anyio
    async def test_missing_memory_does_not_raise(self, store, log, db) -> None:
        policy = make_policy(store, log)
        policy.clear_cooldown(9999)
        await policy.drain()
        assert policy.pending_writes == 0

    @pytest.mark.anyio
    async def test_each_failed_attempt_is_logged(self, log, add_memory, caplog) -> None:
        memory = add_memory()
        policy = make_policy(FlakyStore("p1", cooldown_failures=10), log)

        with caplog.at_level(logging.WARNING, logger="echo_adaptive"):
            policy.clear_cooldown(memory._id)
            await policy.drain()

        messages = [r.getMessage() for r in caplog.records]
        assert sum("attempt" in m for m in messages) == 2
        assert f"Dropping clear cooldown for memory {memory._id}" in messages
