"""Unit tests for the invalidation hub and the keyed debouncer."""

from __future__ import annotations

import asyncio

import pytest

from damp.schemas.events import Invalidation, InvalidationScope
from damp.services.invalidation import DebounceScheduler


class TestInvalidationHub:
    def test_publish_reaches_every_subscriber(self, hub):
        seen_a, seen_b = [], []
        hub.subscribe(seen_a.append)
        hub.subscribe(seen_b.append)
        signal = Invalidation(scope=InvalidationScope.SERVICE, entity_id="redis")

        hub.publish(signal)

        assert seen_a == [signal]
        assert seen_b == [signal]

    def test_failing_subscriber_does_not_block_others(self, hub):
        def broken(_invalidation):
            raise RuntimeError("subscriber bug")

        seen = []
        hub.subscribe(broken)
        hub.subscribe(seen.append)
        hub.publish(Invalidation(scope=InvalidationScope.ALL))
        assert len(seen) == 1

    def test_unsubscribe_is_idempotent(self, hub):
        seen = []
        unsubscribe = hub.subscribe(seen.append)
        unsubscribe()
        unsubscribe()
        hub.publish(Invalidation(scope=InvalidationScope.ALL))
        assert seen == []
        assert hub.subscriber_count == 0


class TestDebounceScheduler:
    """Tests for trailing-edge debouncing."""

    @pytest.mark.asyncio
    async def test_burst_fires_once(self):
        debouncer = DebounceScheduler(0.05)
        fired = []
        for i in range(10):
            debouncer.schedule("bulk", lambda i=i: fired.append(i))

        assert debouncer.pending("bulk")
        await asyncio.sleep(0.15)

        assert fired == [9]
        assert not debouncer.pending("bulk")

    @pytest.mark.asyncio
    async def test_keys_are_independent(self):
        debouncer = DebounceScheduler(0.02)
        fired = []
        debouncer.schedule("a", lambda: fired.append("a"))
        debouncer.schedule("b", lambda: fired.append("b"))
        await asyncio.sleep(0.1)
        assert sorted(fired) == ["a", "b"]

    @pytest.mark.asyncio
    async def test_cancel_all(self):
        debouncer = DebounceScheduler(0.02)
        fired = []
        debouncer.schedule("a", lambda: fired.append("a"))
        debouncer.cancel_all()
        await asyncio.sleep(0.06)
        assert fired == []
