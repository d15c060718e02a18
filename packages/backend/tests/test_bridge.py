"""Subscription bridge tests — debounce, max-wait, lifecycle.

Learn: These run on real loop time with short windows (tens of
milliseconds), so every assertion leaves generous slack on both sides.
"""

import asyncio

import pytest
import pytest_asyncio

from oikosync.events.types import ChangeEvent, EntityType, Operation
from oikosync.realtime.bridge import SubscriptionBridge
from oikosync.realtime.bus import EventBus

ORG = "org-1"


def _event(seq: int, entity_type=EntityType.PROPERTY, org: str = ORG) -> ChangeEvent:
    return ChangeEvent(
        entity_type=entity_type,
        entity_id=f"e-{seq}",
        organization_id=org,
        operation=Operation.UPDATED,
        sequence=seq,
    )


class RecordingRefresh:
    def __init__(self, delay: float = 0.0, fail_first: bool = False):
        self.batches: list[list[ChangeEvent]] = []
        self.delay = delay
        self.fail_first = fail_first
        self.active = 0
        self.max_active = 0

    async def __call__(self, batch):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.fail_first and not self.batches:
                self.batches.append([])
                raise RuntimeError("render failed")
            self.batches.append(batch)
        finally:
            self.active -= 1


@pytest_asyncio.fixture()
async def bus():
    b = EventBus()
    yield b
    await b.close()


@pytest.mark.asyncio
async def test_burst_collapses_into_one_refresh(bus):
    refresh = RecordingRefresh()
    bridge = SubscriptionBridge(bus, refresh, window=0.25, max_wait=1.0)
    bridge.mount(ORG, [EntityType.PROPERTY])

    for seq in range(1, 11):  # 10 events within ~100ms
        bus.publish(_event(seq))
        await asyncio.sleep(0.01)
    await asyncio.sleep(0.1)
    assert refresh.batches == []  # still inside the window

    await asyncio.sleep(0.3)
    assert len(refresh.batches) == 1
    assert [e.sequence for e in refresh.batches[0]] == list(range(1, 11))
    assert bridge.stats == {
        "events_received": 10,
        "refreshes": 1,
        "refresh_failures": 0,
        "pending": 0,
    }
    bridge.unmount()


@pytest.mark.asyncio
async def test_continuous_stream_refreshes_by_max_wait(bus):
    refresh = RecordingRefresh()
    bridge = SubscriptionBridge(bus, refresh, window=0.25, max_wait=1.0)
    bridge.mount(ORG, [EntityType.PROPERTY])

    # An event every 50ms for ~2s never leaves a 250ms quiet gap.
    for seq in range(1, 42):
        bus.publish(_event(seq))
        await asyncio.sleep(0.05)

    assert len(refresh.batches) >= 2
    bridge.unmount()


@pytest.mark.asyncio
async def test_unmount_cancels_pending_refresh(bus):
    refresh = RecordingRefresh()
    bridge = SubscriptionBridge(bus, refresh, window=0.05, max_wait=0.2)
    bridge.mount(ORG, [EntityType.PROPERTY])

    bus.publish(_event(1))
    await asyncio.sleep(0.01)
    bridge.unmount()
    bus.publish(_event(2))
    await asyncio.sleep(0.15)

    assert refresh.batches == []
    assert not bridge.mounted
    assert bus.subscriber_count() == 0


@pytest.mark.asyncio
async def test_rescope_ignores_old_scope(bus):
    refresh = RecordingRefresh()
    bridge = SubscriptionBridge(bus, refresh, window=0.05, max_wait=0.2)
    bridge.mount(ORG, [EntityType.PROPERTY])
    bridge.rescope(ORG, [EntityType.CLIENT])

    assert bridge.entity_types == frozenset({EntityType.CLIENT})
    assert bus.subscriber_count() == 1

    bus.publish(_event(1, entity_type=EntityType.PROPERTY))
    bus.publish(_event(2, entity_type=EntityType.CLIENT))
    await asyncio.sleep(0.15)

    assert [[e.sequence for e in b] for b in refresh.batches] == [[2]]
    bridge.unmount()


@pytest.mark.asyncio
async def test_failed_refresh_is_logged_and_next_burst_retries(bus):
    refresh = RecordingRefresh(fail_first=True)
    bridge = SubscriptionBridge(bus, refresh, window=0.05, max_wait=0.2)
    bridge.mount(ORG, [EntityType.PROPERTY])

    bus.publish(_event(1))
    await asyncio.sleep(0.12)
    assert bridge.refresh_failures == 1

    bus.publish(_event(2))
    await asyncio.sleep(0.12)
    assert bridge.refreshes == 1
    assert [e.sequence for e in refresh.batches[-1]] == [2]
    bridge.unmount()


@pytest.mark.asyncio
async def test_refreshes_never_overlap(bus):
    refresh = RecordingRefresh(delay=0.1)
    bridge = SubscriptionBridge(bus, refresh, window=0.02, max_wait=0.05)
    bridge.mount(ORG, [EntityType.PROPERTY])

    for seq in range(1, 11):
        bus.publish(_event(seq))
        await asyncio.sleep(0.03)
    await asyncio.sleep(1.2)

    assert refresh.max_active == 1
    delivered = [e.sequence for b in refresh.batches for e in b]
    assert delivered == list(range(1, 11))
    bridge.unmount()


def test_window_validation():
    bus = EventBus()
    with pytest.raises(ValueError):
        SubscriptionBridge(bus, RecordingRefresh(), window=0)
    with pytest.raises(ValueError):
        SubscriptionBridge(bus, RecordingRefresh(), window=0.5, max_wait=0.1)
