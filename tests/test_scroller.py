import asyncio
from dataclasses import replace

import pytest

from conftest import FakeExtractor, FakeItem, FakeSurface, local_ms
from harvester.aggregator import Aggregator
from harvester.models import ScrapeOptions, ScrollerNotFoundError
from harvester.scroller import drive, scroll_aggregate
from harvester.timeparse import to_iso


def _history(count, day=3):
    return [FakeItem(id=f"m{i:02d}", ts=local_ms(2025, 3, day, 8, i), text=f"message {i}") for i in range(count)]


def test_single_pass_same_day_keeps_order(day_items, extractor, quick_tuning):
    surface = FakeSurface(day_items, window=5)
    records = asyncio.run(scroll_aggregate(surface, extractor, ScrapeOptions(), quick_tuning))
    assert [r.id for r in records] == ["m0", "m1", "m2"]
    assert not any(r.system for r in records)


def test_single_day_gets_one_divider_when_system_included(day_items, extractor, quick_tuning):
    surface = FakeSurface(day_items, window=5)
    records = asyncio.run(scroll_aggregate(surface, extractor, ScrapeOptions(include_system=True), quick_tuning))
    assert [r.id for r in records] == ["day-2025-03-03", "m0", "m1", "m2"]
    assert records[0].text == "Monday, March 3, 2025"


def test_lazy_history_is_collected_in_order(extractor, quick_tuning):
    items = _history(23)
    surface = FakeSurface(items, window=5, loaded=5, batch=4)
    aggregator = Aggregator(extractor, ScrapeOptions())
    stats = asyncio.run(drive(surface, aggregator, quick_tuning))
    assert stats.stop_reason == "stagnant_top"
    assert sorted(aggregator.keys()) == [i.id for i in items]
    # each item is extracted once no matter how many passes saw it
    assert len(extractor.calls) == len(items)


def test_reveal_hidden_history_resets_and_orders_older_first(extractor, quick_tuning):
    older = FakeItem(id="old", ts=local_ms(2025, 3, 1, 7), text="from before")
    items = [older] + _history(4)
    surface = FakeSurface(items, window=5, hidden_before=1)
    aggregator = Aggregator(extractor, ScrapeOptions())
    stats = asyncio.run(drive(surface, aggregator, quick_tuning))
    assert stats.reveals == 1
    assert surface.reveals == 1
    # convergence restarted after the reveal instead of stopping on the old evidence
    assert stats.passes > quick_tuning.max_stagnant_passes_at_top + 1

    records = asyncio.run(scroll_aggregate(FakeSurface(items, window=5, hidden_before=1), extractor, ScrapeOptions(), quick_tuning))
    assert records[0].id == "old"
    assert [r.id for r in records[1:]] == [i.id for i in items[1:]]


def test_delayed_loader_is_waited_out(extractor, quick_tuning):
    items = _history(12)
    surface = FakeSurface(items, window=4, loaded=4, batch=4, has_loading_signal=True, load_delay=2)
    aggregator = Aggregator(extractor, ScrapeOptions())
    stats = asyncio.run(drive(surface, aggregator, quick_tuning))
    assert len(aggregator) == 12
    assert stats.loading_overrides == 0


def test_stuck_loader_is_ignored_after_stall_threshold(extractor, quick_tuning):
    items = _history(8)
    surface = FakeSurface(items, window=4, loaded=4, has_loading_signal=True, stuck_loader=True)
    aggregator = Aggregator(extractor, ScrapeOptions())
    stats = asyncio.run(drive(surface, aggregator, quick_tuning))
    assert stats.stop_reason in ("stagnant", "stagnant_top")
    assert stats.loading_overrides > 0
    assert stats.passes < quick_tuning.max_passes
    assert len(aggregator) == 4


def test_missing_scroller_is_fatal(extractor, quick_tuning):
    surface = FakeSurface(_history(3), missing=True)
    aggregator = Aggregator(extractor, ScrapeOptions())
    with pytest.raises(ScrollerNotFoundError, match="Scroller not found"):
        asyncio.run(drive(surface, aggregator, quick_tuning))


def test_stops_once_oldest_visible_reaches_start_bound(extractor, quick_tuning):
    items = _history(20)
    options = ScrapeOptions(start_at=to_iso(items[12].ts))
    surface = FakeSurface(items, window=4, loaded=4, batch=2)
    aggregator = Aggregator(extractor, options)
    stats = asyncio.run(drive(surface, aggregator, quick_tuning))
    assert stats.stop_reason == "time_bound"
    assert "m00" not in aggregator

    records = asyncio.run(scroll_aggregate(FakeSurface(items, window=4, loaded=4, batch=2), extractor, options, quick_tuning))
    assert [r.id for r in records] == [i.id for i in items[12:]]


def test_cancel_event_stops_before_first_pass(day_items, extractor, quick_tuning):
    cancel = asyncio.Event()
    cancel.set()
    aggregator = Aggregator(extractor, ScrapeOptions())
    stats = asyncio.run(drive(FakeSurface(day_items), aggregator, quick_tuning, cancel=cancel))
    assert stats.stop_reason == "cancelled"
    assert stats.passes == 0
    # the initial and final collections still ran
    assert len(aggregator) == 3


def test_max_passes_is_a_hard_cap(extractor, quick_tuning):
    tuning = replace(quick_tuning, max_stagnant_passes=1000, max_stagnant_passes_at_top=1000, max_passes=7)
    aggregator = Aggregator(extractor, ScrapeOptions())
    stats = asyncio.run(drive(FakeSurface(_history(3)), aggregator, tuning))
    assert stats.stop_reason == "max_passes"
    assert stats.passes == 7


class StreamingSurface(FakeSurface):
    """Receives a new message at the bottom while the driver scrolls up."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.reads = 0

    async def get_items(self):
        self.reads += 1
        if self.reads == 3:
            self.items.append(FakeItem(id="late", ts=local_ms(2025, 3, 3, 23), text="just arrived"))
        return await super().get_items()


def test_final_pass_picks_up_newest_items(extractor, quick_tuning):
    surface = StreamingSurface(_history(10), window=3)
    records = asyncio.run(scroll_aggregate(surface, extractor, ScrapeOptions(), quick_tuning))
    assert records[-1].id == "late"
    assert len(records) == 11


def test_extraction_errors_are_skipped(extractor, quick_tuning):
    items = _history(4)
    items[1].fail = True
    aggregator = Aggregator(extractor, ScrapeOptions())
    asyncio.run(drive(FakeSurface(items), aggregator, quick_tuning))
    assert "m01" not in aggregator
    assert len(aggregator) == 3
    assert aggregator.extraction_errors >= 1


class BrokenIdExtractor(FakeExtractor):
    def item_id(self, item, index):
        if item.id == "m00":
            raise ValueError("no id on this node")
        return item.id


def test_unreadable_oldest_item_does_not_abort_the_session(quick_tuning):
    tuning = replace(quick_tuning, max_passes=8)
    aggregator = Aggregator(BrokenIdExtractor(), ScrapeOptions())
    stats = asyncio.run(drive(FakeSurface(_history(4)), aggregator, tuning))
    assert stats.passes >= 1
    assert sorted(aggregator.keys()) == ["m01", "m02", "m03"]


def test_progress_sinks_never_break_the_session(day_items, extractor, quick_tuning):
    events = []

    def broken_sink(event):
        raise RuntimeError("sink down")

    async def async_sink(event):
        events.append(event)
        raise RuntimeError("async sink down")

    async def run():
        first = await drive(FakeSurface(day_items), Aggregator(extractor, ScrapeOptions()), quick_tuning, progress=broken_sink)
        second = await drive(FakeSurface(day_items), Aggregator(extractor, ScrapeOptions()), quick_tuning, progress=async_sink)
        await asyncio.sleep(0)
        return first, second

    first, second = asyncio.run(run())
    assert first.stop_reason == second.stop_reason == "stagnant_top"
    assert len(events) == second.passes
    assert events[0].phase == "scroll"
    assert events[-1].aggregate_size == 3
