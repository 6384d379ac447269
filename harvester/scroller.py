"""
Scroll driver for virtualized, lazily loaded lists.

Each pass nudges the list toward older content, lets it settle, hands the
visible items to the aggregator and fuses four progress signals (container
height, visible count, oldest visible identity, aggregate size) with the
optional loading indicator. The stop thresholds are tunable policy: they make
termination likely, they do not prove convergence. max_passes and the cancel
event are the hard backstops.
"""
from dataclasses import dataclass
import asyncio
import inspect
import logging
import time
from typing import Any, Callable, List, Optional, Set

from harvester.aggregator import Aggregator
from harvester.finalizer import effective_time, finalize, in_window
from harvester.hydrator import hydrate
from harvester.models import ProgressEvent, Record, ScrapeOptions, ScrollerNotFoundError, Tuning
from harvester.surface import ItemExtractor, ScrollSurface
from harvester.timeparse import parse_timestamp

logger = logging.getLogger(__name__)

ProgressSink = Callable[[ProgressEvent], Any]

# stagnant passes after which a list with a loading signal gets an extra nudge
STUBBORN_NUDGE_AFTER = 6

_pending_progress: Set["asyncio.Future[Any]"] = set()


@dataclass
class DriveStats:
    passes: int = 0
    stop_reason: str = ""
    reveals: int = 0
    loading_overrides: int = 0


def emit_progress(sink: Optional[ProgressSink], event: ProgressEvent) -> None:
    """Fire and forget; a failing or slow sink never affects the session."""
    if sink is None:
        return
    try:
        result = sink(event)
        if inspect.isawaitable(result):
            fut = asyncio.ensure_future(result)
            _pending_progress.add(fut)
            fut.add_done_callback(_drop_progress)
    except Exception as e:
        logger.debug(f"progress sink failed: {e}")


def _drop_progress(fut: "asyncio.Future[Any]") -> None:
    _pending_progress.discard(fut)
    if not fut.cancelled() and fut.exception() is not None:
        logger.debug(f"progress sink failed: {fut.exception()}")


def _step(client_height: float, ratio: float, floor: int) -> int:
    return max(floor, int(client_height * ratio))


async def _scroll_up(surface: ScrollSurface) -> None:
    before = await surface.metrics()
    await surface.scroll_by(-_step(before.client_height, 0.35, 120))
    after = await surface.metrics()
    # virtualized lists can snap back; retry with a second nudge
    if after.top >= before.top and after.top > 2:
        await surface.scroll_by(-_step(after.client_height, 0.2, 60))


async def _collect(surface: ScrollSurface, aggregator: Aggregator) -> List[Any]:
    items = await surface.get_items()
    await aggregator.collect_visible(items)
    return items


async def drive(
    surface: ScrollSurface,
    aggregator: Aggregator,
    tuning: Tuning,
    progress: Optional[ProgressSink] = None,
    cancel: Optional[asyncio.Event] = None,
    started_at_ms: Optional[float] = None,
    phase: str = "scroll",
) -> DriveStats:
    container = await surface.get_container()
    if container is None:
        raise ScrollerNotFoundError("Scroller not found")

    extractor = aggregator.extractor
    options = aggregator.options
    stats = DriveStats()

    await surface.scroll_to_bottom()
    await surface.sleep(300)
    await _collect(surface, aggregator)

    start_ms = parse_timestamp(options.start_at) if options.start_at else None
    end_ms = parse_timestamp(options.end_at) if options.end_at else None

    has_loading = bool(getattr(surface, "has_loading_signal", False))
    max_mid, max_top = tuning.stagnant_limits(has_loading)

    prev_height: float = -1
    last_count = -1
    last_oldest: Optional[str] = None
    last_agg_size = len(aggregator)
    stagnant = 0
    loading_no_progress = 0
    top_reached = False

    while True:
        if cancel is not None and cancel.is_set():
            stats.stop_reason = "cancelled"
            break
        if stats.passes >= tuning.max_passes:
            logger.warning(f"[{phase}] hit max_passes={tuning.max_passes}, stopping")
            stats.stop_reason = "max_passes"
            break
        stats.passes += 1

        await _scroll_up(surface)
        await surface.sleep(tuning.dwell_ms)
        items = await _collect(surface, aggregator)
        if not items:
            stats.stop_reason = "empty"
            break

        metrics = await surface.metrics()
        new_count = len(items)
        new_height = metrics.height
        oldest = items[0]
        try:
            oldest_id = extractor.item_id(oldest, 0) or None
            oldest_ts = extractor.item_time_ms(oldest)
        except Exception as e:
            logger.warning(f"[{phase}] reading the oldest visible item failed: {e}")
            oldest_id, oldest_ts = None, None
        loading_raw = await surface.is_loading() if has_loading else False

        revealed = await surface.reveal_hidden_history()
        if revealed:
            # older history was just unhidden; previous convergence evidence is void
            stats.reveals += 1
            logger.debug(f"[{phase}] pass {stats.passes}: revealed hidden history x{revealed}")
            await _scroll_up(surface)
            await _scroll_up(surface)
            await surface.sleep(300)
            stagnant = 0
            prev_height = -1
            last_count = -1
            last_oldest = None
            loading_no_progress = 0
            await surface.sleep(600)
            continue

        seen = len(aggregator)
        height_changed = new_height != prev_height
        count_changed = new_count != last_count
        oldest_changed = not (oldest_id and oldest_id == last_oldest)
        agg_changed = seen != last_agg_size
        progress_observed = height_changed or count_changed or oldest_changed or agg_changed

        loading = loading_raw
        if loading_raw:
            if metrics.top > 2:
                await surface.scroll_by(-metrics.client_height * 3)
            loading_no_progress = 0 if progress_observed else loading_no_progress + 1
            if loading_no_progress == tuning.loading_stall_passes:
                await surface.scroll_to_top()
                nudged = await surface.metrics()
                if nudged.top > 2:
                    await surface.scroll_by(-nudged.client_height * 3)
                await surface.sleep(200)
            elif loading_no_progress > tuning.loading_stall_passes:
                # the loader looks stuck; stop trusting it so the loop can end
                loading = False
                stats.loading_overrides += 1
        else:
            loading_no_progress = 0

        filtered_seen = sum(1 for e in aggregator.entries() if in_window(effective_time(e), start_ms, end_ms))
        elapsed = int(time.time() * 1000 - started_at_ms) if started_at_ms else None
        emit_progress(
            progress,
            ProgressEvent(
                phase=phase,
                passes=stats.passes,
                visible_count=new_count,
                aggregate_size=seen,
                filtered_seen=filtered_seen,
                elapsed_ms=elapsed,
                loading=loading,
                oldest_id=oldest_id,
            ),
        )
        logger.debug(
            f"[{phase}] pass {stats.passes} visible={new_count} seen={seen} "
            f"stagnant={stagnant} loading={loading}"
        )

        if start_ms is not None and oldest_ts is not None and oldest_ts <= start_ms:
            stats.stop_reason = "time_bound"
            break

        prev_height = new_height
        last_count = new_count
        last_agg_size = seen
        if oldest_id:
            last_oldest = oldest_id

        if loading:
            stagnant = max(0, stagnant - 1)
            await surface.sleep(tuning.dwell_ms + tuning.loading_extra_delay_ms)
            continue

        stagnant = 0 if progress_observed else stagnant + 1

        if has_loading and stagnant > STUBBORN_NUDGE_AFTER:
            await surface.scroll_by(-_step(metrics.client_height, 0.25, 80))

        if metrics.at_top:
            top_reached = True
        if stagnant >= (max_top if top_reached else max_mid):
            stats.stop_reason = "stagnant_top" if top_reached else "stagnant"
            break

    # newer items can stream in while scrolling backwards
    await surface.scroll_to_bottom()
    await surface.sleep(tuning.dwell_ms)
    await _collect(surface, aggregator)

    logger.info(f"[{phase}] stopped after {stats.passes} passes ({stats.stop_reason}), {len(aggregator)} entries")
    return stats


async def scroll_aggregate(
    surface: ScrollSurface,
    extractor: ItemExtractor,
    options: ScrapeOptions,
    tuning: Tuning,
    progress: Optional[ProgressSink] = None,
    cancel: Optional[asyncio.Event] = None,
    started_at_ms: Optional[float] = None,
    phase: str = "scroll",
) -> List[Record]:
    """Drive one list to convergence, repair sparse entries and return ordered records."""
    aggregator = Aggregator(extractor, options)
    await drive(surface, aggregator, tuning, progress=progress, cancel=cancel, started_at_ms=started_at_ms, phase=phase)
    await hydrate(aggregator, surface, extractor, options)
    return finalize(aggregator.entries(), options)
