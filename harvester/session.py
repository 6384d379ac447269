import asyncio
import logging
import time
from typing import Optional

from harvester.aggregator import Aggregator
from harvester.finalizer import finalize
from harvester.hydrator import hydrate
from harvester.models import HarvestResult, ProgressEvent, ScrapeOptions, Tuning, tuning_for_target
from harvester.scroller import ProgressSink, drive, emit_progress
from harvester.surface import ItemExtractor, ScrollSurface, ThreadHost
from harvester.threads import OpenState, ReplyCollectingExtractor, ReplyCollector, ThreadMergeState, merge_replies

logger = logging.getLogger(__name__)


async def harvest(
    surface: ScrollSurface,
    extractor: ItemExtractor,
    options: ScrapeOptions,
    tuning: Optional[Tuning] = None,
    thread_host: Optional[ThreadHost] = None,
    progress: Optional[ProgressSink] = None,
    cancel: Optional[asyncio.Event] = None,
    title: Optional[str] = None,
) -> HarvestResult:
    """
    One top-level scrape: drive the main list, hydrate, finalize and, when a
    thread host is given and replies are wanted, fold the nested threads back in.
    """
    started_at_ms = time.time() * 1000
    tuning = tuning or tuning_for_target(options.export_target)

    state = ThreadMergeState()
    collector: Optional[ReplyCollector] = None
    active_extractor: ItemExtractor = extractor
    if options.include_replies and thread_host is not None:
        collector = ReplyCollector(thread_host, extractor, options, state, progress=progress, started_at_ms=started_at_ms)
        active_extractor = ReplyCollectingExtractor(extractor, collector)

    aggregator = Aggregator(active_extractor, options)
    stats = await drive(surface, aggregator, tuning, progress=progress, cancel=cancel, started_at_ms=started_at_ms)
    pending = await hydrate(aggregator, surface, extractor, options)
    messages = finalize(aggregator.entries(), options)

    if collector is not None:
        messages = merge_replies(messages, state.replies_by_parent)

    elapsed_ms = int(time.time() * 1000 - started_at_ms)
    emit_progress(progress, ProgressEvent(phase="extract", aggregate_size=len(messages), elapsed_ms=elapsed_ms))

    failed = sum(1 for s in state.open_states.values() if s == OpenState.FAIL)
    meta = {
        "count": len(messages),
        "title": title,
        "start_at": options.start_at,
        "end_at": options.end_at,
        "passes": stats.passes,
        "stop_reason": stats.stop_reason,
        "extraction_errors": aggregator.extraction_errors,
        "hydration_pending": len(pending),
        "threads_opened": len(state.processed_parents),
        "threads_failed": failed,
        "elapsed_ms": elapsed_ms,
    }
    logger.info(f"harvest done: {len(messages)} records in {elapsed_ms}ms")
    return HarvestResult(messages=messages, meta=meta)
