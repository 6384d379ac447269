"""
Nested reply threads.

While the main list is harvested, every message that exposes an "open
replies" affordance raises a collection request. Requests run one at a time
through a FIFO lock because the reply pane is a single UI resource: open the
pane for the parent, run a nested scroll session over it, re-scan what is
still visible, close the pane. Once the main session is finalized the
collected replies are spliced back in right after their parents.
"""
from dataclasses import dataclass, field, replace
from enum import Enum
import asyncio
import logging
from typing import Any, Dict, List, Optional, Set, Tuple

from harvester.aggregator import Aggregator
from harvester.finalizer import finalize
from harvester.hydrator import hydrate
from harvester.models import (
    AggregatedEntry,
    EntryKind,
    ParentSnapshot,
    Record,
    ScrapeOptions,
    SessionContext,
    THREAD_TUNING,
    Tuning,
)
from harvester.scroller import ProgressSink, drive
from harvester.surface import ItemExtractor, ItemProbe, ThreadHost

logger = logging.getLogger(__name__)

OPEN_ATTEMPTS = 3
PANE_APPEAR_MS = 3000
PANE_APPEAR_RETRY_MS = 1500
PANE_MATCH_MS = 6500
CLOSE_WAIT_MS = 2000
LOGICAL_TEXT_PREFIX = 280


class OpenState(str, Enum):
    IDLE = "idle"
    OPENING = "opening"
    PANE = "pane"
    FAIL = "fail"


@dataclass
class ThreadMergeState:
    processed_parents: Set[str] = field(default_factory=set)
    replies_by_parent: Dict[str, List[Record]] = field(default_factory=dict)
    open_states: Dict[str, OpenState] = field(default_factory=dict)
    # asyncio.Lock wakes waiters in arrival order
    queue: asyncio.Lock = field(default_factory=asyncio.Lock)


def snapshot_of(record: Optional[Record], parent_id: str) -> ParentSnapshot:
    if record is None:
        return ParentSnapshot(id=parent_id)
    return ParentSnapshot(
        author=record.author or "",
        timestamp=record.timestamp or "",
        text=record.text or "",
        id=parent_id,
    )


class ReplyCollector:
    def __init__(
        self,
        host: ThreadHost,
        extractor: ItemExtractor,
        options: ScrapeOptions,
        state: Optional[ThreadMergeState] = None,
        tuning: Tuning = THREAD_TUNING,
        progress: Optional[ProgressSink] = None,
        started_at_ms: Optional[float] = None,
    ):
        self.host = host
        self.extractor = extractor
        self.options = options
        self.state = state or ThreadMergeState()
        self.tuning = tuning
        self.progress = progress
        self.started_at_ms = started_at_ms
        self.sub_options = ScrapeOptions(
            include_system=False,
            include_reactions=options.include_reactions,
            include_replies=False,
            export_target=options.export_target,
        )

    @property
    def replies_by_parent(self) -> Dict[str, List[Record]]:
        return self.state.replies_by_parent

    def resolve_parent_id(self, item: Any, record: Optional[Record]) -> Optional[str]:
        chain_id, derived_id = self.extractor.thread_ids(item)
        return chain_id or derived_id or (record.id if record else None)

    async def maybe_collect(self, item: Any, record: Optional[Record]) -> None:
        async with self.state.queue:
            try:
                await self._collect_job(item, record)
            except Exception as e:
                logger.warning(f"reply collection failed: {e}")

    async def _collect_job(self, item: Any, record: Optional[Record]) -> None:
        if not self.extractor.has_replies_affordance(item):
            return
        parent_id = self.resolve_parent_id(item, record)
        if not parent_id:
            logger.warning("found a replies affordance but no parent id")
            return
        if parent_id in self.state.processed_parents:
            return
        self.state.processed_parents.add(parent_id)

        parent = snapshot_of(record, parent_id)
        logger.debug(f"opening replies for {parent_id}")
        replies = await self.collect_replies_for_thread(parent_id, parent, item)
        logger.info(f"thread {parent_id}: {len(replies)} replies ({self.state.open_states.get(parent_id)})")
        if replies:
            self.state.replies_by_parent[parent_id] = replies
        # let the host finish its close animation before the next open
        await self.host.sleep(250)

    async def open_thread(self, parent_id: str, item: Any = None) -> OpenState:
        host = self.host

        async def pane_matches() -> bool:
            return await host.thread_pane_matches(parent_id)

        for attempt in range(1, OPEN_ATTEMPTS + 1):
            await host.scroll_into_view(parent_id)
            target = await host.find_replies_affordance(parent_id, item)
            if target is None:
                logger.debug(f"open {parent_id}: affordance not found (attempt {attempt})")
                await host.sleep(300)
                continue

            await host.dispatch_synthetic_activate(target)
            await host.sleep(120)
            if await host.wait_for_condition(host.thread_pane_present, PANE_APPEAR_MS):
                if await host.wait_for_condition(pane_matches, PANE_MATCH_MS):
                    return OpenState.PANE
                logger.debug(f"open {parent_id}: wrong or unstable pane (attempt {attempt})")
                await self.close_thread()
                await host.sleep(250)
                continue

            # some hosts ignore the first synthetic activation
            await host.sleep(200)
            await host.dispatch_synthetic_activate(target)
            await host.sleep(200)
            if await host.wait_for_condition(host.thread_pane_present, PANE_APPEAR_RETRY_MS):
                if await host.wait_for_condition(pane_matches, PANE_MATCH_MS):
                    return OpenState.PANE
                await self.close_thread()
                await host.sleep(250)
                continue

            logger.debug(f"open {parent_id}: nothing opened (attempt {attempt})")
            await host.sleep(300)

        logger.info(f"open {parent_id}: failed after {OPEN_ATTEMPTS} attempts")
        return OpenState.FAIL

    async def close_thread(self) -> bool:
        host = self.host
        if await host.click_close_affordance():
            await host.sleep(200)
        await host.send_cancel_key()

        async def pane_gone() -> bool:
            return not await host.thread_pane_present()

        closed = await host.wait_for_condition(pane_gone, CLOSE_WAIT_MS, interval_ms=100)
        await host.sleep(250)
        if not closed:
            logger.warning("reply pane did not close")
        return closed

    async def collect_replies_for_thread(self, parent_id: str, parent: ParentSnapshot, item: Any = None) -> List[Record]:
        self.state.open_states[parent_id] = OpenState.OPENING
        mode = await self.open_thread(parent_id, item)
        self.state.open_states[parent_id] = mode
        if mode == OpenState.FAIL:
            return []

        replies: List[Record] = []
        try:
            surface = self.host.thread_surface()
            aggregator = Aggregator(self.extractor, self.sub_options)
            await drive(
                surface,
                aggregator,
                self.tuning,
                progress=self.progress,
                started_at_ms=self.started_at_ms,
                phase="thread",
            )
            await hydrate(aggregator, surface, self.extractor, self.sub_options)
            replies = finalize(aggregator.entries(), self.sub_options)
            replies.extend(await self._rescan_visible(surface, replies))
        except Exception as e:
            logger.warning(f"failed to scrape replies for {parent_id}: {e}")
        finally:
            await self.close_thread()

        out: List[Record] = []
        for reply in replies:
            if not reply.id or reply.id == parent_id:
                continue
            if reply.reply_to is None:
                reply = replace(reply, reply_to=parent)
            out.append(reply)
        return out

    async def _rescan_visible(self, surface, collected: List[Record]) -> List[Record]:
        """Pick up visible replies the scroll loop missed at its exit boundary."""
        seen = {r.id for r in collected if r.id}
        extra: List[Record] = []
        context = SessionContext()
        for index, node in enumerate(await surface.get_items()):
            key = self.extractor.item_id(node, index)
            if key and key in seen:
                continue
            try:
                extracted = await self.extractor.extract(node, self.sub_options, context)
            except Exception as e:
                logger.warning(f"re-scan extraction failed for {key}: {e}")
                continue
            if extracted is None or extracted.kind != EntryKind.MESSAGE or extracted.record is None:
                continue
            record = extracted.record
            if record.id and record.id in seen:
                continue
            extra.append(record)
            if record.id:
                seen.add(record.id)
        return extra


class ReplyCollectingExtractor:
    """Extractor wrapper that raises a reply-collection request per new message."""

    def __init__(self, inner: ItemExtractor, collector: ReplyCollector):
        self.inner = inner
        self.collector = collector

    def item_id(self, item: Any, index: int) -> str:
        return self.inner.item_id(item, index)

    def item_time_ms(self, item: Any) -> Optional[float]:
        return self.inner.item_time_ms(item)

    def probe(self, item: Any) -> ItemProbe:
        return self.inner.probe(item)

    def thread_ids(self, item: Any) -> Tuple[Optional[str], Optional[str]]:
        return self.inner.thread_ids(item)

    def has_replies_affordance(self, item: Any) -> bool:
        return self.inner.has_replies_affordance(item)

    async def extract(self, item: Any, options: ScrapeOptions, context: SessionContext) -> Optional[AggregatedEntry]:
        extracted = await self.inner.extract(item, options, context)
        if extracted is not None and extracted.kind == EntryKind.MESSAGE:
            record = extracted.record
            if record is not None and not record.system:
                await self.collector.maybe_collect(item, record)
        return extracted


def _normalize(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def logical_key(record: Record) -> Tuple[str, str, str]:
    return (
        _normalize(record.author),
        _normalize(record.timestamp),
        _normalize((record.text or "")[:LOGICAL_TEXT_PREFIX]),
    )


def merge_replies(messages: List[Record], replies_by_parent: Dict[str, List[Record]]) -> List[Record]:
    """
    Splice collected replies in after their parents. Top-level records that
    duplicate a reply (inline previews) are dropped, replies whose parent never
    shows up are appended at the end.
    """
    if not replies_by_parent:
        return list(messages)

    reply_keys = set()
    for replies in replies_by_parent.values():
        for reply in replies:
            key = logical_key(reply)
            if any(key):
                reply_keys.add(key)

    out: List[Record] = []
    emitted_ids: Set[str] = set()
    inserted_parents: Set[str] = set()

    def emit_replies(replies: List[Record]) -> None:
        for reply in replies:
            if reply.id and reply.id in emitted_ids:
                continue
            if reply.id:
                emitted_ids.add(reply.id)
            out.append(reply)

    for msg in messages:
        if logical_key(msg) in reply_keys:
            continue
        if msg.id:
            emitted_ids.add(msg.id)
        out.append(msg)

        for parent_key in (msg.thread_id, msg.id):
            if not parent_key:
                continue
            replies = replies_by_parent.get(parent_key)
            if replies:
                inserted_parents.add(parent_key)
                emit_replies(replies)
                break

    for parent_key, replies in replies_by_parent.items():
        if parent_key in inserted_parents:
            continue
        emit_replies(replies)

    logger.debug(f"merge: {len(messages)} top-level -> {len(out)} records")
    return out
