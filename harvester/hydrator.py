"""
Post-pass repair of partially loaded records.

Virtualized lists often render an item before its body, reactions or preview
images are ready. After the scroll loop the hydrator re-extracts those
entries a few times and merges old and fresh values field by field.
"""
from dataclasses import dataclass, fields, replace
import logging
import re
from typing import Any, Callable, Dict, List, Optional, Tuple

from harvester.aggregator import Aggregator
from harvester.models import AggregatedEntry, Record, ScrapeOptions, SessionContext
from harvester.surface import ItemExtractor, ItemProbe, ScrollSurface
from harvester.timeparse import parse_timestamp, year_of

logger = logging.getLogger(__name__)

MAX_ROUNDS = 3
ROUND_BACKOFF_MS = (450, 650)
PREVIEW_WAIT_MS = (350, 700)

PLACEHOLDER_PATTERN = re.compile(r"^(loading(\s*(\.\.\.|…))?|\.\.\.|…)$", re.IGNORECASE)


def is_placeholder_text(text: Optional[str]) -> bool:
    clean = " ".join((text or "").split())
    if not clean:
        return True
    return bool(PLACEHOLDER_PATTERN.match(clean))


@dataclass
class HydrationNeeds:
    text: bool = False
    reactions: bool = False
    images: bool = False

    @property
    def any(self) -> bool:
        return self.text or self.reactions or self.images


def needs_hydration(record: Record, probe: ItemProbe, include_reactions: bool = True) -> HydrationNeeds:
    needs = HydrationNeeds(text=is_placeholder_text(record.text))
    if include_reactions and probe.reaction_pills:
        reactions = record.reactions or []
        missing_label = any(not (r.emoji or "").strip() for r in reactions)
        needs.reactions = not reactions or missing_label
    if probe.pending_previews:
        attachments = record.attachments or []
        needs.images = not attachments or any(a.preview_url and not a.preview_loaded for a in attachments)
    return needs


# Per-field precedence used by merge_records.
def _keep_old(old: Any, new: Any) -> Any:
    return old if old else new


def _fresh_non_empty(old: Any, new: Any) -> Any:
    return new if new else (old or "")


def _logical_or(old: Any, new: Any) -> bool:
    return bool(old or new)


def _fresh_if_present(old: Any, new: Any) -> Any:
    return new if new is not None else old


MERGE_RULES: Dict[str, Callable[[Any, Any], Any]] = {
    "id": _keep_old,
    "thread_id": _keep_old,
    "author": _fresh_non_empty,
    "timestamp": _fresh_non_empty,
    "text": _fresh_non_empty,
    "edited": _logical_or,
    "system": _logical_or,
    "avatar": _fresh_if_present,
    "reactions": _fresh_if_present,
    "attachments": _fresh_if_present,
    "tables": _fresh_if_present,
    "reply_to": _fresh_if_present,
}


def merge_records(old: Record, new: Record) -> Record:
    """Pure merge of a stored record with a fresh extraction of the same item."""
    values = {}
    for f in fields(Record):
        rule = MERGE_RULES[f.name]
        values[f.name] = rule(getattr(old, f.name), getattr(new, f.name))
    return Record(**values)


def _context_from(record: Record) -> SessionContext:
    ts = parse_timestamp(record.timestamp)
    return SessionContext(
        last_time_ms=ts,
        year_hint=year_of(ts) if ts is not None else None,
        last_author=record.author or "",
        last_record_id=record.id,
        system_cursor=0,
    )


async def hydrate(
    aggregator: Aggregator,
    surface: ScrollSurface,
    extractor: ItemExtractor,
    options: ScrapeOptions,
    max_rounds: int = MAX_ROUNDS,
) -> List[str]:
    """
    Re-extract entries that still look incomplete. Returns the keys that were
    still incomplete after the last round; they stay in the store as they are.
    """
    if not len(aggregator):
        return []

    pending: List[Tuple[str, Any]] = []
    for key, entry in aggregator.items():
        record = entry.record
        if record is None or record.system:
            continue
        item = await surface.find_item(key)
        if item is None:
            continue
        if needs_hydration(record, extractor.probe(item), options.include_reactions).any:
            pending.append((key, item))

    if not pending:
        return []
    logger.debug(f"hydration: {len(pending)} entries pending")

    # window bounds do not apply while re-reading an already accepted record
    reread_options = replace(options, start_at=None, end_at=None)

    rounds = 0
    while pending and rounds < max_rounds:
        await surface.sleep(ROUND_BACKOFF_MS[0] if rounds == 0 else ROUND_BACKOFF_MS[1])
        next_pending: List[Tuple[str, Any]] = []

        for key, item in pending:
            existing = aggregator.get(key)
            if existing is None or existing.record is None:
                continue
            live = await surface.find_item(key) or item

            before = needs_hydration(existing.record, extractor.probe(live), options.include_reactions)
            if before.images:
                live = await _wait_for_previews(surface, extractor, key, live, PREVIEW_WAIT_MS[0 if rounds == 0 else 1])

            try:
                fresh = await extractor.extract(live, reread_options, _context_from(existing.record))
            except Exception as e:
                logger.warning(f"hydration re-extract failed for {key}: {e}")
                next_pending.append((key, live))
                continue
            if fresh is None or fresh.record is None:
                next_pending.append((key, live))
                continue

            merged = merge_records(existing.record, fresh.record)
            time_ms = fresh.time_ms
            if time_ms is None:
                time_ms = existing.time_ms
            if time_ms is None:
                time_ms = parse_timestamp(merged.timestamp)
            aggregator.replace(
                key,
                AggregatedEntry(
                    order_key=existing.order_key,
                    time_ms=time_ms,
                    kind=existing.kind,
                    record=merged,
                    time_label=existing.time_label,
                ),
            )

            if needs_hydration(merged, extractor.probe(live), options.include_reactions).any:
                next_pending.append((key, live))

        pending = next_pending
        rounds += 1

    if pending:
        logger.debug(f"hydration pending after {rounds} rounds: {[k for k, _ in pending]}")
    return [k for k, _ in pending]


async def _wait_for_previews(surface: ScrollSurface, extractor: ItemExtractor, key: str, item: Any, timeout_ms: float) -> Any:
    latest = {"item": item}

    async def previews_ready() -> bool:
        found = await surface.find_item(key)
        if found is not None:
            latest["item"] = found
        return not extractor.probe(latest["item"]).pending_previews

    await surface.wait_for_condition(previews_ready, timeout_ms, interval_ms=100)
    return latest["item"]
