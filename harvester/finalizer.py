from dataclasses import replace
from datetime import datetime
import logging
from typing import Dict, Iterable, List, Optional, Tuple

from harvester.models import AggregatedEntry, EntryKind, Record, ScrapeOptions
from harvester.timeparse import day_label, parse_timestamp, start_of_local_day, to_iso

logger = logging.getLogger(__name__)

ANCHOR_EPSILON_MS = 1


def effective_time(entry: AggregatedEntry) -> Optional[float]:
    if entry.anchor_time_ms is not None:
        return entry.anchor_time_ms
    if entry.time_ms is not None:
        return entry.time_ms
    if entry.record is not None and entry.record.timestamp:
        return parse_timestamp(entry.record.timestamp)
    return None


def anchor_dividers(entries: List[AggregatedEntry]) -> List[AggregatedEntry]:
    """
    Walk backwards over entries sorted by order key; a divider or control entry
    that sits right before a dated message and has no earlier time of its own
    is re-anchored just before that message.
    """
    out = list(entries)
    next_message_ts: Optional[float] = None
    for i in range(len(out) - 1, -1, -1):
        entry = out[i]
        if entry.kind == EntryKind.MESSAGE:
            if entry.time_ms is not None:
                next_message_ts = entry.time_ms
            continue
        if next_message_ts is None:
            continue
        if entry.time_ms is None or entry.time_ms >= next_message_ts:
            out[i] = replace(entry, anchor_time_ms=next_message_ts - ANCHOR_EPSILON_MS)
    return out


def in_window(ts: Optional[float], start_ms: Optional[float], end_ms: Optional[float]) -> bool:
    if ts is None:
        return True
    if start_ms is not None and ts < start_ms:
        return False
    if end_ms is not None and ts >= end_ms:
        return False
    return True


def make_day_divider(day_key: float, representative_ms: float) -> Record:
    day = datetime.fromtimestamp(day_key / 1000).date().isoformat()
    return Record(
        id=f"day-{day}",
        author="[system]",
        timestamp=to_iso(representative_ms),
        text=day_label(representative_ms),
        system=True,
        reactions=[],
        attachments=[],
    )


def _suppressed_system(record: Record, include_system: bool) -> bool:
    if not record.system:
        return False
    if not include_system:
        return True
    text = (record.text or "").strip().lower()
    return not text or text == "system"


def dedup_key(record: Record) -> Tuple[str, str, str, str]:
    return (record.thread_id or "", record.author or "", record.timestamp or "", (record.text or "").strip())


def dedupe(records: Iterable[Record]) -> List[Record]:
    """First occurrence wins."""
    seen = set()
    out: List[Record] = []
    for record in records:
        if record is None:
            continue
        key = dedup_key(record)
        if key in seen:
            continue
        seen.add(key)
        out.append(record)
    return out


def finalize(entries: Iterable[AggregatedEntry], options: ScrapeOptions) -> List[Record]:
    """Order, window, bucket by local day and dedupe everything a session stored."""
    ordered = sorted(entries, key=lambda e: e.order_key)
    ordered = anchor_dividers(ordered)

    kept = [e for e in ordered if e.kind != EntryKind.DAY_DIVIDER]

    def sort_key(entry: AggregatedEntry):
        ts = effective_time(entry)
        return (ts if ts is not None else entry.order_key, entry.order_key)

    kept.sort(key=sort_key)

    start_ms = parse_timestamp(options.start_at) if options.start_at else None
    end_ms = parse_timestamp(options.end_at) if options.end_at else None
    kept = [e for e in kept if in_window(effective_time(e), start_ms, end_ms)]

    buckets: Dict[float, List[Tuple[float, Record]]] = {}
    undated: List[Record] = []
    for entry in kept:
        record = entry.record
        if record is None:
            continue
        if _suppressed_system(record, options.include_system):
            continue
        ts = effective_time(entry)
        if ts is None:
            undated.append(record)
            continue
        buckets.setdefault(start_of_local_day(ts), []).append((ts, record))

    final: List[Record] = []
    for day_key in sorted(buckets):
        items = buckets[day_key]
        items.sort(key=lambda pair: pair[0])
        if options.include_system:
            final.append(make_day_divider(day_key, items[0][0]))
        final.extend(record for _, record in items)
    final.extend(undated)

    result = dedupe(final)
    if len(result) != len(final):
        logger.debug(f"dedupe dropped {len(final) - len(result)} cloned records")
    return result
