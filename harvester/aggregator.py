import logging
from typing import Any, Dict, Iterator, List, Optional, Tuple

from harvester.models import AggregatedEntry, EntryKind, ScrapeOptions, SessionContext
from harvester.surface import ItemExtractor
from harvester.timeparse import parse_timestamp, year_of

logger = logging.getLogger(__name__)


class Aggregator:
    """
    Identity-keyed, append-only store of everything discovered in one session.

    Keys are never removed. An entry's value may only be swapped wholesale
    through replace(), which is what the hydrator does.
    """

    def __init__(self, extractor: ItemExtractor, options: ScrapeOptions, context: Optional[SessionContext] = None):
        self.extractor = extractor
        self.options = options
        self.context = context or SessionContext()
        self._entries: Dict[str, AggregatedEntry] = {}
        self.extraction_errors = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def get(self, key: str) -> Optional[AggregatedEntry]:
        return self._entries.get(key)

    def items(self) -> Iterator[Tuple[str, AggregatedEntry]]:
        return iter(list(self._entries.items()))

    def entries(self) -> List[AggregatedEntry]:
        return list(self._entries.values())

    def keys(self) -> List[str]:
        return list(self._entries.keys())

    def replace(self, key: str, entry: AggregatedEntry) -> None:
        if key not in self._entries:
            raise KeyError(f"cannot replace unknown entry {key!r}")
        self._entries[key] = entry

    async def collect_visible(self, items: List[Any]) -> int:
        """Extract every visible item not stored yet. Returns how many were added."""
        added = 0
        for index, item in enumerate(items):
            try:
                item_key = self.extractor.item_id(item, index)
            except Exception as e:
                logger.warning(f"item id failed at index {index}: {e}")
                continue
            if item_key in self._entries:
                continue
            try:
                extracted = await self.extractor.extract(item, self.options, self.context)
            except Exception as e:
                self.extraction_errors += 1
                logger.warning(f"extraction failed for {item_key}: {e}")
                continue
            if extracted is None:
                continue
            if self._absorb(extracted):
                added += 1
        return added

    def _absorb(self, extracted: AggregatedEntry) -> bool:
        ctx = self.context
        if extracted.kind == EntryKind.DAY_DIVIDER:
            if extracted.time_ms is not None:
                ctx.last_time_ms = extracted.time_ms
                ctx.year_hint = year_of(extracted.time_ms)
            return False

        record = extracted.record
        if record is None:
            return False

        key = record.id or f"{extracted.order_key}"
        if key in self._entries:
            return False
        self._entries[key] = extracted

        if not record.system:
            tms = parse_timestamp(record.timestamp)
            if tms is not None:
                ctx.last_time_ms = tms
                ctx.year_hint = year_of(tms)
            if record.author:
                ctx.last_author = record.author
            ctx.last_record_id = key
        return True
