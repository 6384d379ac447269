import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Set

import pytest

from harvester.models import (
    AggregatedEntry,
    Attachment,
    EntryKind,
    Reaction,
    Record,
    ScrapeOptions,
    SessionContext,
    Tuning,
)
from harvester.surface import ItemProbe, PollingWaitMixin, ScrollMetrics
from harvester.timeparse import to_iso

ITEM_HEIGHT = 100


def local_ms(year: int, month: int, day: int, hour: int = 12, minute: int = 0) -> float:
    return datetime(year, month, day, hour, minute).timestamp() * 1000


@dataclass
class FakeItem:
    id: str
    ts: Optional[float] = None
    author: str = "Ada"
    text: str = "hi"
    kind: str = "message"
    chain_id: Optional[str] = None
    replies: bool = False
    reactions: Optional[List[str]] = None
    reaction_pills: bool = False
    previews: Optional[List[bool]] = None
    fail: bool = False


class FakeExtractor:
    """Reads FakeItem fields straight into records."""

    def __init__(self):
        self.calls: List[str] = []

    def item_id(self, item: FakeItem, index: int) -> str:
        return item.id

    def item_time_ms(self, item: FakeItem) -> Optional[float]:
        return item.ts

    def probe(self, item: FakeItem) -> ItemProbe:
        pending = bool(item.previews) and not all(item.previews)
        return ItemProbe(reaction_pills=item.reaction_pills, pending_previews=pending)

    def thread_ids(self, item: FakeItem):
        return item.chain_id, None

    def has_replies_affordance(self, item: FakeItem) -> bool:
        return item.replies

    async def extract(self, item: FakeItem, options: ScrapeOptions, context: SessionContext) -> Optional[AggregatedEntry]:
        self.calls.append(item.id)
        if item.fail:
            raise ValueError(f"cannot read {item.id}")
        if item.kind == "divider":
            return AggregatedEntry(order_key=item.ts, time_ms=item.ts, kind=EntryKind.DAY_DIVIDER)
        if item.kind == "skip":
            return None

        system = item.kind == "control"
        reactions = None
        if item.reactions is not None and options.include_reactions:
            reactions = [Reaction(emoji=e, count=1) for e in item.reactions]
        attachments = None
        if item.previews is not None:
            attachments = [
                Attachment(href=f"{item.id}-{i}", preview_url=f"{item.id}-{i}", preview_loaded=loaded)
                for i, loaded in enumerate(item.previews)
            ]
        record = Record(
            id=item.id,
            thread_id=item.chain_id or item.id,
            author="[system]" if system else (item.author or context.last_author),
            timestamp=to_iso(item.ts) if item.ts is not None else "",
            text=item.text,
            system=system,
            reactions=reactions,
            attachments=attachments,
        )
        if item.ts is not None:
            order_key = item.ts
        elif system:
            order_key = context.system_cursor
            context.system_cursor += 1
        else:
            order_key = context.next_sequence_key()
        kind = EntryKind.SYSTEM_CONTROL if system else EntryKind.MESSAGE
        return AggregatedEntry(order_key=order_key, time_ms=item.ts, kind=kind, record=record)


class FakeSurface(PollingWaitMixin):
    """
    In-memory virtualized list. `items` is the full history, oldest first.
    Only the newest `loaded` items exist until the viewport reaches the top,
    which loads `batch` older ones (after `load_delay` is_loading() polls when
    the surface has a loading signal). Items before `hidden_before` stay out
    of reach until reveal_hidden_history() is called.
    """

    def __init__(
        self,
        items: List[FakeItem],
        window: int = 5,
        loaded: Optional[int] = None,
        batch: int = 5,
        has_loading_signal: bool = False,
        load_delay: int = 0,
        stuck_loader: bool = False,
        hidden_before: int = 0,
        missing: bool = False,
    ):
        self.items = list(items)
        self.window = window
        self.batch = batch
        self.has_loading_signal = has_loading_signal
        self.load_delay = load_delay
        self.stuck_loader = stuck_loader
        self.hidden_before = hidden_before
        self.missing = missing
        total = len(self.items)
        self.loaded_from = max(hidden_before, total - (loaded if loaded is not None else total))
        self.pending_load = 0
        self.slept_ms = 0.0
        self.reveals = 0
        self.top = max(0.0, self.height - self.client_height)

    # geometry
    @property
    def height(self) -> float:
        return (len(self.items) - self.loaded_from) * ITEM_HEIGHT

    @property
    def client_height(self) -> float:
        return self.window * ITEM_HEIGHT

    def _clamp(self) -> None:
        self.top = max(0.0, min(self.top, max(0.0, self.height - self.client_height)))

    def _load_older(self) -> None:
        older = min(self.batch, self.loaded_from - self.hidden_before)
        if older <= 0:
            return
        self.loaded_from -= older
        self.top += older * ITEM_HEIGHT

    def _hit_top(self) -> None:
        if self.top > 0 or self.loaded_from <= self.hidden_before:
            return
        if self.has_loading_signal and (self.load_delay or self.stuck_loader):
            if not self.pending_load:
                self.pending_load = self.load_delay or 1
            return
        self._load_older()

    # ScrollSurface
    async def sleep(self, ms: float) -> None:
        self.slept_ms += ms
        await asyncio.sleep(0)

    async def get_container(self):
        return None if self.missing else self

    async def get_items(self) -> List[FakeItem]:
        first = self.loaded_from + int(self.top // ITEM_HEIGHT)
        return self.items[first : first + self.window]

    async def metrics(self) -> ScrollMetrics:
        return ScrollMetrics(top=self.top, height=self.height, client_height=self.client_height)

    async def scroll_by(self, delta: float) -> None:
        self.top += delta
        self._clamp()
        self._hit_top()

    async def scroll_to_top(self) -> None:
        self.top = 0.0
        self._hit_top()

    async def scroll_to_bottom(self) -> None:
        self.top = max(0.0, self.height - self.client_height)

    async def is_loading(self) -> bool:
        if self.stuck_loader:
            return True
        if self.pending_load:
            self.pending_load -= 1
            if not self.pending_load:
                self._load_older()
            return True
        return False

    async def reveal_hidden_history(self) -> int:
        if self.hidden_before and self.top <= 2 and self.loaded_from <= self.hidden_before:
            self.hidden_before = 0
            self.reveals += 1
            self._load_older()
            return 1
        return 0

    async def find_item(self, item_id: str) -> Optional[FakeItem]:
        for item in self.items:
            if item.id == item_id:
                return item
        return None


class FakeThreadHost(PollingWaitMixin):
    """
    Reply panes keyed by parent id. Parents listed in `broken` never open;
    parents in `wrong_pane` open a pane that belongs to another thread.
    """

    def __init__(
        self,
        threads: Dict[str, List[FakeItem]],
        broken: Optional[Set[str]] = None,
        wrong_pane: Optional[Set[str]] = None,
    ):
        self.threads = threads
        self.broken = broken or set()
        self.wrong_pane = wrong_pane or set()
        self.open_parent: Optional[str] = None
        self.opened: List[str] = []
        self.activations = 0
        self.closes = 0
        self.escapes = 0
        self.overlaps = 0

    async def sleep(self, ms: float) -> None:
        await asyncio.sleep(0)

    async def find_replies_affordance(self, parent_id: str, item=None):
        if parent_id in self.threads or parent_id in self.broken or parent_id in self.wrong_pane:
            return parent_id
        return None

    async def scroll_into_view(self, parent_id: str) -> bool:
        return True

    async def dispatch_synthetic_activate(self, target) -> None:
        self.activations += 1
        if target in self.broken:
            return
        if self.open_parent is not None and self.open_parent != target:
            self.overlaps += 1
        self.open_parent = "someone-else" if target in self.wrong_pane else target
        if target not in self.wrong_pane:
            self.opened.append(target)

    async def thread_pane_present(self) -> bool:
        return self.open_parent is not None

    async def thread_pane_matches(self, parent_id: str) -> bool:
        return self.open_parent == parent_id

    def thread_surface(self) -> FakeSurface:
        return FakeSurface(self.threads.get(self.open_parent, []), window=10)

    async def click_close_affordance(self) -> bool:
        if self.open_parent is None:
            return False
        self.closes += 1
        self.open_parent = None
        return True

    async def send_cancel_key(self) -> None:
        self.escapes += 1


@pytest.fixture
def quick_tuning() -> Tuning:
    return Tuning(
        dwell_ms=0,
        max_stagnant_passes=3,
        max_stagnant_passes_at_top=3,
        loading_stall_passes=3,
        loading_extra_delay_ms=0,
        max_passes=200,
    )


@pytest.fixture
def extractor() -> FakeExtractor:
    return FakeExtractor()


@pytest.fixture
def day_items() -> List[FakeItem]:
    return [FakeItem(id=f"m{i}", ts=local_ms(2025, 3, 3, 9 + i), text=f"message {i}") for i in range(3)]
