"""
Capability interfaces between the harvesting engine and a live list surface.

The engine never touches a browser directly. A surface hands out opaque
items, reports scroll geometry and moves the viewport; an extractor turns an
item into an AggregatedEntry; a thread host opens and closes the nested reply
pane. Playwright-backed implementations live in scraper/fetcher.py and the
in-memory fakes used by the tests live in tests/conftest.py.
"""
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Protocol, Tuple, Union
import asyncio

from harvester.models import AggregatedEntry, ScrapeOptions, SessionContext

Predicate = Callable[[], Union[bool, Awaitable[bool]]]


@dataclass
class ScrollMetrics:
    top: float
    height: float
    client_height: float
    header_visible: bool = False

    @property
    def at_top(self) -> bool:
        return self.top <= 2 or self.header_visible


@dataclass
class ItemProbe:
    """What the live item shows, independent of what was extracted from it."""

    reaction_pills: bool = False
    pending_previews: bool = False


class PollingWaitMixin:
    """
    wait_for_condition on top of the implementer's own sleep(). The timeout is
    a budget of slept time, so a fake clock that never sleeps still expires.
    """

    async def sleep(self, ms: float) -> None:
        await asyncio.sleep(ms / 1000)

    async def wait_for_condition(self, predicate: Predicate, timeout_ms: float, interval_ms: float = 120) -> bool:
        waited = 0.0
        while True:
            result = predicate()
            if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
                result = await result
            if result:
                return True
            if waited >= timeout_ms:
                return False
            await self.sleep(interval_ms)
            waited += interval_ms


class ScrollSurface(Protocol):
    has_loading_signal: bool

    async def get_container(self) -> Optional[Any]: ...

    async def get_items(self) -> List[Any]: ...

    async def metrics(self) -> ScrollMetrics: ...

    async def scroll_by(self, delta: float) -> None: ...

    async def scroll_to_top(self) -> None: ...

    async def scroll_to_bottom(self) -> None: ...

    async def is_loading(self) -> bool: ...

    async def reveal_hidden_history(self) -> int: ...

    async def find_item(self, item_id: str) -> Optional[Any]: ...

    async def sleep(self, ms: float) -> None: ...

    async def wait_for_condition(self, predicate: Predicate, timeout_ms: float, interval_ms: float = 120) -> bool: ...


class ThreadHost(Protocol):
    async def find_replies_affordance(self, parent_id: str, item: Any = None) -> Optional[Any]: ...

    async def scroll_into_view(self, parent_id: str) -> bool: ...

    async def dispatch_synthetic_activate(self, target: Any) -> None: ...

    async def thread_pane_present(self) -> bool: ...

    async def thread_pane_matches(self, parent_id: str) -> bool: ...

    def thread_surface(self) -> ScrollSurface: ...

    async def click_close_affordance(self) -> bool: ...

    async def send_cancel_key(self) -> None: ...

    async def sleep(self, ms: float) -> None: ...

    async def wait_for_condition(self, predicate: Predicate, timeout_ms: float, interval_ms: float = 120) -> bool: ...


class ItemExtractor(Protocol):
    def item_id(self, item: Any, index: int) -> str: ...

    def item_time_ms(self, item: Any) -> Optional[float]: ...

    async def extract(self, item: Any, options: ScrapeOptions, context: SessionContext) -> Optional[AggregatedEntry]: ...

    def probe(self, item: Any) -> ItemProbe: ...

    def thread_ids(self, item: Any) -> Tuple[Optional[str], Optional[str]]: ...

    def has_replies_affordance(self, item: Any) -> bool: ...
