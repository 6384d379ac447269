from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional
import time


class HarvestError(RuntimeError):
    pass


class ScrollerNotFoundError(HarvestError):
    """No scrollable surface at session start; nothing can be harvested."""


class EntryKind(str, Enum):
    MESSAGE = "message"
    SYSTEM_CONTROL = "system-control"
    DAY_DIVIDER = "day-divider"


@dataclass
class Reaction:
    emoji: str
    count: int = 0
    reactors: List[str] = field(default_factory=list)


@dataclass
class Attachment:
    href: Optional[str] = None
    label: Optional[str] = None
    type: Optional[str] = None
    preview_url: Optional[str] = None
    preview_loaded: bool = True


@dataclass
class ParentSnapshot:
    """Minimal copy of a message: reply preview and fuzzy-match key."""

    author: str = ""
    timestamp: str = ""
    text: str = ""
    id: Optional[str] = None


@dataclass
class Record:
    id: Optional[str] = None
    thread_id: Optional[str] = None
    author: str = ""
    timestamp: str = ""
    text: str = ""
    edited: bool = False
    system: bool = False
    avatar: Optional[str] = None
    reactions: Optional[List[Reaction]] = None
    attachments: Optional[List[Attachment]] = None
    tables: Optional[List[List[List[str]]]] = None
    reply_to: Optional[ParentSnapshot] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Record":
        data = dict(data)
        if data.get("reactions") is not None:
            data["reactions"] = [Reaction(**r) for r in data["reactions"]]
        if data.get("attachments") is not None:
            data["attachments"] = [Attachment(**a) for a in data["attachments"]]
        if data.get("reply_to") is not None:
            data["reply_to"] = ParentSnapshot(**data["reply_to"])
        return cls(**data)


@dataclass
class AggregatedEntry:
    order_key: float
    time_ms: Optional[float]
    kind: EntryKind = EntryKind.MESSAGE
    record: Optional[Record] = None
    anchor_time_ms: Optional[float] = None
    time_label: Optional[str] = None


@dataclass
class SessionContext:
    """Rolling state for one Driver run (main session or one thread)."""

    last_time_ms: Optional[float] = None
    year_hint: Optional[int] = None
    sequence_base: float = field(default_factory=lambda: time.time() * 1000)
    sequence_counter: int = 0
    last_author: str = ""
    last_record_id: Optional[str] = None
    system_cursor: float = -9e15

    def next_sequence_key(self) -> float:
        key = self.sequence_base + self.sequence_counter
        self.sequence_counter += 1
        return key


@dataclass
class ScrapeOptions:
    start_at: Optional[str] = None
    end_at: Optional[str] = None
    include_replies: bool = True
    include_reactions: bool = True
    include_system: bool = False
    export_target: str = "chat"


@dataclass
class Tuning:
    dwell_ms: int = 700
    max_stagnant_passes: Optional[int] = None
    max_stagnant_passes_at_top: Optional[int] = None
    loading_stall_passes: int = 6
    loading_extra_delay_ms: int = 350
    max_passes: int = 2000

    def stagnant_limits(self, has_loading_signal: bool):
        mid = self.max_stagnant_passes
        top = self.max_stagnant_passes_at_top
        if mid is None:
            mid = 20 if has_loading_signal else 12
        if top is None:
            top = 6 if has_loading_signal else 3
        return mid, top


CHAT_TUNING = Tuning()
TEAM_TUNING = Tuning(
    dwell_ms=800,
    max_stagnant_passes=30,
    max_stagnant_passes_at_top=35,
    loading_stall_passes=20,
    loading_extra_delay_ms=700,
)
THREAD_TUNING = Tuning(
    dwell_ms=350,
    max_stagnant_passes=6,
    max_stagnant_passes_at_top=3,
    loading_stall_passes=3,
    loading_extra_delay_ms=150,
    max_passes=200,
)


def tuning_for_target(target: str) -> Tuning:
    return TEAM_TUNING if target == "team" else CHAT_TUNING


@dataclass
class ProgressEvent:
    phase: str
    passes: int = 0
    visible_count: int = 0
    aggregate_size: int = 0
    filtered_seen: int = 0
    elapsed_ms: Optional[int] = None
    loading: bool = False
    oldest_id: Optional[str] = None


@dataclass
class HarvestResult:
    messages: List[Record]
    meta: Dict[str, Any] = field(default_factory=dict)
