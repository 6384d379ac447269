import logging
import os
from dataclasses import dataclass, replace
from typing import Optional, Tuple

from dotenv import load_dotenv

from harvester.models import ScrapeOptions, Tuning, tuning_for_target
from harvester.timeparse import parse_timestamp

load_dotenv()

DEFAULT_AUTH_FILE = "auth_teams.json"
DEFAULT_URL = "https://teams.microsoft.com/v2/"


@dataclass
class Config:
    auth_file: str = DEFAULT_AUTH_FILE
    url: str = DEFAULT_URL
    headless: bool = False
    debug: bool = False
    dwell_ms: Optional[int] = None
    max_passes: Optional[int] = None

    def tuning_for(self, target: str) -> Tuning:
        tuning = tuning_for_target(target)
        if self.dwell_ms is not None:
            tuning = replace(tuning, dwell_ms=self.dwell_ms)
        if self.max_passes is not None:
            tuning = replace(tuning, max_passes=self.max_passes)
        return tuning


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str) -> Optional[int]:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        logging.getLogger(__name__).warning(f"ignoring non-integer {name}={raw!r}")
        return None


def get_config() -> Config:
    return Config(
        auth_file=os.getenv("TEAMS_HARVEST_AUTH_FILE", DEFAULT_AUTH_FILE),
        url=os.getenv("TEAMS_HARVEST_URL", DEFAULT_URL),
        headless=_env_flag("TEAMS_HARVEST_HEADLESS"),
        debug=_env_flag("TEAMS_HARVEST_DEBUG"),
        dwell_ms=_env_int("TEAMS_HARVEST_DWELL_MS"),
        max_passes=_env_int("TEAMS_HARVEST_MAX_PASSES"),
    )


def setup_logging(debug: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def validate_range(start_at: Optional[str], end_at: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """Check a [start, end) window; raises ValueError with a user-facing message."""
    raw_start = (start_at or "").strip()
    raw_end = (end_at or "").strip()
    start_ms = parse_timestamp(raw_start) if raw_start else None
    if raw_start and start_ms is None:
        raise ValueError("Enter a valid start date/time.")
    end_ms = parse_timestamp(raw_end) if raw_end else None
    if raw_end and end_ms is None:
        raise ValueError("Enter a valid end date/time.")
    if start_ms is not None and end_ms is not None and start_ms > end_ms:
        raise ValueError("Start date must be before end date.")
    return (raw_start or None, raw_end or None)


def build_options(
    start_at: Optional[str] = None,
    end_at: Optional[str] = None,
    target: str = "chat",
    include_replies: bool = True,
    include_reactions: bool = True,
    include_system: bool = False,
) -> ScrapeOptions:
    if target not in ("chat", "team"):
        raise ValueError(f"unknown export target {target!r}")
    start, end = validate_range(start_at, end_at)
    return ScrapeOptions(
        start_at=start,
        end_at=end,
        include_replies=include_replies,
        include_reactions=include_reactions,
        include_system=include_system,
        export_target=target,
    )
