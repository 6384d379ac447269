#!/usr/bin/env python3
import argparse
import asyncio
import json
import os
import signal
from typing import List, Optional

from database.store import save_harvest
from harvester.models import HarvestResult, ProgressEvent
from scraper.config import build_options, get_config, setup_logging
from scraper.fetcher import fetch_conversation


def _fail(message: str) -> None:
    print(f"FAIL: {message}")
    raise SystemExit(1)


def print_progress(event: ProgressEvent) -> None:
    if event.phase == "extract":
        print(f"🧩 finalized {event.aggregate_size} records")
        return
    if event.passes % 10 == 0:
        print(
            f"  [{event.phase}] pass={event.passes} visible={event.visible_count} "
            f"seen={event.aggregate_size} in_window={event.filtered_seen} loading={event.loading}"
        )


def write_outputs(result: HarvestResult, out_dir: str) -> str:
    os.makedirs(out_dir, exist_ok=True)
    with open(os.path.join(out_dir, "messages.json"), "w", encoding="utf-8") as f:
        json.dump([m.to_dict() for m in result.messages], f, ensure_ascii=False, indent=2)
    with open(os.path.join(out_dir, "meta.json"), "w", encoding="utf-8") as f:
        json.dump(result.meta, f, ensure_ascii=False, indent=2)
    return out_dir


def print_summary(result: HarvestResult) -> None:
    meta = result.meta
    print("\n===== Harvest =====")
    print("Title:", meta.get("title") or "-")
    print("Window:", meta.get("start_at") or "-", "->", meta.get("end_at") or "-")
    print("Records:", meta.get("count"))
    print("Passes:", meta.get("passes"), f"({meta.get('stop_reason')})")
    print("Threads opened:", meta.get("threads_opened"), "failed:", meta.get("threads_failed"))
    if meta.get("extraction_errors"):
        print("Extraction errors:", meta.get("extraction_errors"))
    if meta.get("hydration_pending"):
        print("Still placeholders after hydration:", meta.get("hydration_pending"))
    print("===================")
    for msg in result.messages[:5]:
        print(f"- {msg.timestamp or '?'} {msg.author or '?'}: {(msg.text or '')[:80]}")


async def run_pipeline(args: argparse.Namespace) -> HarvestResult:
    config = get_config()
    if args.headless:
        config.headless = True
    if args.max_passes is not None:
        config.max_passes = args.max_passes

    try:
        options = build_options(
            start_at=args.start,
            end_at=args.end,
            target=args.target,
            include_replies=not args.no_replies,
            include_reactions=not args.no_reactions,
            include_system=args.include_system,
        )
    except ValueError as e:
        _fail(str(e))

    cancel = asyncio.Event()
    try:
        asyncio.get_running_loop().add_signal_handler(signal.SIGINT, cancel.set)
    except NotImplementedError:
        pass

    print("\n🚀 Harvest started.")
    return await fetch_conversation(args.url, options, config, progress=print_progress, cancel=cancel)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Export a Microsoft Teams chat or channel to JSON")
    parser.add_argument("url", nargs="?", default=None, help="Teams conversation URL (default: TEAMS_HARVEST_URL)")
    parser.add_argument("--target", choices=["chat", "team"], default="chat", help="Conversation kind")
    parser.add_argument("--start", default=None, help="Window start (ISO date/time, inclusive)")
    parser.add_argument("--end", default=None, help="Window end (ISO date/time, exclusive)")
    parser.add_argument("--no-replies", action="store_true", help="Skip channel reply threads")
    parser.add_argument("--no-reactions", action="store_true", help="Skip reactions")
    parser.add_argument("--include-system", action="store_true", help="Keep system messages and day dividers")
    parser.add_argument("--headless", action="store_true", help="Run browser headless")
    parser.add_argument("--max-passes", type=int, default=None, help="Hard cap on scroll passes")
    parser.add_argument("--out", default="out", help="Directory for messages.json and meta.json")
    parser.add_argument("--save", action="store_true", help="Also store the harvest in Supabase")
    args = parser.parse_args(argv)

    setup_logging(get_config().debug)
    result = asyncio.run(run_pipeline(args))
    out_dir = write_outputs(result, args.out)
    print_summary(result)
    print(f"📁 wrote {out_dir}/messages.json and meta.json")

    if args.save:
        export_id = save_harvest(result, args.url or get_config().url)
        print("💾 Saved to DB, id =", export_id)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
