#!/usr/bin/env python3
import argparse
import os
import sys

ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

from database.store import load_export, save_harvest


def _fail(message: str) -> None:
    print(f"FAIL: {message}")
    raise SystemExit(1)


def main() -> int:
    parser = argparse.ArgumentParser(description="Ingest a saved Teams export directory into Supabase")
    parser.add_argument("run_dir", help="Directory holding messages.json and meta.json")
    parser.add_argument("--url", required=True, help="Conversation URL the export came from")
    args = parser.parse_args()

    if not os.environ.get("SUPABASE_URL") or not os.environ.get("SUPABASE_KEY"):
        _fail("SUPABASE_URL or SUPABASE_KEY is missing in env")

    try:
        result = load_export(args.run_dir)
    except RuntimeError as e:
        _fail(str(e))

    export_id = save_harvest(result, args.url)
    print(f"OK: ingest export_id={export_id} messages={len(result.messages)} run_dir={args.run_dir}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
