#!/usr/bin/env python3
import argparse
import asyncio
import os
import sys

ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

from playwright.async_api import async_playwright

from scraper.config import get_config


async def save_login_state(url: str, auth_file: str) -> None:
    async with async_playwright() as p:
        browser = await p.chromium.launch(headless=False)
        context = await browser.new_context()
        page = await context.new_page()
        await page.goto(url, timeout=60000)
        print("🔐 Sign in to Teams in the opened window, then press Enter here.")
        await asyncio.get_running_loop().run_in_executor(None, input)
        await context.storage_state(path=auth_file)
        await browser.close()


def main() -> int:
    config = get_config()
    parser = argparse.ArgumentParser(description="Save a Teams login as a Playwright storage-state file")
    parser.add_argument("--url", default=config.url, help="Teams start URL")
    parser.add_argument("--out", default=config.auth_file, help="Storage-state file to write")
    args = parser.parse_args()

    asyncio.run(save_login_state(args.url, args.out))
    print(f"OK: login state saved to {args.out}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
