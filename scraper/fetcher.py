import asyncio
import logging
import os
from typing import Any, List, Optional

from playwright.async_api import ElementHandle, Page, async_playwright

from harvester.models import HarvestError, HarvestResult, ScrapeOptions
from harvester.scroller import ProgressSink
from harvester.session import harvest
from harvester.surface import PollingWaitMixin, ScrollMetrics
from scraper.config import Config, get_config
from scraper.parser import DomItem, TeamsItemExtractor, extract_conversation_title

logger = logging.getLogger(__name__)

FIND_SCROLLABLE_JS = """
const findScrollable = (node) => {
  let cur = node;
  while (cur) {
    const s = window.getComputedStyle(cur);
    if (['auto', 'scroll', 'overlay'].includes(s.overflowY) && cur.scrollHeight > cur.clientHeight) return cur;
    cur = cur.parentElement;
  }
  return null;
};
const isVisible = (el) => {
  if (!el) return false;
  const s = window.getComputedStyle(el);
  if (s.display === 'none' || s.visibility === 'hidden') return false;
  const r = el.getBoundingClientRect();
  return r.width > 0 && r.height > 0;
};
const channelRunway = () => {
  const explicit = Array.from(document.querySelectorAll('[data-tid="channel-pane-runway"]'));
  if (explicit.length) return explicit.find(isVisible) || explicit[0];
  const candidates = Array.from(document.querySelectorAll('[id^="channel-pane-"]')).filter(el =>
    el.getAttribute('data-tid') !== 'channel-replies-runway' && el.id !== 'channel-pane-l2' &&
    el.querySelector('[data-tid="channel-pane-message"]'));
  return candidates.find(isVisible) || candidates[0] || null;
};
const repliesRunway = () =>
  document.querySelector('[data-tid="channel-replies-runway"]') || document.querySelector('#channel-pane-l2');
"""

SCROLLER_JS = {
    "chat": """
      document.querySelector('[data-tid="message-pane-list-viewport"]') ||
      document.querySelector('[data-tid="chat-message-list"]') ||
      null
    """,
    "team": """
      (() => {
        const viewport = document.querySelector('[data-tid="channel-pane-viewport"]');
        if (viewport && isVisible(viewport) && viewport.scrollHeight > viewport.clientHeight) return viewport;
        const runway = channelRunway();
        return runway ? (findScrollable(runway) || document.scrollingElement) : null;
      })()
    """,
    "thread": """
      (() => {
        const runway = repliesRunway();
        if (!runway) return null;
        return findScrollable(runway) ||
          findScrollable(document.querySelector('[data-tid*="channel-replies"]')) ||
          document.scrollingElement;
      })()
    """,
}

ITEMS_JS = {
    "chat": "Array.from(document.querySelectorAll('[data-tid=\"chat-pane-item\"]'))",
    "team": """
      (() => {
        const runway = channelRunway();
        if (!runway) return Array.from(document.querySelectorAll('[data-tid="channel-pane-message"]'));
        const direct = Array.from(runway.querySelectorAll(
          '[id^="message-body-"][aria-labelledby], [data-tid="control-message-renderer"], .fui-Divider__wrapper'));
        if (direct.length) return direct;
        return Array.from(runway.querySelectorAll('li[role="none"]')).filter(li =>
          li.querySelector('[data-tid="channel-pane-message"], [data-tid="control-message-renderer"], .fui-Divider__wrapper'));
      })()
    """,
    "thread": """
      (() => {
        const runway = repliesRunway();
        if (!runway) return [];
        const out = [];
        for (const li of runway.querySelectorAll('li')) {
          const node = li.querySelector('[data-tid="channel-replies-pane-message"]') ||
            li.querySelector('[data-testid="timestamp-divider"]');
          if (node) out.push(node);
        }
        return out;
      })()
    """,
}

ITEM_CONTAINER_JS = """
  (node) => node.closest('[data-tid="chat-pane-item"]') ||
    node.closest('[data-tid="channel-replies-pane-message"]') ||
    node.closest('[data-tid="channel-pane-message"]') ||
    node.closest('li[role="none"]') || node
"""

HIDDEN_HISTORY_SELECTOR = '[data-tid="show-hidden-chat-history-btn"]'
LOADER_SELECTOR = '[data-testid="virtual-list-loader"]'
HEADER_SELECTOR = '[data-tid="message-pane-header"]'

CLOSE_PANE_SELECTORS = [
    '[data-tid="close-l2-view-button"]',
    '[data-tid="channel-replies-header"] button[aria-label*="Back"]',
    '[data-tid="channel-replies-header"] button[aria-label*="Close"]',
    'button[aria-label^="Back"]',
    'button[aria-label*="Back to channel"]',
    '[data-tid="close-replies-button"]',
]

REAL_CLICK_JS = """
(el) => {
  try { el.scrollIntoView({ block: 'center' }); } catch (e) {}
  const opts = { bubbles: true, cancelable: true, composed: true, view: window };
  for (const type of ['pointerdown', 'mousedown', 'pointerup', 'mouseup', 'click']) {
    el.dispatchEvent(new MouseEvent(type, opts));
  }
}
"""

FIND_POST_JS = """
  const findPost = (id) => {
    const esc = CSS.escape(id);
    return document.querySelector(`#post-message-renderer-${esc}`) ||
      document.querySelector(`#message-body-${esc}`) ||
      document.querySelector(`[data-mid="${esc}"]`)?.closest('[id^="post-message-renderer-"], [id^="message-body-"]') ||
      null;
  };
"""


def _script(body: str, arg: bool = False) -> str:
    return ("(arg) => {" if arg else "() => {") + FIND_SCROLLABLE_JS + body + "}"


def _expr(snippet: str) -> str:
    # keeps `return` and the expression on one line
    return "(" + snippet.strip() + ")"


class PlaywrightListSurface(PollingWaitMixin):
    """One scrollable Teams list (chat pane, channel pane or replies pane)."""

    def __init__(self, page: Page, target: str = "chat"):
        if target not in SCROLLER_JS:
            raise ValueError(f"unknown surface target {target!r}")
        self.page = page
        self.target = target
        self.has_loading_signal = target in ("team", "thread")
        self._scroller = _expr(SCROLLER_JS[target])

    def _with_scroller(self, body: str, arg: bool = False) -> str:
        return _script(f"const el = {self._scroller}; if (!el) return null; {body}", arg=arg)

    async def sleep(self, ms: float) -> None:
        await self.page.wait_for_timeout(ms)

    async def get_container(self) -> Optional[ElementHandle]:
        handle = await self.page.evaluate_handle(_script(f"return {self._scroller};"))
        return handle.as_element()

    async def get_items(self) -> List[DomItem]:
        try:
            html = await self.page.evaluate(_script(f"return {_expr(ITEMS_JS[self.target])}.map(n => n.outerHTML);"))
        except Exception as e:
            logger.warning(f"[{self.target}] reading visible items failed: {e}")
            return []
        return [DomItem(h) for h in html or []]

    async def metrics(self) -> ScrollMetrics:
        data = await self.page.evaluate(
            self._with_scroller(
                f"""
                const header = document.querySelector('{HEADER_SELECTOR}');
                let headerVisible = false;
                if (header) {{
                  const a = header.getBoundingClientRect();
                  const b = el.getBoundingClientRect();
                  headerVisible = a.bottom > b.top && a.top < b.bottom && a.height > 0;
                }}
                return {{ top: el.scrollTop, height: el.scrollHeight, client: el.clientHeight, header: headerVisible }};
                """
            )
        )
        if not data:
            return ScrollMetrics(top=0, height=0, client_height=0)
        return ScrollMetrics(
            top=data["top"],
            height=data["height"],
            client_height=data["client"],
            header_visible=bool(data["header"]) and self.target == "chat",
        )

    async def scroll_by(self, delta: float) -> None:
        await self.page.evaluate(
            self._with_scroller(
                """
                el.scrollTop = Math.max(0, el.scrollTop + arg);
                el.dispatchEvent(new Event('scroll', { bubbles: true }));
                try { el.dispatchEvent(new WheelEvent('wheel', { deltaY: arg, deltaMode: 0, bubbles: true, cancelable: true })); } catch (e) {}
                return true;
                """,
                arg=True,
            ),
            delta,
        )
        await self.page.evaluate("() => new Promise(r => requestAnimationFrame(() => r(true)))")

    async def scroll_to_top(self) -> None:
        await self.page.evaluate(self._with_scroller("el.scrollTop = 0; return true;"))

    async def scroll_to_bottom(self) -> None:
        await self.page.evaluate(self._with_scroller("el.scrollTop = el.scrollHeight; return true;"))
        await self.page.evaluate("() => new Promise(r => requestAnimationFrame(() => r(true)))")

    async def is_loading(self) -> bool:
        return bool(
            await self.page.evaluate(
                _script(
                    f"""
                    const runway = {'repliesRunway()' if self.target == 'thread' else 'channelRunway()'};
                    const loader = runway?.parentElement?.querySelector('{LOADER_SELECTOR}') ||
                      runway?.querySelector('{LOADER_SELECTOR}') ||
                      document.querySelector('{LOADER_SELECTOR}');
                    if (!loader || loader.offsetParent === null) return false;
                    const r = loader.getBoundingClientRect();
                    return r.height >= 1 || r.width >= 1;
                    """
                )
            )
        )

    async def reveal_hidden_history(self) -> int:
        buttons = self.page.locator(HIDDEN_HISTORY_SELECTOR)
        clicked = 0
        for i in range(await buttons.count()):
            btn = buttons.nth(i)
            try:
                if not await btn.is_visible() or not await btn.is_enabled():
                    continue
                await btn.click(timeout=2000)
                clicked += 1
                await self.sleep(400)
            except Exception as e:
                logger.warning(f"hidden-history button click failed: {e}")
        return clicked

    async def find_item(self, item_id: str) -> Optional[DomItem]:
        html = await self.page.evaluate(
            f"""
            (id) => {{
              const node = document.querySelector(`[data-mid="${{CSS.escape(id)}}"]`);
              if (!node) return null;
              return ({ITEM_CONTAINER_JS})(node).outerHTML;
            }}
            """,
            item_id,
        )
        return DomItem(html) if html else None


class TeamsThreadHost(PollingWaitMixin):
    """Opens and closes the channel replies pane for one parent post at a time."""

    def __init__(self, page: Page):
        self.page = page
        self._surface = PlaywrightListSurface(page, "thread")

    async def sleep(self, ms: float) -> None:
        await self.page.wait_for_timeout(ms)

    def thread_surface(self) -> PlaywrightListSurface:
        return self._surface

    async def find_replies_affordance(self, parent_id: str, item: Any = None) -> Optional[ElementHandle]:
        handle = await self.page.evaluate_handle(
            f"""
            (id) => {{
              {FIND_POST_JS}
              const post = findPost(id);
              if (!post) return null;
              const surface = post.parentElement?.querySelector('[data-tid="response-surface"]') ||
                post.querySelector('[data-tid="response-surface"]');
              return surface?.querySelector('button[data-tid="response-summary-button"]') || null;
            }}
            """,
            parent_id,
        )
        return handle.as_element()

    async def scroll_into_view(self, parent_id: str) -> bool:
        found = await self.page.evaluate(
            f"""
            (id) => {{
              {FIND_POST_JS}
              const post = findPost(id);
              if (!post) return false;
              post.scrollIntoView({{ block: 'center' }});
              return true;
            }}
            """,
            parent_id,
        )
        await self.sleep(120)
        return bool(found)

    async def dispatch_synthetic_activate(self, target: ElementHandle) -> None:
        try:
            await target.evaluate(REAL_CLICK_JS)
        except Exception as e:
            logger.debug(f"synthetic activate failed: {e}")
        await self.sleep(80)

    async def thread_pane_present(self) -> bool:
        return bool(await self.page.evaluate(_script("return !!repliesRunway();")))

    async def thread_pane_matches(self, parent_id: str) -> bool:
        return bool(
            await self.page.evaluate(
                _script(
                    """
                    const runway = repliesRunway();
                    if (!runway) return false;
                    return !!runway.querySelector(`[data-reply-chain-id="${CSS.escape(arg)}"]`);
                    """,
                    arg=True,
                ),
                parent_id,
            )
        )

    async def click_close_affordance(self) -> bool:
        for selector in CLOSE_PANE_SELECTORS:
            btn = self.page.locator(selector).first
            try:
                if await btn.count() and await btn.is_visible():
                    await btn.click(timeout=2000)
                    return True
            except Exception as e:
                logger.debug(f"close affordance {selector} failed: {e}")
        return False

    async def send_cancel_key(self) -> None:
        try:
            await self.page.keyboard.press("Escape")
        except Exception as e:
            logger.debug(f"escape key failed: {e}")


async def fetch_conversation(
    url: Optional[str] = None,
    options: Optional[ScrapeOptions] = None,
    config: Optional[Config] = None,
    progress: Optional[ProgressSink] = None,
    cancel: Optional[asyncio.Event] = None,
) -> HarvestResult:
    """
    Open Teams with the saved login state, wait for the conversation and
    harvest it. The conversation must be the one the URL lands on.
    """
    config = config or get_config()
    options = options or ScrapeOptions()
    if not os.path.exists(config.auth_file):
        raise FileNotFoundError(f"missing {config.auth_file}, run scripts/save_login_state.py first")

    url = url or config.url
    target = options.export_target

    async with async_playwright() as p:
        browser = await p.chromium.launch(headless=config.headless)
        context = await browser.new_context(storage_state=config.auth_file)
        page = await context.new_page()
        try:
            logger.info(f"🕸️ loading {url}")
            response = await page.goto(url, timeout=60000, wait_until="load")
            if response is not None and not (200 <= response.status < 400):
                raise HarvestError(f"HTTP {response.status} for {url}")
            await page.wait_for_load_state("networkidle")
            await page.wait_for_timeout(3000)

            title = extract_conversation_title(await page.content(), target, await page.title())
            surface = PlaywrightListSurface(page, target)
            host = TeamsThreadHost(page) if target == "team" and options.include_replies else None
            return await harvest(
                surface,
                TeamsItemExtractor(),
                options,
                tuning=config.tuning_for(target),
                thread_host=host,
                progress=progress,
                cancel=cancel,
                title=title,
            )
        finally:
            await browser.close()
