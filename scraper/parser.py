"""
BeautifulSoup extractor for Teams chat / channel list items.

The fetcher snapshots each visible list item's outerHTML into a DomItem; all
parsing here is done on that snapshot, so the same code runs against a live
page and against HTML fixtures.
"""
from dataclasses import dataclass, field
import logging
import re
from typing import List, Optional, Tuple

from bs4 import BeautifulSoup, Tag

from harvester.hydrator import is_placeholder_text
from harvester.models import (
    AggregatedEntry,
    Attachment,
    EntryKind,
    ParentSnapshot,
    Reaction,
    Record,
    ScrapeOptions,
    SessionContext,
)
from harvester.surface import ItemProbe
from harvester.timeparse import (
    epoch_from_id,
    parse_control_timestamp,
    parse_date_divider_text,
    parse_timestamp,
    to_iso,
    year_of,
)

logger = logging.getLogger(__name__)

MESSAGE_SELECTOR = (
    '[data-tid="chat-pane-message"], [data-tid="channel-pane-message"], '
    '[data-tid="channel-replies-pane-message"]'
)
CONTROL_SELECTOR = '[data-tid="control-message-renderer"]'
DIVIDER_SELECTOR = '.fui-Divider__wrapper, [data-testid="timestamp-divider"]'
AUTHOR_SELECTOR = '[data-tid="message-author-name"], [id^="author-"]'
CONTENT_SELECTOR = '[id^="content-"], [data-tid="message-body-content"], [data-tid="message-content"]'
QUOTED_SELECTOR = '[data-tid="quoted-reply-card"], [data-tid="referencePreview"]'
REACTION_SELECTOR = '[data-tid="diverse-reaction-pill-button"]'
PREVIEW_SELECTOR = '[data-tid="file-preview-root"][amspreviewurl]'
PREVIEW_IMAGE_SELECTOR = 'img[data-tid="rich-file-preview-image"]'
REPLIES_BUTTON_SELECTOR = '[data-tid="response-surface"] button[data-tid="response-summary-button"]'
SUMMARY_ID = re.compile(r"^response-summary-(.+)$")
COUNT_PATTERN = re.compile(r"(\d+)")

# strings that show up as the whole title of a Teams tab
TITLE_SUFFIX = re.compile(r"\s*\|\s*Microsoft Teams\s*$")
TITLE_BADGE = re.compile(r"^\(\d+\)\s*")


@dataclass
class DomItem:
    html: str
    _soup: Optional[BeautifulSoup] = field(default=None, repr=False, compare=False)

    @property
    def soup(self) -> BeautifulSoup:
        if self._soup is None:
            self._soup = BeautifulSoup(self.html or "", "html.parser")
        return self._soup

    @property
    def root(self) -> Optional[Tag]:
        for child in self.soup.children:
            if isinstance(child, Tag):
                return child
        return None


def _text(node: Optional[Tag]) -> str:
    if node is None:
        return ""
    return " ".join(node.get_text(" ", strip=True).split())


def _attr(node: Optional[Tag], name: str) -> Optional[str]:
    if node is None:
        return None
    value = node.get(name)
    if isinstance(value, list):
        value = " ".join(value)
    return value or None


def _find(item: DomItem, selector: str) -> Optional[Tag]:
    # the document node sees the snapshot root itself as a descendant
    return item.soup.select_one(selector)


def _mid(item: DomItem) -> Optional[str]:
    for selector in (MESSAGE_SELECTOR, CONTROL_SELECTOR):
        node = _find(item, selector)
        mid = _attr(node, "data-mid")
        if mid:
            return mid
    wrapper = item.soup.select_one('[data-testid="message-body-flex-wrapper"][data-mid]')
    if wrapper is not None:
        return _attr(wrapper, "data-mid")
    node = _find(item, "[data-mid]")
    return _attr(node, "data-mid")


def stable_item_id(item: DomItem) -> Optional[str]:
    mid = _mid(item)
    if mid:
        return mid
    divider = item.soup.select_one(".fui-Divider__wrapper")
    if _attr(divider, "id"):
        return _attr(divider, "id")
    return _attr(item.root, "id") or None


def resolve_item_id(item: DomItem, index: int) -> str:
    return stable_item_id(item) or f"node-{index}"


def resolve_timestamp(item: DomItem) -> str:
    node = item.soup.select_one("time[datetime]") or item.soup.select_one("time")
    if node is None:
        return ""
    return _attr(node, "datetime") or _attr(node, "title") or _attr(node, "aria-label") or _text(node)


def resolve_author(body: Tag, last_author: str = "") -> str:
    return _text(body.select_one(AUTHOR_SELECTOR)) or last_author or ""


def resolve_edited(body: Tag) -> bool:
    badge = body.select_one('[id^="edited-"]')
    if badge is None:
        return False
    label = _text(badge) or _attr(badge, "title") or ""
    return bool(re.match(r"^edited\b", label, re.IGNORECASE))


def resolve_avatar(body: Tag) -> Optional[str]:
    img = body.select_one('[data-tid="message-avatar"] img[src], img[data-tid="avatar-image"][src]')
    return _attr(img, "src")


def chain_id_of(item: DomItem) -> Optional[str]:
    node = _find(item, "[data-reply-chain-id]")
    return _attr(node, "data-reply-chain-id")


def derive_parent_id(item: DomItem) -> Optional[str]:
    wrapper = item.soup.select_one('[data-testid="message-body-flex-wrapper"][data-mid]')
    mid = _attr(wrapper, "data-mid") or _attr(_find(item, "[data-mid]"), "data-mid")
    if mid:
        return mid
    button = item.soup.select_one('[data-tid="response-summary-button"][id^="response-summary-"]')
    m = SUMMARY_ID.match(_attr(button, "id") or "")
    return m.group(1) if m else None


def extract_reply_context(body: Tag) -> Optional[ParentSnapshot]:
    card = body.select_one(QUOTED_SELECTOR)
    if card is None:
        return None
    author = _text(card.select_one('[data-tid="quoted-reply-author"], [data-tid="message-author-name"]'))
    timestamp = _attr(card.select_one("time[datetime]"), "datetime") or _text(card.select_one("time"))
    text = _text(card.select_one('[data-tid="quoted-reply-preview-content"]')) or _text(card)
    if not (author or timestamp or text):
        return None
    return ParentSnapshot(author=author, timestamp=timestamp, text=text, id=_attr(card, "data-mid"))


def extract_reactions(body: Tag) -> List[Reaction]:
    reactions = []
    for pill in body.select(REACTION_SELECTOR):
        img = pill.select_one("img[alt]")
        emoji = (_attr(img, "alt") or "").strip()
        label = _text(pill)
        m = COUNT_PATTERN.search(label)
        count = int(m.group(1)) if m else 1
        if not emoji:
            emoji = COUNT_PATTERN.sub("", label).strip()
        reactions.append(Reaction(emoji=emoji, count=count))
    return reactions


def extract_attachments(body: Tag) -> List[Attachment]:
    attachments = []
    for root in body.select(PREVIEW_SELECTOR):
        img = root.select_one(PREVIEW_IMAGE_SELECTOR)
        attachments.append(
            Attachment(
                href=_attr(root, "amspreviewurl"),
                label=_attr(root, "aria-label") or _attr(root, "title"),
                type="image",
                preview_url=_attr(root, "amspreviewurl"),
                preview_loaded=bool(_attr(img, "src")),
            )
        )
    for link in body.select('a[data-tid="file-attachment"][href], [data-tid="file-chiclet"] a[href]'):
        attachments.append(Attachment(href=_attr(link, "href"), label=_text(link) or None, type="file"))
    return attachments


def extract_tables(content: Tag) -> List[List[List[str]]]:
    tables = []
    for table in content.select("table"):
        rows = [[_text(cell) for cell in tr.select("th, td")] for tr in table.select("tr")]
        rows = [r for r in rows if any(r)]
        if rows:
            tables.append(rows)
    return tables


def extract_body_text(content: Optional[Tag]) -> str:
    """Message text without quoted previews, tables or UI chrome, one line per block."""
    if content is None:
        return ""
    clone = BeautifulSoup(str(content), "html.parser")
    for el in clone.select(f"{QUOTED_SELECTOR}, table, button, [role='button'], [aria-hidden='true']"):
        el.extract()
    for br in clone.select("br"):
        br.replace_with("\n")
    lines = []
    for line in clone.get_text("\n").split("\n"):
        clean = " ".join(line.split())
        if clean:
            lines.append(clean)
    return "\n".join(lines)


class TeamsItemExtractor:
    """Turns one DomItem into an AggregatedEntry."""

    def item_id(self, item: DomItem, index: int) -> str:
        return resolve_item_id(item, index)

    def item_time_ms(self, item: DomItem) -> Optional[float]:
        return parse_timestamp(_attr(item.soup.select_one("time[datetime]"), "datetime"))

    def probe(self, item: DomItem) -> ItemProbe:
        pending = False
        for root in item.soup.select(PREVIEW_SELECTOR):
            if not _attr(root.select_one(PREVIEW_IMAGE_SELECTOR), "src"):
                pending = True
                break
        return ItemProbe(
            reaction_pills=item.soup.select_one(REACTION_SELECTOR) is not None,
            pending_previews=pending,
        )

    def thread_ids(self, item: DomItem) -> Tuple[Optional[str], Optional[str]]:
        return chain_id_of(item), derive_parent_id(item)

    def has_replies_affordance(self, item: DomItem) -> bool:
        return item.soup.select_one(REPLIES_BUTTON_SELECTOR) is not None

    async def extract(self, item: DomItem, options: ScrapeOptions, context: SessionContext) -> Optional[AggregatedEntry]:
        return self.parse(item, options, context)

    def parse(self, item: DomItem, options: ScrapeOptions, context: SessionContext) -> Optional[AggregatedEntry]:
        if item.root is None:
            return None
        message = _find(item, MESSAGE_SELECTOR)
        if message is None:
            control = _find(item, CONTROL_SELECTOR)
            divider = _find(item, DIVIDER_SELECTOR)
            if control is None and divider is None:
                return None
            return self._parse_control(item, control, divider, context)
        return self._parse_message(item, message, options, context)

    def _parse_control(
        self, item: DomItem, control: Optional[Tag], divider: Optional[Tag], context: SessionContext
    ) -> AggregatedEntry:
        wrapper = control or divider
        text = _text(wrapper) or _text(item.root) or "system"

        if control is None:
            day_ms = parse_date_divider_text(text, context.year_hint)
            if day_ms is not None:
                return AggregatedEntry(order_key=day_ms, time_ms=day_ms, kind=EntryKind.DAY_DIVIDER, time_label=text)

        mid = stable_item_id(item)
        parsed = parse_date_divider_text(text, context.year_hint)
        if parsed is None:
            parsed = parse_control_timestamp(text, context.year_hint)

        cursor = context.system_cursor
        if parsed is not None:
            approx = parsed
        elif epoch_from_id(mid) is not None:
            approx = epoch_from_id(mid)
        elif context.last_time_ms is not None:
            approx = context.last_time_ms - 1
        else:
            approx = cursor
        context.system_cursor = cursor + 1

        if parsed is not None:
            context.last_time_ms = parsed
            context.year_hint = year_of(parsed)

        record = Record(
            id=mid or text.lower(),
            author="[system]",
            timestamp="",
            text=text,
            system=True,
            reactions=[],
            attachments=[],
        )
        return AggregatedEntry(order_key=approx, time_ms=approx, kind=EntryKind.SYSTEM_CONTROL, record=record)

    def _parse_message(
        self, item: DomItem, body: Tag, options: ScrapeOptions, context: SessionContext
    ) -> AggregatedEntry:
        mid = _mid(item) or _attr(item.root, "id") or ""
        if not mid:
            logger.warning(f"message without data-mid: {item.html[:200]!r}")

        ts = resolve_timestamp(item)
        tms = parse_timestamp(ts)
        if tms is None and epoch_from_id(mid) is not None:
            tms = epoch_from_id(mid)
            ts = to_iso(tms)

        author = resolve_author(body, context.last_author)
        if author:
            context.last_author = author

        content = body.select_one(CONTENT_SELECTOR) or body
        text = extract_body_text(content)
        subject = _text(item.soup.select_one('[data-tid="subject-line"]'))
        if subject and not " ".join(text.split()).startswith(subject):
            text = f"{subject}\n\n{text}" if text else subject
        if is_placeholder_text(text):
            text = _text(content)

        chain_id = chain_id_of(item)
        reply_to = extract_reply_context(body) if options.include_replies else None
        if reply_to is None and options.include_replies and chain_id and chain_id != mid:
            reply_to = ParentSnapshot(id=chain_id)

        if tms is not None:
            context.last_time_ms = tms
            context.year_hint = year_of(tms)

        record = Record(
            id=mid or f"{ts}#{author}",
            thread_id=chain_id or mid or None,
            author=author,
            timestamp=ts,
            text=text,
            edited=resolve_edited(body),
            system=False,
            avatar=resolve_avatar(body),
            reactions=extract_reactions(item.soup) if options.include_reactions else [],
            attachments=extract_attachments(item.soup),
            tables=extract_tables(content),
            reply_to=reply_to,
        )
        order_key = tms if tms is not None else context.next_sequence_key()
        context.last_record_id = record.id
        return AggregatedEntry(order_key=order_key, time_ms=tms, kind=EntryKind.MESSAGE, record=record)


def clean_document_title(title: str) -> str:
    title = TITLE_BADGE.sub("", title or "")
    title = TITLE_SUFFIX.sub("", title)
    parts = [p.strip() for p in title.split("|")]
    if parts and parts[0]:
        return parts[0]
    return title.strip()


def extract_conversation_title(html: str, target: str = "chat", document_title: str = "") -> str:
    """Chat or channel name shown in the header, else the cleaned tab title."""
    soup = BeautifulSoup(html or "", "html.parser")
    if target == "team":
        for selector in ('[data-tid="channel-name"]', '[data-tid="channel-header-title"]', 'h2[id^="channel-title"]'):
            name = _text(soup.select_one(selector))
            if name:
                return name
    else:
        for header in soup.select('[id^="chat-header-"]'):
            h2 = header.select_one("h2")
            if h2 is None:
                continue
            for span in h2.select("span"):
                name = _text(span)
                if name:
                    return name
            if _text(h2):
                return _text(h2)
        for topic in soup.select('[id^="chat-topic-person-"]'):
            name = _text(topic)
            if name:
                return name
    if not document_title:
        document_title = _text(soup.select_one("title"))
    cleaned = clean_document_title(document_title)
    return cleaned or ("Teams Channel Export" if target == "team" else "Teams Chat Export")
