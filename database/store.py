import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from dotenv import load_dotenv
from supabase import Client, create_client

from harvester.models import HarvestResult, Record

load_dotenv()

logger = logging.getLogger(__name__)

_client: Optional[Client] = None


def get_client() -> Client:
    global _client
    if _client is None:
        url = os.environ.get("SUPABASE_URL")
        key = os.environ.get("SUPABASE_KEY")
        if not url or not key:
            raise RuntimeError("SUPABASE_URL or SUPABASE_KEY is missing, check your .env")
        _client = create_client(url, key)
    return _client


def _chunk(items: List[Dict[str, Any]], size: int = 200) -> Iterable[List[Dict[str, Any]]]:
    for idx in range(0, len(items), size):
        yield items[idx : idx + size]


def _read_json(path: str) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def load_export(run_dir: str) -> HarvestResult:
    """Read back the messages.json / meta.json pair the CLI writes."""
    messages_path = os.path.join(run_dir, "messages.json")
    meta_path = os.path.join(run_dir, "meta.json")
    if not os.path.exists(messages_path):
        raise RuntimeError(f"{messages_path} not found")
    messages = [Record.from_dict(m) for m in _read_json(messages_path) or []]
    meta = _read_json(meta_path) if os.path.exists(meta_path) else {}
    return HarvestResult(messages=messages, meta=meta or {})


def message_row(export_id: Any, position: int, record: Record) -> Dict[str, Any]:
    """Flatten one record into a `chat_messages` row; nested parts stay as JSON."""
    data = record.to_dict()
    return {
        "export_id": export_id,
        "message_id": record.id,
        "position": position,
        "thread_id": record.thread_id,
        "author": record.author,
        "timestamp": record.timestamp or None,
        "text": record.text,
        "edited": bool(record.edited),
        "system": bool(record.system),
        "avatar": record.avatar,
        "reactions": data.get("reactions") or [],
        "attachments": data.get("attachments") or [],
        "tables": data.get("tables") or [],
        "reply_to": data.get("reply_to"),
    }


def save_harvest(result: HarvestResult, url: str, client: Optional[Client] = None) -> Any:
    """
    Store one harvest: a `chat_exports` row keyed by (url, start_at, end_at)
    and its messages in `chat_messages`, upserted in chunks.
    """
    client = client or get_client()
    meta = result.meta or {}
    export_payload = {
        "url": url,
        "title": meta.get("title"),
        "start_at": meta.get("start_at") or "",
        "end_at": meta.get("end_at") or "",
        "message_count": len(result.messages),
        "meta": meta,
        "captured_at": datetime.now(timezone.utc).isoformat(),
    }
    client.table("chat_exports").upsert(export_payload, on_conflict="url,start_at,end_at").execute()
    res = (
        client.table("chat_exports")
        .select("id")
        .eq("url", url)
        .eq("start_at", export_payload["start_at"])
        .eq("end_at", export_payload["end_at"])
        .limit(1)
        .execute()
    )
    if not res.data:
        raise RuntimeError(f"chat_exports upsert ok but cannot re-select id for url={url}")
    export_id = res.data[0]["id"]

    rows = [message_row(export_id, i, r) for i, r in enumerate(result.messages) if r.id]
    for chunk in _chunk(rows):
        client.table("chat_messages").upsert(chunk, on_conflict="export_id,message_id").execute()

    logger.info(f"💾 saved export {export_id}: {len(rows)} messages")
    return export_id
