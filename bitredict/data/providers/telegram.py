"""Operator alerts over the Telegram Bot API."""

from __future__ import annotations

import asyncio
import html
import json
import re

from bitredict.core.http import backoff_delay, request_with_retries, telegram_client

RETRYABLE_CODES = {429, 500, 502, 503, 504}
MAX_ATTEMPTS = 4
BACKOFF_BASE = 0.6
BACKOFF_CAP = 8.0
MAX_TEXT = 4000

_TAG_RE = re.compile(r"<[^>]+>")


def _retry_after(data: dict) -> float | None:
    raw = (data.get("parameters") or {}).get("retry_after")
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    return value if value > 0 else None


def _markup_rejected(data: dict) -> bool:
    return int(data.get("error_code") or 0) == 400 and "parse entities" in str(data.get("description") or "").lower()


def plain_text(text: str) -> str:
    return html.unescape(_TAG_RE.sub("", text))


def format_alert(kind: str, entity: str, details: dict) -> str:
    lines = [f"<b>{html.escape(kind)}</b> {html.escape(entity)}"]
    for key, value in details.items():
        if not isinstance(value, str):
            value = json.dumps(value, default=str, sort_keys=True)
        lines.append(f"{html.escape(str(key))}: <code>{html.escape(value)}</code>")
    return "\n".join(lines)[:MAX_TEXT]


async def send_message(chat_id: int, text: str, *, parse_mode: str | None = "HTML") -> int:
    """Send ``text`` and return the message id.

    Telegram-level 429/5xx answers are retried with backoff (honouring
    ``retry_after``). If the HTML markup is rejected, the message is resent
    once as plain text so an alert is never lost to formatting.
    """
    client = telegram_client()
    payload = {"chat_id": chat_id, "text": text, "disable_web_page_preview": True}
    if parse_mode:
        payload["parse_mode"] = parse_mode

    attempt = 0
    while True:
        resp = await request_with_retries(client, "POST", "/sendMessage", json=payload)
        data = resp.json()
        if not isinstance(data, dict):
            raise RuntimeError(f"Telegram sendMessage returned non-object: {str(data)[:200]}")
        if data.get("ok"):
            msg_id = (data.get("result") or {}).get("message_id")
            if not msg_id:
                raise RuntimeError("Telegram sendMessage missing message_id")
            return int(msg_id)

        if "parse_mode" in payload and _markup_rejected(data):
            payload.pop("parse_mode")
            payload["text"] = plain_text(payload["text"])
            continue
        attempt += 1
        if int(data.get("error_code") or 0) in RETRYABLE_CODES and attempt < MAX_ATTEMPTS:
            await asyncio.sleep(backoff_delay(attempt - 1, BACKOFF_BASE, BACKOFF_CAP, _retry_after(data)))
            continue
        raise RuntimeError(f"Telegram sendMessage failed: {json.dumps(data)[:500]}")
