import asyncio

import pytest

from bitredict.data.providers import telegram
from bitredict.services import audit


class _Resp:
    def __init__(self, payload):
        self._payload = payload

    def json(self):
        return self._payload


def test_send_message_retries_on_429(monkeypatch):
    calls = []
    sleeps = []
    payloads = [
        {"ok": False, "error_code": 429, "description": "Too Many Requests", "parameters": {"retry_after": 0}},
        {"ok": True, "result": {"message_id": 101}},
    ]

    async def fake_request_with_retries(*_args, **_kwargs):
        calls.append(1)
        return _Resp(payloads.pop(0))

    async def fake_sleep(delay):
        sleeps.append(delay)

    monkeypatch.setattr(telegram, "telegram_client", lambda: object())
    monkeypatch.setattr(telegram, "request_with_retries", fake_request_with_retries)
    monkeypatch.setattr(telegram.asyncio, "sleep", fake_sleep)

    result = asyncio.run(telegram.send_message(-1001, "hello"))

    assert result == 101
    assert len(calls) == 2
    assert len(sleeps) == 1


def test_send_message_raises_on_non_retryable(monkeypatch):
    calls = []

    async def fake_request_with_retries(*_args, **_kwargs):
        calls.append(1)
        return _Resp({"ok": False, "error_code": 400, "description": "Bad Request"})

    monkeypatch.setattr(telegram, "telegram_client", lambda: object())
    monkeypatch.setattr(telegram, "request_with_retries", fake_request_with_retries)

    with pytest.raises(RuntimeError):
        asyncio.run(telegram.send_message(-1001, "hello"))
    assert len(calls) == 1


def test_format_alert_escapes_html():
    text = telegram.format_alert("settlement_divergence", "pool <12>", {"expected": {"result": "1"}})
    assert "&lt;12&gt;" in text
    assert text.startswith("<b>settlement_divergence</b>")
    assert "<code>" in text


def test_alert_delivery_failure_is_not_raised(monkeypatch):
    async def boom(*_args, **_kwargs):
        raise RuntimeError("telegram down")

    monkeypatch.setattr(audit.settings, "telegram_bot_token", "token")
    monkeypatch.setattr(audit.settings, "telegram_alert_chat_id", "-1001")
    monkeypatch.setattr(audit.telegram, "send_message", boom)

    assert asyncio.run(audit.alert("fatal_config", "ingestor", {"error": "x"})) is False


def test_alert_without_chat_only_logs(monkeypatch):
    monkeypatch.setattr(audit.settings, "telegram_alert_chat_id", "")
    assert asyncio.run(audit.alert("fatal_config", "ingestor", {"error": "x"})) is False


def test_send_message_falls_back_to_plain_text(monkeypatch):
    sent = []
    answers = [
        {"ok": False, "error_code": 400, "description": "Bad Request: can't parse entities"},
        {"ok": True, "result": {"message_id": 7}},
    ]

    async def fake_request_with_retries(*_args, json=None, **_kwargs):
        sent.append(dict(json))
        return _Resp(answers.pop(0))

    monkeypatch.setattr(telegram, "telegram_client", lambda: object())
    monkeypatch.setattr(telegram, "request_with_retries", fake_request_with_retries)

    assert asyncio.run(telegram.send_message(-1001, "<b>halted</b> pool &lt;3&gt;")) == 7
    assert sent[0]["parse_mode"] == "HTML"
    assert "parse_mode" not in sent[1]
    assert sent[1]["text"] == "halted pool <3>"
