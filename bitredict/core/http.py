import asyncio
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

import httpx

from .config import settings
from .logger import get_logger

log = get_logger("http")

RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})

# name -> (client, config key it was built from); a changed key rebuilds the client.
_clients: dict[str, tuple[httpx.AsyncClient, tuple]] = {}
_stale: list[httpx.AsyncClient] = []


def _shared_client(name: str, *, base_url: str, headers: dict | None = None, timeout: float = 20.0) -> httpx.AsyncClient:
    key = (base_url, tuple(sorted((headers or {}).items())), float(timeout))
    entry = _clients.get(name)
    if entry is not None and not entry[0].is_closed and entry[1] == key:
        return entry[0]
    client = httpx.AsyncClient(
        base_url=base_url,
        headers=headers,
        timeout=httpx.Timeout(timeout),
        limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
    )
    if entry is not None and not entry[0].is_closed:
        # Config changed under a live client; the stale one is closed at shutdown.
        _stale.append(entry[0])
    _clients[name] = (client, key)
    return client


def sportmonks_client() -> httpx.AsyncClient:
    return _shared_client(
        "sportmonks",
        base_url=settings.sportmonks_base,
        headers={"Authorization": settings.sportmonks_api_token, "Accept": "application/json"},
        timeout=settings.provider_timeout_seconds,
    )


def telegram_client() -> httpx.AsyncClient:
    token = (settings.telegram_bot_token or "").strip()
    if not token:
        raise RuntimeError("TELEGRAM_BOT_TOKEN is not configured")
    return _shared_client("telegram", base_url=f"https://api.telegram.org/bot{token}")


async def close_http_clients() -> None:
    pending = [client for client, _ in _clients.values()] + _stale
    _clients.clear()
    _stale.clear()
    for client in pending:
        if not client.is_closed:
            await client.aclose()


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        dt = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return max(0.0, (dt - datetime.now(timezone.utc)).total_seconds())


def backoff_delay(attempt: int, base: float, cap: float, retry_after: float | None = None) -> float:
    """Exponential delay for ``attempt`` (0-based), never above ``cap``.

    A server-provided ``retry_after`` raises the delay but is capped as well.
    Shared by the HTTP providers, the chain client and the settlement retry
    schedule.
    """
    delay = min(cap, base * (2 ** attempt))
    if retry_after is not None:
        delay = max(delay, min(cap, retry_after))
    return delay


async def request_with_retries(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    params: dict | None = None,
    retries: int = 3,
    backoff_base: float = 0.5,
    backoff_max: float = 8.0,
    retry_statuses: frozenset[int] | set[int] | None = None,
    retry_exceptions: tuple[type[BaseException], ...] = (httpx.RequestError,),
    _sleep=asyncio.sleep,
    **kwargs,
) -> httpx.Response:
    """Send a request, retrying transport errors and retryable statuses.

    Once retries are exhausted the last retryable response is returned as-is so
    the caller can classify it; transport errors re-raise.
    """
    statuses = retry_statuses or RETRYABLE_STATUSES
    attempt = 0
    while True:
        try:
            response = await client.request(method, url, params=params, **kwargs)
        except retry_exceptions as e:
            if attempt >= retries:
                raise
            delay = backoff_delay(attempt, backoff_base, backoff_max)
            log.warning("http_retry url=%s attempt=%s err=%s delay=%.1fs", url, attempt + 1, type(e).__name__, delay)
        else:
            if response.status_code not in statuses or attempt >= retries:
                return response
            retry_after = _parse_retry_after(response.headers.get("Retry-After"))
            await response.aclose()
            delay = backoff_delay(attempt, backoff_base, backoff_max, retry_after)
            log.warning("http_retry url=%s attempt=%s status=%s delay=%.1fs", url, attempt + 1, response.status_code, delay)
        await _sleep(delay)
        attempt += 1
