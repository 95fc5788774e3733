from contextvars import ContextVar
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Optional

import httpx

from bitredict.core.config import settings
from bitredict.core.errors import PermanentProviderError, TransientError
from bitredict.core.http import request_with_retries, sportmonks_client
from bitredict.core.logger import get_logger
from bitredict.data.mappers import AET, PEN, normalize_status

log = get_logger("providers.sportmonks")

FIXTURE_INCLUDE = "scores;participants;state;league"
_MULTI_CHUNK = 50

_api_metrics: ContextVar[dict] = ContextVar("sportmonks_metrics", default={})


def reset_api_metrics() -> None:
    _api_metrics.set({"requests": 0, "errors": 0, "status": {}})


def get_api_metrics() -> dict:
    return dict(_api_metrics.get() or {})


def _inc_metric(status_code: int | None = None, *, error: bool = False) -> None:
    cur = _api_metrics.get() or {}
    if not cur:
        # Not tracking for this context.
        return
    if status_code is not None:
        cur["requests"] = int(cur.get("requests", 0)) + 1
        st = cur.get("status") or {}
        st[str(int(status_code))] = int(st.get(str(int(status_code)), 0)) + 1
        cur["status"] = st
    if error:
        cur["errors"] = int(cur.get("errors", 0)) + 1
    _api_metrics.set(cur)


async def api_get(url: str, params: dict | None = None, *, _sleep=None) -> dict:
    """GET one provider page, classifying failures.

    Transport errors, 429 and 5xx are retried with capped backoff and end in
    ``TransientError``; any other 4xx is a ``PermanentProviderError``.
    """
    query = {"include": FIXTURE_INCLUDE}
    query.update(params or {})
    client = sportmonks_client()
    kwargs = {"_sleep": _sleep} if _sleep is not None else {}
    try:
        r = await request_with_retries(
            client,
            "GET",
            url,
            params=query,
            retries=settings.provider_retries,
            backoff_base=settings.provider_backoff_base_seconds,
            backoff_max=settings.provider_backoff_max_seconds,
            **kwargs,
        )
    except httpx.RequestError as e:
        _inc_metric(error=True)
        raise TransientError(f"sportmonks transport error url={url}: {type(e).__name__}") from e

    _inc_metric(status_code=r.status_code)
    if r.status_code == 429 or r.status_code >= 500:
        _inc_metric(error=True)
        retry_after = r.headers.get("Retry-After")
        raise TransientError(
            f"sportmonks status={r.status_code} url={url}",
            retry_after=float(retry_after) if (retry_after or "").isdigit() else None,
        )
    if r.status_code >= 400:
        _inc_metric(error=True)
        raise PermanentProviderError(f"sportmonks status={r.status_code} url={url}: {r.text[:300]}", status_code=r.status_code)
    return r.json()


async def api_get_all_pages(url: str, params: dict | None = None, *, max_pages: int | None = None, _sleep=None) -> list[dict]:
    limit = int(max_pages or settings.provider_max_pages)
    out: list[dict] = []
    page = 1
    while True:
        page_params = dict(params or {})
        page_params["page"] = page
        data = await api_get(url, page_params, _sleep=_sleep)
        rows = data.get("data") or []
        if isinstance(rows, dict):
            rows = [rows]
        out.extend(rows)
        pagination = data.get("pagination") or {}
        if not pagination.get("has_more"):
            break
        page += 1
        if page > limit:
            log.warning("sportmonks_pagination_truncated url=%s pages=%s", url, limit)
            break
    return out


async def get_fixtures_between(date_from: date, date_to: date, *, _sleep=None) -> list[dict]:
    url = f"/fixtures/between/{date_from.isoformat()}/{date_to.isoformat()}"
    return await api_get_all_pages(url, _sleep=_sleep)


async def get_fixtures_by_ids(fixture_ids: list[str], *, _sleep=None) -> list[dict]:
    out: list[dict] = []
    ids = [str(x) for x in fixture_ids if str(x).strip()]
    for i in range(0, len(ids), _MULTI_CHUNK):
        chunk = ",".join(ids[i : i + _MULTI_CHUNK])
        out.extend(await api_get_all_pages(f"/fixtures/multi/{chunk}", _sleep=_sleep))
    return out


@dataclass(frozen=True)
class ParsedFixture:
    id: str
    name: str
    home: str
    away: str
    league: str
    kickoff: Optional[datetime]
    status: Optional[str]
    state_code: str
    minute: Optional[int]
    scores: Optional[dict]


def _parse_kickoff(item: dict) -> Optional[datetime]:
    ts = item.get("starting_at_timestamp")
    if ts:
        try:
            return datetime.fromtimestamp(int(ts), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError):
            pass
    raw = item.get("starting_at")
    if not raw:
        return None
    try:
        dt = datetime.fromisoformat(str(raw).replace("Z", "+00:00").replace(" ", "T"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _participants(item: dict) -> tuple[str, str]:
    home = away = ""
    for p in item.get("participants") or []:
        location = str(((p.get("meta") or {}).get("location")) or "").lower()
        if location == "home":
            home = str(p.get("name") or "")
        elif location == "away":
            away = str(p.get("name") or "")
    if (not home or not away) and " vs " in str(item.get("name") or ""):
        left, right = str(item["name"]).split(" vs ", 1)
        home = home or left.strip()
        away = away or right.strip()
    return home, away


def _period(scores: list[dict], description: str) -> Optional[tuple[int, int]]:
    home = away = None
    for row in scores:
        if str(row.get("description") or "").upper() != description:
            continue
        score = row.get("score") or {}
        side = str(score.get("participant") or "").lower()
        try:
            goals = int(score.get("goals"))
        except (TypeError, ValueError):
            continue
        if goals < 0:
            continue
        if side == "home":
            home = goals
        elif side == "away":
            away = goals
    if home is None or away is None:
        return None
    return home, away


def extract_scores(scores: list[dict] | None, status: Optional[str]) -> Optional[dict]:
    """Raw scores of a finished fixture, or ``None`` when no final score is reported.

    Half periods carry only that period's goals. HT is ``1ST_HALF`` and may be
    missing (HT markets then become unavailable). For AET/PEN finishes the
    regulation score is the sum of both halves and the after-extra-time score
    is regulation + ``ET`` (or ``CURRENT`` minus the shootout). With a half
    missing, 1X2/OU still settle on the after-extra-time score.
    """
    rows = list(scores or [])
    first = _period(rows, "1ST_HALF")
    second = _period(rows, "2ND_HALF")
    current = _period(rows, "CURRENT")
    extra = _period(rows, "ET")
    pens = _period(rows, "PEN")

    out: dict = {
        "home_ht": first[0] if first else None,
        "away_ht": first[1] if first else None,
        "home_et": None,
        "away_et": None,
        "home_pen": pens[0] if pens else None,
        "away_pen": pens[1] if pens else None,
    }

    if status in (AET, PEN):
        regulation = (first[0] + second[0], first[1] + second[1]) if first and second else None
        if regulation and extra:
            after_et = (regulation[0] + extra[0], regulation[1] + extra[1])
        elif current:
            after_et = current
            if pens:
                net = (current[0] - pens[0], current[1] - pens[1])
                # Some feeds fold the shootout into CURRENT.
                floor = regulation or (0, 0)
                if net[0] >= floor[0] and net[1] >= floor[1]:
                    after_et = net
        elif regulation:
            after_et = regulation
        else:
            return None
        # Without both halves the regulation score is unknown; the after-ET score stands in.
        out["home_ft"], out["away_ft"] = regulation or after_et
        out["home_et"], out["away_et"] = after_et
        return out

    if current is None:
        if first and second:
            current = (first[0] + second[0], first[1] + second[1])
        else:
            return None
    out["home_ft"], out["away_ft"] = current
    return out


def parse_fixture(item: dict) -> Optional[ParsedFixture]:
    fixture_id = item.get("id")
    if fixture_id is None:
        return None
    state = item.get("state") or {}
    state_code = str(state.get("state") or state.get("short_name") or "").upper()
    status = normalize_status(state_code)
    league = item.get("league") or {}
    home, away = _participants(item)
    minute = state.get("minute") if isinstance(state, dict) else None
    try:
        minute = int(minute) if minute is not None else None
    except (TypeError, ValueError):
        minute = None
    return ParsedFixture(
        id=str(fixture_id),
        name=str(item.get("name") or f"{home} vs {away}"),
        home=home,
        away=away,
        league=str(league.get("name") or ""),
        kickoff=_parse_kickoff(item),
        status=status,
        state_code=state_code,
        minute=minute,
        scores=extract_scores(item.get("scores"), status),
    )
