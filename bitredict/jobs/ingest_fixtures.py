from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Iterable, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from bitredict.core.config import Settings, settings
from bitredict.core.errors import FatalConfigError, ResultConflict
from bitredict.core.logger import get_logger
from bitredict.core.timeutils import ensure_aware_utc, utcnow
from bitredict.data.mappers import FINISHED, is_finished, merge_status
from bitredict.data.providers.sportmonks import (
    ParsedFixture,
    get_api_metrics,
    get_fixtures_between,
    get_fixtures_by_ids,
    parse_fixture,
    reset_api_metrics,
)
from bitredict.services import audit
from bitredict.services.outcomes import RawScores, derive_outcomes
from bitredict.services.results_store import INSERTED, save_result, supersede_result

log = get_logger("jobs.ingest_fixtures")

MODE_UPCOMING = "upcoming"
MODE_LIVE = "live"


def _require_token(cfg: Settings) -> None:
    if not (cfg.sportmonks_api_token or "").strip():
        raise FatalConfigError("SPORTMONKS_API_TOKEN is not configured; cannot ingest fixtures")


async def _stored_status(session: AsyncSession, fixture_id: str) -> Optional[str]:
    res = await session.execute(
        text("SELECT status FROM oracle.fixtures WHERE id=:fid FOR UPDATE"),
        {"fid": fixture_id},
    )
    row = res.first()
    return row.status if row else None


async def _upsert_fixture(session: AsyncSession, fx: ParsedFixture, status: Optional[str]) -> None:
    await session.execute(
        text(
            """
            INSERT INTO oracle.fixtures(id, name, home, away, league, kickoff, status, state_code, minute, created_at, updated_at)
            VALUES(:id, :name, :home, :away, :league, :kickoff, :status, :state_code, :minute, now(), now())
            ON CONFLICT (id) DO UPDATE
            SET name=:name,
                home=COALESCE(NULLIF(:home, ''), oracle.fixtures.home),
                away=COALESCE(NULLIF(:away, ''), oracle.fixtures.away),
                league=COALESCE(NULLIF(:league, ''), oracle.fixtures.league),
                kickoff=COALESCE(:kickoff, oracle.fixtures.kickoff),
                status=:status, state_code=:state_code, minute=:minute, updated_at=now()
            """
        ),
        {
            "id": fx.id,
            "name": fx.name,
            "home": fx.home,
            "away": fx.away,
            "league": fx.league,
            "kickoff": fx.kickoff,
            "status": status,
            "state_code": fx.state_code,
            "minute": fx.minute,
        },
    )


async def _live_window_ids(session: AsyncSession, now: datetime, cfg: Settings, limit: int = 500) -> list[str]:
    """Fixtures kicking off soon or recently, plus finished ones still missing a stored result."""
    res = await session.execute(
        text(
            """
            SELECT f.id
            FROM oracle.fixtures f
            LEFT JOIN oracle.fixture_results r ON r.fixture_id = f.id
            WHERE r.fixture_id IS NULL
              AND f.status NOT IN ('POSTPONED', 'CANCELLED')
              AND (
                (f.kickoff BETWEEN :start AND :end)
                OR (f.kickoff < :start AND f.kickoff > :stale)
              )
            ORDER BY f.kickoff ASC
            LIMIT :limit
            """
        ),
        {
            "start": now - timedelta(hours=int(cfg.ingest_live_after_hours)),
            "end": now + timedelta(hours=int(cfg.ingest_live_before_hours)),
            "stale": now - timedelta(days=3),
            "limit": int(limit),
        },
    )
    return [str(r[0]) for r in res.fetchall()]


async def _store_result(session: AsyncSession, fx: ParsedFixture, status: str) -> str:
    if fx.scores is None:
        log.info("ingest waiting fixture_id=%s reason=scores_incomplete status=%s", fx.id, status)
        return "incomplete"
    raw = RawScores.from_dict(fx.scores)
    try:
        return await save_result(session, fx.id, raw, derive_outcomes(raw))
    except ResultConflict as e:
        log.error("ingest result_conflict fixture_id=%s stored=%s incoming=%s", fx.id, e.stored, e.incoming)
        await audit.record_result_conflict(session, e)
        return "conflict"


async def ingest_items(session: AsyncSession, items: Iterable[dict]) -> dict:
    """Upsert provider fixtures and store results of the finished ones. Commits once."""
    blocked = await audit.open_conflict_fixtures(session)
    counts = {"fixtures": 0, "skipped": 0, "results_inserted": 0, "results_unchanged": 0, "incomplete": 0, "conflicts": 0}
    for item in items:
        fx = parse_fixture(item)
        if fx is None:
            counts["skipped"] += 1
            continue
        stored = await _stored_status(session, fx.id)
        status = merge_status(stored, fx.status)
        if status is None:
            log.warning("ingest unknown_state fixture_id=%s state=%s", fx.id, fx.state_code)
            counts["skipped"] += 1
            continue
        if stored in FINISHED and fx.status is not None and not is_finished(fx.status):
            log.warning("ingest status_regression_ignored fixture_id=%s stored=%s provider=%s", fx.id, stored, fx.status)
        await _upsert_fixture(session, fx, status)
        counts["fixtures"] += 1

        if not is_finished(status):
            continue
        if fx.id in blocked:
            log.info("ingest skip_result fixture_id=%s reason=open_conflict", fx.id)
            continue
        out = await _store_result(session, fx, status)
        if out == INSERTED:
            counts["results_inserted"] += 1
        elif out == "conflict":
            counts["conflicts"] += 1
            blocked.add(fx.id)
        elif out == "incomplete":
            counts["incomplete"] += 1
        else:
            counts["results_unchanged"] += 1
    await session.commit()
    return counts


async def run_upcoming(session: AsyncSession, *, now: Optional[datetime] = None, cfg: Settings = settings) -> dict:
    _require_token(cfg)
    now = ensure_aware_utc(now or utcnow())
    reset_api_metrics()
    date_from = now.date()
    date_to = (now + timedelta(days=int(cfg.ingest_upcoming_days))).date()
    items = await get_fixtures_between(date_from, date_to)
    counts = await ingest_items(session, items)
    summary = {"mode": MODE_UPCOMING, "from": date_from.isoformat(), "to": date_to.isoformat(), **counts, "sportmonks": get_api_metrics()}
    log.info("ingest_fixtures upcoming done fixtures=%s results=%s", counts["fixtures"], counts["results_inserted"])
    return summary


async def run_live(session: AsyncSession, *, now: Optional[datetime] = None, cfg: Settings = settings) -> dict:
    _require_token(cfg)
    now = ensure_aware_utc(now or utcnow())
    reset_api_metrics()
    ids = await _live_window_ids(session, now, cfg)
    if not ids:
        log.info("ingest_fixtures live idle")
        return {"mode": MODE_LIVE, "requested": 0, "fixtures": 0, "sportmonks": get_api_metrics()}
    items = await get_fixtures_by_ids(ids)
    counts = await ingest_items(session, items)
    log.info(
        "ingest_fixtures live done requested=%s fixtures=%s results=%s conflicts=%s",
        len(ids),
        counts["fixtures"],
        counts["results_inserted"],
        counts["conflicts"],
    )
    return {"mode": MODE_LIVE, "requested": len(ids), **counts, "sportmonks": get_api_metrics()}


async def run(session: AsyncSession, *, mode: str = MODE_LIVE, now: Optional[datetime] = None, cfg: Settings = settings) -> dict:
    if mode == MODE_UPCOMING:
        return await run_upcoming(session, now=now, cfg=cfg)
    if mode == MODE_LIVE:
        return await run_live(session, now=now, cfg=cfg)
    raise ValueError(f"unknown ingest mode: {mode}")


async def backfill(
    session: AsyncSession,
    date_from: date,
    date_to: date,
    *,
    shutdown=None,
    cfg: Settings = settings,
) -> dict:
    """Walk ``[date_from, date_to]`` one day at a time, committing per day."""
    _require_token(cfg)
    if date_to < date_from:
        raise ValueError(f"backfill range is empty: {date_from} > {date_to}")
    reset_api_metrics()
    totals: dict[str, int] = {}
    days = 0
    day = date_from
    while day <= date_to:
        if shutdown is not None and shutdown.is_set():
            log.info("backfill shutdown_requested at=%s", day.isoformat())
            break
        items = await get_fixtures_between(day, day)
        counts = await ingest_items(session, items)
        for k, v in counts.items():
            totals[k] = totals.get(k, 0) + v
        days += 1
        log.info("backfill day=%s fixtures=%s results=%s", day.isoformat(), counts["fixtures"], counts["results_inserted"])
        day += timedelta(days=1)
    return {"from": date_from.isoformat(), "to": date_to.isoformat(), "days": days, **totals, "sportmonks": get_api_metrics()}


async def supersede(
    session: AsyncSession,
    fixture_id: str,
    *,
    reason: str,
    actor: str = "operator",
    cfg: Settings = settings,
) -> dict:
    """Re-fetch one fixture and replace its stored result with an audited correction."""
    _require_token(cfg)
    items = await get_fixtures_by_ids([str(fixture_id)])
    fx = next((f for f in (parse_fixture(i) for i in items) if f is not None and f.id == str(fixture_id)), None)
    if fx is None or not is_finished(fx.status) or fx.scores is None:
        raise ValueError(f"provider has no complete result for fixture {fixture_id}")
    out = await supersede_result(session, fx.id, RawScores.from_dict(fx.scores), reason=reason, actor=actor)
    await session.commit()
    return out
