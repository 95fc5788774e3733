"""Single writer of ``oracle.fixture_results`` and ``oracle.match_results``.

A stored result is immutable. Saving the same result again is a no-op;
saving a different one raises ``ResultConflict`` before anything is written.
Corrections go through ``supersede_result`` which keeps an audit trail.
"""

from __future__ import annotations

import json
from typing import Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from bitredict.core.errors import ResultConflict
from bitredict.core.logger import get_logger

from .outcomes import ALL_FAMILIES, RawScores, derive_outcomes, encode_outcome, is_available

log = get_logger("services.results_store")

INSERTED = "inserted"
UNCHANGED = "unchanged"

_RAW_COLUMNS = ("home_ft", "away_ft", "home_ht", "away_ht", "home_et", "away_et", "home_pen", "away_pen")


def _check_derived(raw: RawScores, derived: dict[str, str]) -> dict[str, str]:
    expected = derive_outcomes(raw)
    if dict(derived) != expected:
        raise ValueError(f"derived outcomes do not match raw scores: {derived} != {expected}")
    return expected


async def get_result(session: AsyncSession, fixture_id: str) -> Optional[dict]:
    res = await session.execute(
        text(
            """
            SELECT fixture_id, home_ft, away_ft, home_ht, away_ht, home_et, away_et,
                   home_pen, away_pen, outcomes
            FROM oracle.fixture_results
            WHERE fixture_id=:fid
            """
        ),
        {"fid": str(fixture_id)},
    )
    row = res.first()
    if row is None:
        return None
    raw = {col: getattr(row, col) for col in _RAW_COLUMNS}
    outcomes = row.outcomes
    if isinstance(outcomes, str):
        outcomes = json.loads(outcomes)
    return {"fixture_id": str(row.fixture_id), "raw": raw, "outcomes": dict(outcomes or {})}


async def _insert_match_results(session: AsyncSession, fixture_id: str, derived: dict[str, str]) -> None:
    for family in ALL_FAMILIES:
        code = derived.get(family)
        available = is_available(code)
        await session.execute(
            text(
                """
                INSERT INTO oracle.match_results(fixture_id, market, outcome_code, outcome_bytes, available, created_at)
                VALUES(:fid, :market, :code, :bytes, :available, now())
                ON CONFLICT (fixture_id, market) DO NOTHING
                """
            ),
            {
                "fid": fixture_id,
                "market": family,
                "code": code,
                "bytes": encode_outcome(code) if available else None,
                "available": available,
            },
        )


async def save_result(session: AsyncSession, fixture_id: str, raw: RawScores, derived: dict[str, str]) -> str:
    """Persist a fixture's raw scores and derived outcomes once.

    Returns ``"inserted"`` or ``"unchanged"``. Raises ``ResultConflict`` when a
    different result is already stored. The caller owns the transaction.
    """
    fid = str(fixture_id)
    derived = _check_derived(raw, derived)
    params = {"fid": fid, "outcomes": json.dumps(derived, sort_keys=True)}
    params.update(raw.to_dict())
    res = await session.execute(
        text(
            """
            INSERT INTO oracle.fixture_results(
              fixture_id, home_ft, away_ft, home_ht, away_ht, home_et, away_et,
              home_pen, away_pen, outcomes, created_at
            )
            VALUES(
              :fid, :home_ft, :away_ft, :home_ht, :away_ht, :home_et, :away_et,
              :home_pen, :away_pen, CAST(:outcomes AS jsonb), now()
            )
            ON CONFLICT (fixture_id) DO NOTHING
            RETURNING fixture_id
            """
        ),
        params,
    )
    if res.first() is not None:
        await _insert_match_results(session, fid, derived)
        log.info("result_saved fixture_id=%s outcomes=%s", fid, derived)
        return INSERTED

    stored = await get_result(session, fid)
    if stored is None:
        # Row vanished between insert and read; let the next tick retry.
        raise RuntimeError(f"fixture_results row missing after conflict fixture_id={fid}")
    incoming = {"raw": raw.to_dict(), "outcomes": derived}
    if stored["raw"] == incoming["raw"] and stored["outcomes"] == derived:
        return UNCHANGED
    raise ResultConflict(fid, {"raw": stored["raw"], "outcomes": stored["outcomes"]}, incoming)


async def supersede_result(
    session: AsyncSession,
    fixture_id: str,
    raw: RawScores,
    *,
    reason: str,
    actor: str = "operator",
) -> dict:
    """Replace a stored result with an audited correction.

    Pools and cycles already settled keep their on-chain outcome; only
    unsettled consumers see the corrected values.
    """
    fid = str(fixture_id)
    if not (reason or "").strip():
        raise ValueError("supersede requires a reason")
    stored = await get_result(session, fid)
    if stored is None:
        raise ValueError(f"no stored result to supersede fixture_id={fid}")
    derived = derive_outcomes(raw)
    if stored["raw"] == raw.to_dict():
        return {"fixture_id": fid, "changed": False}

    await session.execute(
        text(
            """
            INSERT INTO oracle.result_supersedes(
              fixture_id, old_raw, new_raw, old_outcomes, new_outcomes, reason, actor, created_at
            )
            VALUES(:fid, CAST(:old_raw AS jsonb), CAST(:new_raw AS jsonb),
                   CAST(:old_out AS jsonb), CAST(:new_out AS jsonb), :reason, :actor, now())
            """
        ),
        {
            "fid": fid,
            "old_raw": json.dumps(stored["raw"], sort_keys=True),
            "new_raw": json.dumps(raw.to_dict(), sort_keys=True),
            "old_out": json.dumps(stored["outcomes"], sort_keys=True),
            "new_out": json.dumps(derived, sort_keys=True),
            "reason": reason.strip(),
            "actor": actor,
        },
    )
    params = {"fid": fid, "outcomes": json.dumps(derived, sort_keys=True)}
    params.update(raw.to_dict())
    await session.execute(
        text(
            """
            UPDATE oracle.fixture_results
            SET home_ft=:home_ft, away_ft=:away_ft, home_ht=:home_ht, away_ht=:away_ht,
                home_et=:home_et, away_et=:away_et, home_pen=:home_pen, away_pen=:away_pen,
                outcomes=CAST(:outcomes AS jsonb), superseded_at=now()
            WHERE fixture_id=:fid
            """
        ),
        params,
    )
    await session.execute(text("DELETE FROM oracle.match_results WHERE fixture_id=:fid"), {"fid": fid})
    await _insert_match_results(session, fid, derived)
    await session.execute(
        text("UPDATE oracle.result_conflicts SET resolved_at=now() WHERE fixture_id=:fid AND resolved_at IS NULL"),
        {"fid": fid},
    )
    log.warning("result_superseded fixture_id=%s old=%s new=%s reason=%s", fid, stored["outcomes"], derived, reason)
    return {"fixture_id": fid, "changed": True, "old": stored["outcomes"], "new": derived}


async def get_outcome(session: AsyncSession, fixture_id: str, market: str) -> Optional[str]:
    """Stored outcome code for one market, ``UNAVAILABLE``, or ``None`` when not derived yet."""
    res = await session.execute(
        text("SELECT outcome_code FROM oracle.match_results WHERE fixture_id=:fid AND market=:market"),
        {"fid": str(fixture_id), "market": market},
    )
    row = res.first()
    return row.outcome_code if row else None


async def get_outcomes_for(session: AsyncSession, fixture_ids: list[str], markets: tuple[str, ...]) -> dict[str, dict[str, str]]:
    if not fixture_ids:
        return {}
    res = await session.execute(
        text(
            """
            SELECT fixture_id, market, outcome_code
            FROM oracle.match_results
            WHERE fixture_id = ANY(:fids) AND market = ANY(:markets)
            """
        ),
        {"fids": [str(f) for f in fixture_ids], "markets": list(markets)},
    )
    out: dict[str, dict[str, str]] = {}
    for row in res.fetchall():
        out.setdefault(str(row.fixture_id), {})[row.market] = row.outcome_code
    return out
