"""Oddyssey cycle snapshots and slips as stored in the ``oracle`` schema.

A cycle's ten matches and their odds are frozen when the cycle is first seen
on chain and are never refreshed afterwards.
"""

from __future__ import annotations

import json
from typing import Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from bitredict.core.logger import get_logger
from bitredict.core.timeutils import from_epoch

from .scoring import MATCH_COUNT, MatchSnapshot, Pick, make_pick

log = get_logger("services.cycles")


def snapshot_from_chain(raw_matches) -> list[MatchSnapshot]:
    out = []
    for position, m in enumerate(list(raw_matches)):
        out.append(
            MatchSnapshot(
                position=position,
                fixture_id=str(int(m[0])),
                odds_home=int(m[2]),
                odds_draw=int(m[3]),
                odds_away=int(m[4]),
                odds_over=int(m[5]),
                odds_under=int(m[6]),
            )
        )
    return out


def picks_from_chain(raw_slip) -> tuple[str, list[Pick]]:
    """``getSlip`` output -> (player, picks)."""
    player = str(raw_slip[0])
    picks = [make_pick(int(p[0]), int(p[1]), p[2]) for p in list(raw_slip[3])]
    return player, picks


async def store_cycle(
    session: AsyncSession,
    cycle_id: int,
    end_epoch: int,
    matches: list[MatchSnapshot],
    raw_matches=None,
    *,
    tx_hash: Optional[str] = None,
    block_number: Optional[int] = None,
) -> bool:
    """Insert a cycle and its frozen snapshot once. Returns ``True`` when newly stored."""
    if len(matches) != MATCH_COUNT:
        raise ValueError(f"cycle {cycle_id} snapshot has {len(matches)} matches, expected {MATCH_COUNT}")
    matches_data = [
        {
            "position": m.position,
            "fixture_id": m.fixture_id,
            "odds_home": m.odds_home,
            "odds_draw": m.odds_draw,
            "odds_away": m.odds_away,
            "odds_over": m.odds_over,
            "odds_under": m.odds_under,
            "start_time": int(raw_matches[m.position][1]) if raw_matches is not None else None,
        }
        for m in matches
    ]
    res = await session.execute(
        text(
            """
            INSERT INTO oracle.oddyssey_cycles(
              cycle_id, cycle_end_epoch, cycle_end_time, matches_data,
              is_resolved, evaluation_completed, partial_resolution_requested,
              created_tx_hash, created_block, created_at, updated_at
            )
            VALUES(:cid, :end_epoch, :end_time, CAST(:matches AS jsonb),
                   false, false, false, :tx, :block, now(), now())
            ON CONFLICT (cycle_id) DO NOTHING
            RETURNING cycle_id
            """
        ),
        {
            "cid": int(cycle_id),
            "end_epoch": int(end_epoch),
            "end_time": from_epoch(end_epoch),
            "matches": json.dumps(matches_data),
            "tx": tx_hash,
            "block": block_number,
        },
    )
    if res.first() is None:
        return False
    for m, data in zip(matches, matches_data):
        await session.execute(
            text(
                """
                INSERT INTO oracle.cycle_matches_snapshot(
                  cycle_id, position, fixture_id, start_time,
                  odds_home, odds_draw, odds_away, odds_over, odds_under
                )
                VALUES(:cid, :pos, :fid, :start, :oh, :od, :oa, :oo, :ou)
                ON CONFLICT (cycle_id, position) DO NOTHING
                """
            ),
            {
                "cid": int(cycle_id),
                "pos": m.position,
                "fid": m.fixture_id,
                "start": from_epoch(data["start_time"]) if data["start_time"] else None,
                "oh": m.odds_home,
                "od": m.odds_draw,
                "oa": m.odds_away,
                "oo": m.odds_over,
                "ou": m.odds_under,
            },
        )
    log.info("cycle_snapshot_stored cycle_id=%s end_epoch=%s", cycle_id, end_epoch)
    return True


async def ensure_cycle(session: AsyncSession, chain, cycle_id: int, *, tx_hash=None, block_number=None) -> bool:
    raw_matches = await chain.call("oddyssey", "getCycleMatches", int(cycle_id))
    end_epoch = int(await chain.call("oddyssey", "dailyCycleEndTimes", int(cycle_id)))
    return await store_cycle(
        session,
        cycle_id,
        end_epoch,
        snapshot_from_chain(raw_matches),
        raw_matches,
        tx_hash=tx_hash,
        block_number=block_number,
    )


async def load_snapshot(session: AsyncSession, cycle_id: int) -> list[MatchSnapshot]:
    res = await session.execute(
        text(
            """
            SELECT position, fixture_id, odds_home, odds_draw, odds_away, odds_over, odds_under
            FROM oracle.cycle_matches_snapshot
            WHERE cycle_id=:cid
            ORDER BY position ASC
            """
        ),
        {"cid": int(cycle_id)},
    )
    return [
        MatchSnapshot(
            position=int(r.position),
            fixture_id=str(r.fixture_id),
            odds_home=int(r.odds_home),
            odds_draw=int(r.odds_draw),
            odds_away=int(r.odds_away),
            odds_over=int(r.odds_over),
            odds_under=int(r.odds_under),
        )
        for r in res.fetchall()
    ]


async def store_slip(
    session: AsyncSession,
    slip_id: int,
    cycle_id: int,
    player: str,
    picks: list[Pick],
    *,
    placed_at=None,
    tx_hash: Optional[str] = None,
    log_index: Optional[int] = None,
    block_number: Optional[int] = None,
) -> None:
    await session.execute(
        text(
            """
            INSERT INTO oracle.oddyssey_slips(
              slip_id, cycle_id, player, picks, placed_at, tx_hash, log_index, block_number, created_at
            )
            VALUES(:sid, :cid, :player, CAST(:picks AS jsonb), :placed_at, :tx, :li, :block, now())
            ON CONFLICT (slip_id) DO NOTHING
            """
        ),
        {
            "sid": int(slip_id),
            "cid": int(cycle_id),
            "player": player,
            "picks": json.dumps([{"fixture_id": p.fixture_id, "market": p.market, "selection": p.selection} for p in picks]),
            "placed_at": placed_at,
            "tx": tx_hash,
            "li": log_index,
            "block": block_number,
        },
    )


async def load_slips(session: AsyncSession, cycle_id: int) -> list[tuple[int, str, list[Pick]]]:
    res = await session.execute(
        text("SELECT slip_id, player, picks FROM oracle.oddyssey_slips WHERE cycle_id=:cid ORDER BY slip_id ASC"),
        {"cid": int(cycle_id)},
    )
    out = []
    for r in res.fetchall():
        picks = r.picks
        if isinstance(picks, str):
            picks = json.loads(picks)
        out.append((int(r.slip_id), str(r.player), [Pick(str(p["fixture_id"]), p["market"], p["selection"]) for p in picks]))
    return out
