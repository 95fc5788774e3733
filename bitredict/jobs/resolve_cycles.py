from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from bitredict.core.chain import ALREADY_SETTLED
from bitredict.core.config import Settings, settings
from bitredict.core.errors import PermanentChainError, ResolutionDivergence, RevertError, TransientError
from bitredict.core.locks import entity_lock
from bitredict.core.logger import get_logger
from bitredict.core.timeutils import ensure_aware_utc, from_epoch, utcnow
from bitredict.services import audit
from bitredict.services import cycles as cy
from bitredict.services import scoring as sc
from bitredict.services.outcomes import MARKET_1X2, MARKET_OU25, is_available
from bitredict.services.results_store import get_outcomes_for

log = get_logger("jobs.resolve_cycles")

ST_RESOLVED = "resolved"
ST_ALREADY_RESOLVED = "already_resolved"
ST_NOT_DUE = "not_due"
ST_WAITING = "waiting"
ST_BLOCKED = "blocked"
ST_HALTED = "halted"
ST_RETRY = "retry"
ST_BUSY = "busy"
ST_UNKNOWN = "unknown"

CYCLE_MARKETS = (MARKET_1X2, MARKET_OU25)
ZERO_ADDRESS = "0x" + "0" * 40


async def _due_cycle_ids(session: AsyncSession, now: datetime, limit: int = 50) -> list[int]:
    res = await session.execute(
        text(
            """
            SELECT cycle_id
            FROM oracle.oddyssey_cycles
            WHERE is_resolved = false
              AND halted = false
              AND cycle_end_time < :now
            ORDER BY cycle_id ASC
            LIMIT :limit
            """
        ),
        {"now": now, "limit": int(limit)},
    )
    return [int(r[0]) for r in res.fetchall()]


async def _load_cycle(session: AsyncSession, cycle_id: int):
    res = await session.execute(
        text(
            """
            SELECT cycle_id, cycle_end_epoch, cycle_end_time, is_resolved, evaluation_completed,
                   partial_resolution_requested, halted, last_error
            FROM oracle.oddyssey_cycles
            WHERE cycle_id=:cid
            """
        ),
        {"cid": int(cycle_id)},
    )
    return res.first()


async def _stored_evaluations(session: AsyncSession, cycle_id: int) -> dict[int, sc.SlipScore]:
    res = await session.execute(
        text(
            """
            SELECT slip_id, correct_count, final_score, eligible, disqualified_overflow, void_picks, rank
            FROM oracle.slip_evaluations
            WHERE cycle_id=:cid
            """
        ),
        {"cid": int(cycle_id)},
    )
    return {
        int(r.slip_id): sc.SlipScore(
            slip_id=int(r.slip_id),
            correct_count=int(r.correct_count),
            final_score=int(r.final_score),
            eligible=bool(r.eligible),
            disqualified_overflow=bool(r.disqualified_overflow),
            void_picks=int(r.void_picks or 0),
            rank=int(r.rank) if r.rank is not None else None,
        )
        for r in res.fetchall()
    }


async def _write_evaluations(session: AsyncSession, cycle_id: int, ranked: list[sc.SlipScore]) -> None:
    """Insert every slip evaluation and flip ``evaluation_completed`` in one commit.

    Rows that already exist are left untouched; a stored score is never rewritten.
    """
    for s in ranked:
        await session.execute(
            text(
                """
                INSERT INTO oracle.slip_evaluations(
                  slip_id, cycle_id, correct_count, final_score, eligible,
                  disqualified_overflow, void_picks, rank, evaluated_at
                )
                VALUES(:sid, :cid, :correct, :score, :eligible, :overflow, :voids, :rank, now())
                ON CONFLICT (slip_id) DO NOTHING
                """
            ),
            {
                "sid": s.slip_id,
                "cid": int(cycle_id),
                "correct": s.correct_count,
                "score": Decimal(s.final_score),
                "eligible": s.eligible,
                "overflow": s.disqualified_overflow,
                "voids": s.void_picks,
                "rank": s.rank,
            },
        )
    await session.execute(
        text("UPDATE oracle.oddyssey_cycles SET evaluation_completed=true, updated_at=now() WHERE cycle_id=:cid"),
        {"cid": int(cycle_id)},
    )
    await session.commit()


async def _mark_partial(session: AsyncSession, cycle_id: int, missing: list[str]) -> None:
    await session.execute(
        text(
            """
            UPDATE oracle.oddyssey_cycles
            SET partial_resolution_requested=true, last_error=:err, updated_at=now()
            WHERE cycle_id=:cid
            """
        ),
        {"cid": int(cycle_id), "err": "void_markets:" + ",".join(missing)},
    )
    await session.commit()


async def _mark_waiting(session: AsyncSession, cycle_id: int, reason: str) -> None:
    await session.execute(
        text("UPDATE oracle.oddyssey_cycles SET last_error=:err, updated_at=now() WHERE cycle_id=:cid"),
        {"cid": int(cycle_id), "err": reason[:2000]},
    )
    await session.commit()


async def _mark_halted(session: AsyncSession, cycle_id: int, reason: str) -> None:
    await session.execute(
        text("UPDATE oracle.oddyssey_cycles SET halted=true, last_error=:err, updated_at=now() WHERE cycle_id=:cid"),
        {"cid": int(cycle_id), "err": reason[:2000]},
    )


async def _store_resolution(session: AsyncSession, cycle_id: int, winners: list[dict], tx_hash: Optional[str]) -> None:
    """Project the on-chain leaderboard and resolved flag (chain is authoritative)."""
    await session.execute(text("DELETE FROM oracle.cycle_winners WHERE cycle_id=:cid"), {"cid": int(cycle_id)})
    for position, w in enumerate(winners, start=1):
        await session.execute(
            text(
                """
                INSERT INTO oracle.cycle_winners(cycle_id, position, slip_id, player, final_score, correct_count, created_at)
                VALUES(:cid, :pos, :sid, :player, :score, :correct, now())
                """
            ),
            {
                "cid": int(cycle_id),
                "pos": position,
                "sid": w["slip_id"],
                "player": w["player"],
                "score": Decimal(w["final_score"]),
                "correct": w["correct_count"],
            },
        )
    await session.execute(
        text(
            """
            UPDATE oracle.oddyssey_cycles
            SET is_resolved=true, resolved_tx_hash=COALESCE(:tx, resolved_tx_hash),
                resolved_at=COALESCE(resolved_at, now()), last_error=NULL, updated_at=now()
            WHERE cycle_id=:cid
            """
        ),
        {"cid": int(cycle_id), "tx": tx_hash},
    )


async def _read_leaderboard(chain, cycle_id: int) -> list[dict]:
    entries = await chain.call("oddyssey", "getDailyLeaderboard", int(cycle_id))
    out = []
    for e in list(entries):
        player = str(e[0])
        if player.lower() == ZERO_ADDRESS:
            continue
        out.append({"player": player, "slip_id": int(e[1]), "final_score": int(e[2]), "correct_count": int(e[3])})
    return out


def _missing_markets(snapshots: list[sc.MatchSnapshot], outcomes: dict[str, dict[str, str]]) -> list[str]:
    missing = []
    for snap in snapshots:
        fixture = outcomes.get(snap.fixture_id) or {}
        for market in CYCLE_MARKETS:
            if not is_available(fixture.get(market)):
                missing.append(f"{snap.fixture_id}:{market}")
    return missing


def _score_cycle(slips, snapshots, outcomes, *, min_correct: int, allow_void: bool) -> list[sc.SlipScore]:
    by_fixture = {s.fixture_id: s for s in snapshots}
    scores = [
        sc.score_slip(slip_id, picks, by_fixture, outcomes, min_correct=min_correct, allow_void=allow_void, player=player)
        for slip_id, player, picks in slips
    ]
    return sc.rank_slips(scores)


async def _check_end_time(chain, cycle) -> Optional[str]:
    on_chain = int(await chain.call("oddyssey", "dailyCycleEndTimes", int(cycle.cycle_id)))
    if on_chain != int(cycle.cycle_end_epoch):
        return f"CYCLE_END_MISMATCH stored={cycle.cycle_end_epoch} chain={on_chain}"
    return None


async def _halt(session: AsyncSession, cycle_id: int, kind: str, reason: str, details: dict) -> dict:
    log.error("resolve_cycle halted cycle_id=%s reason=%s", cycle_id, reason)
    await _mark_halted(session, cycle_id, reason)
    await audit.record(session, kind, "cycle", cycle_id, observed=details, message=reason)
    await session.commit()
    await audit.alert(kind, f"cycle {cycle_id}", details)
    return {"cycle_id": cycle_id, "status": ST_HALTED, "reason": reason}


async def _reconcile_winners(session: AsyncSession, chain, cycle_id: int, ranked: list[sc.SlipScore], tx_hash: Optional[str]) -> bool:
    winners = await _read_leaderboard(chain, cycle_id)
    ours = sc.top_slips(ranked)
    theirs = [w["slip_id"] for w in winners]
    diverged = ours != theirs
    await _store_resolution(session, cycle_id, winners, tx_hash)
    if diverged:
        log.warning("resolve_cycle divergence cycle_id=%s computed=%s chain=%s", cycle_id, ours, theirs)
        await audit.record_resolution_divergence(session, ResolutionDivergence(cycle_id, ours, theirs))
    await session.commit()
    return diverged


async def _resolve_locked(session: AsyncSession, chain, cycle_id: int, *, now: datetime, cfg: Settings) -> dict:
    cycle = await _load_cycle(session, cycle_id)
    if cycle is None:
        return {"cycle_id": cycle_id, "status": ST_UNKNOWN}
    if cycle.halted:
        return {"cycle_id": cycle_id, "status": ST_HALTED}

    end_time = ensure_aware_utc(cycle.cycle_end_time) if cycle.cycle_end_time else from_epoch(cycle.cycle_end_epoch)
    if now < end_time:
        return {"cycle_id": cycle_id, "status": ST_NOT_DUE}

    mismatch = await _check_end_time(chain, cycle)
    if mismatch is not None:
        return await _halt(session, cycle_id, audit.PERMANENT_CHAIN_ERROR, mismatch, {"reason": mismatch})

    if cycle.is_resolved:
        stored = await _stored_evaluations(session, cycle_id)
        ranked = sc.rank_slips(stored.values())
        diverged = await _reconcile_winners(session, chain, cycle_id, ranked, None)
        return {"cycle_id": cycle_id, "status": ST_ALREADY_RESOLVED, "divergence": diverged}

    snapshots = await cy.load_snapshot(session, cycle_id)
    if len(snapshots) != sc.MATCH_COUNT:
        await _mark_waiting(session, cycle_id, "snapshot_missing")
        log.info("resolve_cycle waiting cycle_id=%s reason=snapshot_missing matches=%s", cycle_id, len(snapshots))
        return {"cycle_id": cycle_id, "status": ST_WAITING, "reason": "snapshot_missing"}

    outcomes = await get_outcomes_for(session, [s.fixture_id for s in snapshots], CYCLE_MARKETS)
    missing = _missing_markets(snapshots, outcomes)
    allow_void = bool(cycle.partial_resolution_requested)
    if missing and not allow_void:
        if now <= end_time + timedelta(hours=int(cfg.cycle_grace_hours)):
            await _mark_waiting(session, cycle_id, "results_missing:" + ",".join(missing))
            log.info("resolve_cycle waiting cycle_id=%s reason=results_missing missing=%s", cycle_id, ",".join(missing))
            return {"cycle_id": cycle_id, "status": ST_WAITING, "reason": "results_missing", "missing": missing}
        if not cfg.contract_supports_void:
            blocked = "blocked:" + ",".join(missing)
            if cycle.last_error == blocked:
                log.info("resolve_cycle still_blocked cycle_id=%s missing=%s", cycle_id, ",".join(missing))
                return {"cycle_id": cycle_id, "status": ST_BLOCKED, "missing": missing}
            reason = "void markets past grace; contract has no void path"
            await _mark_waiting(session, cycle_id, blocked)
            await audit.record(session, audit.RESOLVER_BLOCKED, "cycle", cycle_id, observed={"missing": missing}, message=reason)
            await session.commit()
            await audit.alert(audit.RESOLVER_BLOCKED, f"cycle {cycle_id}", {"missing": missing})
            return {"cycle_id": cycle_id, "status": ST_BLOCKED, "missing": missing}
        await _mark_partial(session, cycle_id, missing)
        allow_void = True
        log.warning("resolve_cycle partial cycle_id=%s void=%s", cycle_id, ",".join(missing))

    if not cycle.evaluation_completed:
        slips = await cy.load_slips(session, cycle_id)
        ranked = _score_cycle(slips, snapshots, outcomes, min_correct=cfg.oddyssey_min_correct, allow_void=allow_void)
        await _write_evaluations(session, cycle_id, ranked)
        log.info("resolve_cycle evaluated cycle_id=%s slips=%s eligible=%s", cycle_id, len(ranked), sum(1 for s in ranked if s.eligible))
    # Stored rows win over a fresh computation.
    ranked = sc.rank_slips((await _stored_evaluations(session, cycle_id)).values())

    tx_hash: Optional[str] = None
    if not await chain.call("oddyssey", "isCycleResolved", int(cycle_id)):
        payload = sc.cycle_results_payload(snapshots, outcomes)
        try:
            tx = await chain.transact("oddyssey", "resolveDailyCycle", int(cycle_id), payload, gas_kind="resolve")
            tx_hash = tx.tx_hash
        except RevertError as e:
            if e.code != ALREADY_SETTLED:
                return await _halt(session, cycle_id, audit.PERMANENT_CHAIN_ERROR, e.code, {"reason": e.code, "tx_hash": e.tx_hash})
            log.info("resolve_cycle already_resolved cycle_id=%s tx=%s", cycle_id, e.tx_hash)
        except PermanentChainError as e:
            return await _halt(session, cycle_id, audit.PERMANENT_CHAIN_ERROR, e.reason, {"reason": e.reason, "tx_hash": e.tx_hash})
        except TransientError as e:
            await _mark_waiting(session, cycle_id, f"transient: {e}")
            log.warning("resolve_cycle retry cycle_id=%s err=%s", cycle_id, e)
            return {"cycle_id": cycle_id, "status": ST_RETRY, "error": str(e)}

    diverged = await _reconcile_winners(session, chain, cycle_id, ranked, tx_hash)
    log.info("resolve_cycle resolved cycle_id=%s tx=%s divergence=%s", cycle_id, tx_hash, diverged)
    return {"cycle_id": cycle_id, "status": ST_RESOLVED, "tx_hash": tx_hash, "divergence": diverged}


async def resolve_cycle(
    session: AsyncSession,
    chain,
    cycle_id: int,
    *,
    now: Optional[datetime] = None,
    cfg: Settings = settings,
) -> dict:
    """Score, persist, resolve on chain and reconcile one cycle under its advisory lock."""
    now = ensure_aware_utc(now or utcnow())
    async with entity_lock("cycle", int(cycle_id)) as acquired:
        if not acquired:
            return {"cycle_id": int(cycle_id), "status": ST_BUSY}
        try:
            return await _resolve_locked(session, chain, int(cycle_id), now=now, cfg=cfg)
        except Exception:
            await session.rollback()
            raise


async def reevaluate(session: AsyncSession, cycle_id: int, *, cfg: Settings = settings) -> dict:
    """Recompute a cycle's scores and diff them against stored evaluations. Writes nothing."""
    cycle = await _load_cycle(session, cycle_id)
    if cycle is None:
        return {"cycle_id": int(cycle_id), "status": ST_UNKNOWN}
    snapshots = await cy.load_snapshot(session, cycle_id)
    outcomes = await get_outcomes_for(session, [s.fixture_id for s in snapshots], CYCLE_MARKETS)
    missing = _missing_markets(snapshots, outcomes)
    if len(snapshots) != sc.MATCH_COUNT or (missing and not cycle.partial_resolution_requested):
        return {"cycle_id": int(cycle_id), "status": ST_WAITING, "missing": missing}

    slips = await cy.load_slips(session, cycle_id)
    computed = _score_cycle(
        slips,
        snapshots,
        outcomes,
        min_correct=cfg.oddyssey_min_correct,
        allow_void=bool(cycle.partial_resolution_requested),
    )
    stored = await _stored_evaluations(session, cycle_id)

    differences = []
    for s in computed:
        old = stored.get(s.slip_id)
        if old is None:
            differences.append({"slip_id": s.slip_id, "stored": None, "computed": _eval_view(s)})
        elif _eval_view(old) != _eval_view(s):
            differences.append({"slip_id": s.slip_id, "stored": _eval_view(old), "computed": _eval_view(s)})
    log.info("reevaluate cycle_id=%s slips=%s differences=%s", cycle_id, len(computed), len(differences))
    return {"cycle_id": int(cycle_id), "status": "compared", "slips": len(computed), "differences": differences}


def _eval_view(s: sc.SlipScore) -> dict:
    return {"correct_count": s.correct_count, "final_score": str(s.final_score), "rank": s.rank}


async def run(session: AsyncSession, *, chain, shutdown=None, now: Optional[datetime] = None, cfg: Settings = settings) -> dict:
    now = ensure_aware_utc(now or utcnow())
    counts: dict[str, int] = {}
    for cycle_id in await _due_cycle_ids(session, now):
        if shutdown is not None and shutdown.is_set():
            log.info("resolve_cycles shutdown_requested processed=%s", sum(counts.values()))
            break
        try:
            out = await resolve_cycle(session, chain, cycle_id, now=now, cfg=cfg)
        except TransientError as e:
            log.warning("resolve_cycle transient cycle_id=%s err=%s", cycle_id, e)
            out = {"cycle_id": cycle_id, "status": ST_RETRY}
        counts[out["status"]] = counts.get(out["status"], 0) + 1
    log.info("resolve_cycles done %s", " ".join(f"{k}={v}" for k, v in sorted(counts.items())) or "idle")
    return counts
