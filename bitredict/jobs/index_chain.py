from __future__ import annotations

import json
from typing import Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from bitredict.core.config import Settings, settings
from bitredict.core.logger import get_logger
from bitredict.core.timeutils import ensure_aware_utc, from_epoch, utcnow
from bitredict.services import audit
from bitredict.services import cycles as cy
from bitredict.services import pools as pl
from bitredict.services.outcomes import decode_outcome

log = get_logger("jobs.index_chain")

STREAM = "contracts"


async def _load_cursor(session: AsyncSession, stream: str = STREAM):
    res = await session.execute(
        text("SELECT last_block, last_block_hash FROM oracle.indexer_cursors WHERE stream=:s"),
        {"s": stream},
    )
    return res.first()


async def _save_cursor(session: AsyncSession, block: int, block_hash: Optional[str], stream: str = STREAM) -> None:
    await session.execute(
        text(
            """
            INSERT INTO oracle.indexer_cursors(stream, last_block, last_block_hash, updated_at)
            VALUES(:s, :b, :h, now())
            ON CONFLICT (stream) DO UPDATE
            SET last_block=:b, last_block_hash=:h, updated_at=now()
            """
        ),
        {"s": stream, "b": int(block), "h": block_hash},
    )


async def _stored_events(session: AsyncSession, from_block: int, to_block: int) -> dict[tuple[str, int], dict]:
    res = await session.execute(
        text(
            """
            SELECT tx_hash, log_index, block_number, block_hash, contract, event, args
            FROM oracle.chain_events
            WHERE block_number BETWEEN :a AND :b
            """
        ),
        {"a": int(from_block), "b": int(to_block)},
    )
    out = {}
    for r in res.fetchall():
        args = r.args if not isinstance(r.args, str) else json.loads(r.args)
        out[(r.tx_hash, int(r.log_index))] = {
            "tx_hash": r.tx_hash,
            "log_index": int(r.log_index),
            "block_number": int(r.block_number),
            "block_hash": r.block_hash,
            "contract": r.contract,
            "event": r.event,
            "args": args,
        }
    return out


async def _upsert_event(session: AsyncSession, ev: dict) -> None:
    await session.execute(
        text(
            """
            INSERT INTO oracle.chain_events(tx_hash, log_index, block_number, block_hash, contract, event, args, created_at)
            VALUES(:tx, :li, :block, :bh, :contract, :event, CAST(:args AS jsonb), now())
            ON CONFLICT (tx_hash, log_index) DO UPDATE
            SET block_number=:block, block_hash=:bh, contract=:contract, event=:event, args=CAST(:args AS jsonb)
            """
        ),
        {
            "tx": ev["tx_hash"],
            "li": int(ev["log_index"]),
            "block": int(ev["block_number"]),
            "bh": ev["block_hash"],
            "contract": ev["contract"],
            "event": ev["event"],
            "args": json.dumps(ev["args"], default=str),
        },
    )


async def _delete_event(session: AsyncSession, ev: dict) -> None:
    await session.execute(
        text("DELETE FROM oracle.chain_events WHERE tx_hash=:tx AND log_index=:li"),
        {"tx": ev["tx_hash"], "li": int(ev["log_index"])},
    )


async def _touch_user(session: AsyncSession, address: str) -> None:
    if not address:
        return
    await session.execute(
        text(
            """
            INSERT INTO core.users(address, first_seen_at, last_seen_at)
            VALUES(:a, now(), now())
            ON CONFLICT (address) DO UPDATE SET last_seen_at=now()
            """
        ),
        {"a": str(address).lower()},
    )


async def _upsert_pool(session: AsyncSession, state: pl.PoolChainState, *, tx_hash=None, block_number=None, cfg: Settings = settings) -> None:
    now = utcnow()
    if state.is_settled:
        status = pl.SETTLED
    else:
        status = pl.lifecycle_status(now, state.betting_end, state.event_end)
    deadline = None
    if state.event_end is not None:
        deadline = pl.arbitration_deadline(state.event_end, state.arbitration_deadline, cfg.arbitration_window_hours)
    await session.execute(
        text(
            """
            INSERT INTO oracle.pools(
              pool_id, creator, odds, oracle_type, market_type, market_id,
              predicted_outcome, predicted_outcome_text, creator_stake, total_creator_side_stake,
              total_bettor_stake, event_start, event_end, betting_end, arbitration_deadline,
              is_private, uses_bitr, is_settled, creator_side_won, result, result_text, result_timestamp,
              status, created_tx_hash, created_block, created_at, updated_at
            )
            VALUES(
              :pid, :creator, :odds, :oracle_type, :market_type, :market_id,
              :predicted, :predicted_text, :creator_stake, :creator_side_stake,
              :bettor_stake, :event_start, :event_end, :betting_end, :deadline,
              :private, :bitr, :settled, :csw, :result, :result_text, :result_ts,
              :status, :tx, :block, now(), now()
            )
            ON CONFLICT (pool_id) DO UPDATE
            SET creator_stake=:creator_stake, total_creator_side_stake=:creator_side_stake,
                total_bettor_stake=:bettor_stake,
                created_tx_hash=COALESCE(oracle.pools.created_tx_hash, :tx),
                created_block=COALESCE(oracle.pools.created_block, :block),
                updated_at=now()
            """
        ),
        {
            "pid": state.pool_id,
            "creator": state.creator.lower(),
            "odds": state.odds,
            "oracle_type": pl.ORACLE_TYPES.get(state.oracle_type, str(state.oracle_type)),
            "market_type": state.market_type,
            "market_id": state.market_id,
            "predicted": state.predicted_outcome,
            "predicted_text": state.predicted_code,
            "creator_stake": str(state.creator_stake),
            "creator_side_stake": str(state.total_creator_side_stake),
            "bettor_stake": str(state.total_bettor_stake),
            "event_start": state.event_start,
            "event_end": state.event_end,
            "betting_end": state.betting_end,
            "deadline": deadline,
            "private": state.is_private,
            "bitr": state.uses_bitr,
            "settled": state.is_settled,
            "csw": state.creator_side_won if state.is_settled else None,
            "result": state.result if state.is_settled else None,
            "result_text": state.result_code if state.is_settled else None,
            "result_ts": state.result_timestamp,
            "status": status,
            "tx": tx_hash,
            "block": block_number,
        },
    )


async def _refresh_pool_settlement(session: AsyncSession, chain, pool_id: int) -> None:
    """Re-read a pool after a reorg removed its settlement or refund event."""
    state = pl.parse_pool_struct(pool_id, await chain.call("pool_core", "getPool", int(pool_id)))
    if state.is_settled:
        return
    await session.execute(
        text(
            """
            UPDATE oracle.pools
            SET is_settled=false, creator_side_won=NULL, result=NULL, result_text=NULL, result_timestamp=NULL,
                settlement_tx_hash=NULL, refund_reason=NULL, refunded_at=NULL,
                status='awaiting_result', next_attempt_at=NULL, updated_at=now()
            WHERE pool_id=:pid AND status IN ('settled', 'refunded')
            """
        ),
        {"pid": int(pool_id)},
    )


async def _on_pool_created(session: AsyncSession, chain, ev: dict) -> None:
    pool_id = int(ev["args"]["poolId"])
    state = pl.parse_pool_struct(pool_id, await chain.call("pool_core", "getPool", pool_id))
    await _upsert_pool(session, state, tx_hash=ev["tx_hash"], block_number=ev["block_number"])
    await _touch_user(session, state.creator)


async def _check_bet_timing(session: AsyncSession, chain, ev: dict) -> None:
    """Audit a bet mined after its pool's event start. The bet itself stays projected."""
    pool_id = int(ev["args"]["poolId"])
    res = await session.execute(text("SELECT event_start FROM oracle.pools WHERE pool_id=:pid"), {"pid": pool_id})
    pool = res.first()
    if pool is None or pool.event_start is None:
        return
    placed_at = from_epoch(await chain.block_timestamp(int(ev["block_number"])))
    event_start = ensure_aware_utc(pool.event_start)
    if placed_at is None or placed_at <= event_start:
        return
    log.warning("index bet_after_event_start pool_id=%s tx=%s placed_at=%s event_start=%s", pool_id, ev["tx_hash"], placed_at, event_start)
    await audit.record(
        session,
        audit.BET_AFTER_EVENT_START,
        "pool",
        pool_id,
        expected={"event_start": event_start.isoformat()},
        observed={"placed_at": placed_at.isoformat(), "tx_hash": ev["tx_hash"], "log_index": int(ev["log_index"])},
    )


async def _on_bet_placed(session: AsyncSession, chain, ev: dict) -> None:
    args = ev["args"]
    res = await session.execute(
        text(
            """
            INSERT INTO oracle.bets(pool_id, bettor, amount, is_for_outcome, tx_hash, log_index, block_number, created_at)
            SELECT :pid, :bettor, :amount, :for_outcome, :tx, :li, :block, now()
            WHERE EXISTS (SELECT 1 FROM oracle.pools WHERE pool_id=:pid)
            ON CONFLICT (tx_hash, log_index) DO NOTHING
            """
        ),
        {
            "pid": int(args["poolId"]),
            "bettor": str(args["bettor"]).lower(),
            "amount": str(int(args["amount"])),
            "for_outcome": bool(args["isForOutcome"]),
            "tx": ev["tx_hash"],
            "li": int(ev["log_index"]),
            "block": int(ev["block_number"]),
        },
    )
    if not res.rowcount:
        log.warning("index bet_skipped pool_id=%s tx=%s reason=unknown_pool_or_duplicate", args["poolId"], ev["tx_hash"])
    else:
        await _check_bet_timing(session, chain, ev)
    await _touch_user(session, args["bettor"])


async def _on_pool_settled(session: AsyncSession, chain, ev: dict) -> None:
    args = ev["args"]
    result = args["result"]
    await session.execute(
        text(
            """
            UPDATE oracle.pools
            SET is_settled=true, status='settled', result=:result, result_text=:result_text,
                creator_side_won=:csw, result_timestamp=:ts,
                settlement_tx_hash=COALESCE(settlement_tx_hash, :tx), next_attempt_at=NULL, updated_at=now()
            WHERE pool_id=:pid
            """
        ),
        {
            "pid": int(args["poolId"]),
            "result": bytes.fromhex(result[2:]) if isinstance(result, str) else bytes(result),
            "result_text": decode_outcome(result),
            "csw": bool(args["creatorSideWon"]),
            "ts": from_epoch(int(args.get("timestamp") or 0)),
            "tx": ev["tx_hash"],
        },
    )


async def _on_pool_refunded(session: AsyncSession, chain, ev: dict) -> None:
    args = ev["args"]
    await session.execute(
        text(
            """
            UPDATE oracle.pools
            SET status='refunded', refund_reason=COALESCE(refund_reason, :reason),
                refunded_at=COALESCE(refunded_at, now()),
                settlement_tx_hash=COALESCE(settlement_tx_hash, :tx), updated_at=now()
            WHERE pool_id=:pid
            """
        ),
        {"pid": int(args["poolId"]), "reason": str(args.get("reason") or "chain_refund"), "tx": ev["tx_hash"]},
    )


async def _on_outcome_submitted(session: AsyncSession, chain, ev: dict) -> None:
    # marketId is an indexed string, so only its hash is in the log; the raw row is the projection.
    log.info("index outcome_submitted tx=%s data=%s", ev["tx_hash"], decode_outcome(ev["args"].get("resultData")))


async def _on_cycle_started(session: AsyncSession, chain, ev: dict) -> None:
    await cy.ensure_cycle(session, chain, int(ev["args"]["cycleId"]), tx_hash=ev["tx_hash"], block_number=ev["block_number"])


async def _on_slip_placed(session: AsyncSession, chain, ev: dict) -> None:
    slip_id = int(ev["args"]["slipId"])
    raw = await chain.call("oddyssey", "getSlip", slip_id)
    player, picks = cy.picks_from_chain(raw)
    await cy.store_slip(
        session,
        slip_id,
        int(ev["args"]["cycleId"]),
        player.lower(),
        picks,
        placed_at=from_epoch(int(raw[2])),
        tx_hash=ev["tx_hash"],
        log_index=int(ev["log_index"]),
        block_number=int(ev["block_number"]),
    )
    await _touch_user(session, player)


async def _on_cycle_resolved(session: AsyncSession, chain, ev: dict) -> None:
    await session.execute(
        text(
            """
            UPDATE oracle.oddyssey_cycles
            SET chain_resolved=true, prize_pool=:prize, updated_at=now()
            WHERE cycle_id=:cid
            """
        ),
        {"cid": int(ev["args"]["cycleId"]), "prize": str(int(ev["args"].get("prizePool") or 0))},
    )


PROJECTIONS = {
    "PoolCreated": _on_pool_created,
    "BetPlaced": _on_bet_placed,
    "PoolSettled": _on_pool_settled,
    "PoolRefunded": _on_pool_refunded,
    "OutcomeSubmitted": _on_outcome_submitted,
    "CycleStarted": _on_cycle_started,
    "CycleCreated": _on_cycle_started,
    "SlipPlaced": _on_slip_placed,
    "CycleResolved": _on_cycle_resolved,
}


async def _revert(session: AsyncSession, chain, ev: dict) -> None:
    """Undo the projection of a log that is no longer on the canonical chain."""
    name = ev["event"]
    args = ev["args"] or {}
    if name == "PoolCreated":
        await session.execute(
            text("DELETE FROM oracle.bets WHERE pool_id=:pid"),
            {"pid": int(args["poolId"])},
        )
        await session.execute(
            text("DELETE FROM oracle.pools WHERE pool_id=:pid AND created_tx_hash=:tx AND is_settled=false"),
            {"pid": int(args["poolId"]), "tx": ev["tx_hash"]},
        )
    elif name == "BetPlaced":
        await session.execute(
            text("DELETE FROM oracle.bets WHERE tx_hash=:tx AND log_index=:li"),
            {"tx": ev["tx_hash"], "li": int(ev["log_index"])},
        )
    elif name in ("PoolSettled", "PoolRefunded"):
        await _refresh_pool_settlement(session, chain, int(args["poolId"]))
    elif name in ("CycleStarted", "CycleCreated"):
        params = {"cid": int(args["cycleId"]), "tx": ev["tx_hash"]}
        owned = (
            await session.execute(
                text("SELECT 1 FROM oracle.oddyssey_cycles WHERE cycle_id=:cid AND created_tx_hash=:tx AND evaluation_completed=false"),
                params,
            )
        ).first()
        if owned is not None:
            await session.execute(text("DELETE FROM oracle.cycle_matches_snapshot WHERE cycle_id=:cid"), params)
            await session.execute(text("DELETE FROM oracle.oddyssey_cycles WHERE cycle_id=:cid"), params)
    elif name == "SlipPlaced":
        await session.execute(
            text(
                """
                DELETE FROM oracle.oddyssey_slips s
                WHERE s.tx_hash=:tx AND s.log_index=:li
                  AND NOT EXISTS (SELECT 1 FROM oracle.slip_evaluations e WHERE e.slip_id = s.slip_id)
                """
            ),
            {"tx": ev["tx_hash"], "li": int(ev["log_index"])},
        )
    elif name == "CycleResolved":
        await session.execute(
            text("UPDATE oracle.oddyssey_cycles SET chain_resolved=false, updated_at=now() WHERE cycle_id=:cid"),
            {"cid": int(args["cycleId"])},
        )
    await _delete_event(session, ev)
    log.warning("index reorg_reverted event=%s tx=%s log_index=%s block=%s", name, ev["tx_hash"], ev["log_index"], ev["block_number"])


async def index_range(session: AsyncSession, chain, from_block: int, to_block: int) -> dict:
    """Apply one batch: drop orphaned logs, project new ones, advance the cursor. Commits once."""
    fresh = await chain.get_events(from_block, to_block)
    stored = await _stored_events(session, from_block, to_block)
    canonical = {(e["tx_hash"], int(e["log_index"])): e for e in fresh}

    reverted = 0
    for key, old in sorted(stored.items(), key=lambda kv: (-kv[1]["block_number"], -kv[1]["log_index"])):
        new = canonical.get(key)
        if new is None or new["block_hash"] != old["block_hash"]:
            await _revert(session, chain, old)
            reverted += 1

    applied = 0
    for ev in fresh:
        key = (ev["tx_hash"], int(ev["log_index"]))
        old = stored.get(key)
        if old is not None and old["block_hash"] == ev["block_hash"]:
            continue
        handler = PROJECTIONS.get(ev["event"])
        if handler is not None:
            await handler(session, chain, ev)
        await _upsert_event(session, ev)
        applied += 1

    await _save_cursor(session, to_block, await chain.block_hash(to_block))
    await session.commit()
    if applied or reverted:
        log.info("index batch from=%s to=%s applied=%s reverted=%s", from_block, to_block, applied, reverted)
    return {"applied": applied, "reverted": reverted}


async def _index_until_head(session: AsyncSession, chain, start: int, *, shutdown=None, cfg: Settings = settings) -> dict:
    head = await chain.block_number()
    batch = max(1, int(cfg.indexer_batch_blocks))
    totals = {"from": start, "to": start - 1, "batches": 0, "applied": 0, "reverted": 0, "head": head}
    block = start
    while block <= head:
        if shutdown is not None and shutdown.is_set():
            log.info("index shutdown_requested at_block=%s", block)
            break
        end = min(block + batch - 1, head)
        out = await index_range(session, chain, block, end)
        totals["batches"] += 1
        totals["applied"] += out["applied"]
        totals["reverted"] += out["reverted"]
        totals["to"] = end
        block = end + 1
    return totals


async def run(session: AsyncSession, *, chain, shutdown=None, cfg: Settings = settings) -> dict:
    cursor = await _load_cursor(session)
    depth = max(0, int(cfg.indexer_reorg_depth))
    if cursor is None:
        start = int(cfg.indexer_start_block)
    else:
        last = int(cursor.last_block)
        if cursor.last_block_hash and await chain.block_hash(last) != cursor.last_block_hash:
            log.warning("index reorg_detected block=%s stored_hash=%s", last, cursor.last_block_hash)
        start = max(int(cfg.indexer_start_block), last - depth)
    summary = await _index_until_head(session, chain, start, shutdown=shutdown, cfg=cfg)
    log.info(
        "index_chain done from=%s to=%s head=%s applied=%s reverted=%s",
        summary["from"],
        summary["to"],
        summary["head"],
        summary["applied"],
        summary["reverted"],
    )
    return summary


async def rescan(session: AsyncSession, chain, from_block: int, *, shutdown=None, cfg: Settings = settings) -> dict:
    """Re-index from ``from_block`` to head, reverting any stored log no longer on chain."""
    if int(from_block) < 0:
        raise ValueError("from_block must be >= 0")
    log.warning("index rescan from_block=%s", from_block)
    return await _index_until_head(session, chain, int(from_block), shutdown=shutdown, cfg=cfg)
