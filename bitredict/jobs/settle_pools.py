from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from bitredict.core.chain import ALREADY_SETTLED, ORACLE_NOT_SET
from bitredict.core.config import Settings, settings
from bitredict.core.errors import FatalConfigError, PermanentChainError, RevertError, SettlementDivergence, TransientError
from bitredict.core.http import backoff_delay
from bitredict.core.locks import entity_lock
from bitredict.core.logger import get_logger
from bitredict.core.timeutils import ensure_aware_utc, utcnow
from bitredict.data.mappers import VOIDED
from bitredict.services import audit
from bitredict.services import pools as pl
from bitredict.services.markets import parse_market_id
from bitredict.services.outcomes import UNAVAILABLE, decode_outcome, encode_outcome, is_available
from bitredict.services.results_store import get_outcome

log = get_logger("jobs.settle_pools")

# Per-pool outcomes of one settlement attempt.
ST_SETTLED = "settled"
ST_ALREADY_SETTLED = "already_settled"
ST_WAITING = "waiting"
ST_REFUNDED = "refunded"
ST_HALTED = "halted"
ST_RETRY = "retry"
ST_BUSY = "busy"
ST_UNKNOWN = "unknown"
ST_INTERRUPTED = "interrupted"


async def _advance_lifecycle(session: AsyncSession, now: datetime) -> int:
    res = await session.execute(
        text(
            """
            UPDATE oracle.pools
            SET status = CASE
                  WHEN event_end <= :now THEN 'awaiting_result'
                  WHEN betting_end <= :now THEN 'betting_closed'
                  ELSE status
                END,
                updated_at = now()
            WHERE is_settled = false
              AND status IN ('open', 'betting_closed')
              AND (betting_end <= :now OR event_end <= :now)
            """
        ),
        {"now": now},
    )
    return int(res.rowcount or 0)


async def _due_pool_ids(session: AsyncSession, now: datetime, limit: int = 200) -> list[int]:
    res = await session.execute(
        text(
            """
            SELECT pool_id
            FROM oracle.pools
            WHERE is_settled = false
              AND status NOT IN ('settled', 'refunded', 'halted')
              AND event_end < :now
              AND (next_attempt_at IS NULL OR next_attempt_at <= :now)
            ORDER BY event_end ASC, pool_id ASC
            LIMIT :limit
            """
        ),
        {"now": now, "limit": int(limit)},
    )
    return [int(r[0]) for r in res.fetchall()]


async def _load_pool(session: AsyncSession, pool_id: int):
    res = await session.execute(
        text(
            """
            SELECT pool_id, market_id, market_type, predicted_outcome, predicted_outcome_text,
                   event_end, arbitration_deadline, status, is_settled, settle_attempts
            FROM oracle.pools
            WHERE pool_id=:pid
            """
        ),
        {"pid": int(pool_id)},
    )
    return res.first()


async def _fixture_status(session: AsyncSession, fixture_id: str) -> Optional[str]:
    res = await session.execute(text("SELECT status FROM oracle.fixtures WHERE id=:fid"), {"fid": str(fixture_id)})
    row = res.first()
    return row.status if row else None


async def _mark_waiting(session: AsyncSession, pool_id: int, reason: str) -> None:
    await session.execute(
        text(
            """
            UPDATE oracle.pools
            SET status='waiting_for_result', last_error=:reason, updated_at=now()
            WHERE pool_id=:pid AND is_settled=false AND status NOT IN ('refunded', 'halted')
            """
        ),
        {"pid": int(pool_id), "reason": reason},
    )


async def _schedule_retry(session: AsyncSession, pool_id: int, error: str, next_attempt_at: datetime) -> None:
    await session.execute(
        text(
            """
            UPDATE oracle.pools
            SET settle_attempts = settle_attempts + 1, last_error=:error,
                next_attempt_at=:next_at, updated_at=now()
            WHERE pool_id=:pid
            """
        ),
        {"pid": int(pool_id), "error": error[:2000], "next_at": next_attempt_at},
    )


async def _mark_halted(session: AsyncSession, pool_id: int, error: str) -> None:
    await session.execute(
        text("UPDATE oracle.pools SET status='halted', last_error=:error, updated_at=now() WHERE pool_id=:pid"),
        {"pid": int(pool_id), "error": error[:2000]},
    )


async def _mark_refunded(session: AsyncSession, pool_id: int, reason: str, tx_hash: Optional[str]) -> None:
    await session.execute(
        text(
            """
            UPDATE oracle.pools
            SET status='refunded', refund_reason=:reason, refunded_at=now(),
                settlement_tx_hash=COALESCE(:tx, settlement_tx_hash), last_error=NULL, updated_at=now()
            WHERE pool_id=:pid
            """
        ),
        {"pid": int(pool_id), "reason": reason, "tx": tx_hash},
    )


async def _apply_chain_settlement(
    session: AsyncSession,
    state: pl.PoolChainState,
    tx_hash: Optional[str],
) -> None:
    """Project the settled on-chain pool struct into the DB row (chain is authoritative)."""
    await session.execute(
        text(
            """
            UPDATE oracle.pools
            SET is_settled=true, status='settled', creator_side_won=:csw,
                result=:result, result_text=:result_text, result_timestamp=:result_ts,
                settlement_tx_hash=COALESCE(:tx, settlement_tx_hash),
                last_error=NULL, next_attempt_at=NULL, updated_at=now()
            WHERE pool_id=:pid
            """
        ),
        {
            "pid": state.pool_id,
            "csw": state.creator_side_won,
            "result": state.result,
            "result_text": state.result_code,
            "result_ts": state.result_timestamp,
            "tx": tx_hash,
        },
    )


async def _read_pool(chain, pool_id: int) -> pl.PoolChainState:
    return pl.parse_pool_struct(pool_id, await chain.call("pool_core", "getPool", int(pool_id)))


def _divergence(pool, derived_code: Optional[str], state: pl.PoolChainState) -> Optional[SettlementDivergence]:
    if not derived_code:
        return None
    predicted = decode_outcome(pool.predicted_outcome) if pool.predicted_outcome is not None else (pool.predicted_outcome_text or "")
    expected = {"result": derived_code, "creator_side_won": pl.creator_side_wins(predicted, derived_code)}
    observed = {"result": state.result_code, "creator_side_won": state.creator_side_won}
    if expected == observed:
        return None
    return SettlementDivergence(state.pool_id, expected, observed)


async def _reconcile(
    session: AsyncSession,
    pool,
    derived_code: Optional[str],
    state: pl.PoolChainState,
    tx_hash: Optional[str],
    *,
    divergence_recorded: bool = False,
) -> None:
    await _apply_chain_settlement(session, state, tx_hash)
    div = None if divergence_recorded else _divergence(pool, derived_code, state)
    if div is not None:
        log.warning("settle_pool divergence pool_id=%s expected=%s observed=%s", state.pool_id, div.expected, div.observed)
        await audit.record_settlement_divergence(session, div)
    await session.commit()


async def _halt(session: AsyncSession, pool_id: int, err: BaseException) -> dict:
    reason = getattr(err, "reason", None) or str(err)
    log.error("settle_pool halted pool_id=%s reason=%s", pool_id, reason)
    await _mark_halted(session, pool_id, reason)
    await audit.record(
        session,
        audit.PERMANENT_CHAIN_ERROR,
        "pool",
        pool_id,
        observed={"reason": reason, "tx_hash": getattr(err, "tx_hash", None)},
        message=str(err),
    )
    await session.commit()
    await audit.alert(audit.PERMANENT_CHAIN_ERROR, f"pool {pool_id}", {"reason": reason})
    return {"pool_id": pool_id, "status": ST_HALTED, "reason": reason}


async def _refund(session: AsyncSession, chain, state: pl.PoolChainState, reason: str) -> dict:
    """Refund path: no oracle outcome is ever submitted for these pools."""
    tx_hash = None
    if state.total_bettor_stake == 0:
        try:
            tx = await chain.transact("pool_core", "checkAndRefundEmptyPool", state.pool_id, gas_kind="refund")
            tx_hash = tx.tx_hash
        except RevertError as e:
            if e.code != ALREADY_SETTLED:
                raise
    await _mark_refunded(session, state.pool_id, reason, tx_hash)
    await session.commit()
    log.info("settle_pool refunded pool_id=%s reason=%s tx=%s", state.pool_id, reason, tx_hash)
    return {"pool_id": state.pool_id, "status": ST_REFUNDED, "reason": reason, "tx_hash": tx_hash}


async def _submit_and_settle(chain, pool_id: int, market_id: str, code: str) -> Optional[str]:
    """One pass of the oracle-then-settle workflow. Returns the settlement tx hash."""
    is_set, data = await chain.call("guided_oracle", "getOutcome", market_id)
    signer = (chain.signer_address or "").lower()
    oracle_bot = str(await chain.call("guided_oracle", "oracleBot") or "").lower()

    if not is_set:
        if signer != oracle_bot:
            raise FatalConfigError(f"signer {chain.signer_address} is not the guided oracle bot {oracle_bot}")
        try:
            await chain.transact("guided_oracle", "submitOutcome", market_id, encode_outcome(code), gas_kind="submit")
            log.info("settle_pool outcome_submitted pool_id=%s market_id=%s outcome=%s", pool_id, market_id, code)
        except RevertError as e:
            if e.code != ALREADY_SETTLED:
                raise

    if signer == oracle_bot:
        call = chain.encode_call("pool_core", "settlePoolAutomatically", int(pool_id))
        tx = await chain.transact("guided_oracle", "executeCall", chain.address("pool_core"), call, gas_kind="settle")
    else:
        tx = await chain.transact("pool_core", "settlePoolAutomatically", int(pool_id), gas_kind="settle")
    return tx.tx_hash


async def _settle_locked(
    session: AsyncSession,
    chain,
    pool_id: int,
    *,
    now: datetime,
    cfg: Settings,
    shutdown=None,
    _sleep=asyncio.sleep,
) -> dict:
    pool = await _load_pool(session, pool_id)
    if pool is None:
        return {"pool_id": pool_id, "status": ST_UNKNOWN}
    if pool.is_settled or pool.status in (pl.SETTLED, pl.REFUNDED):
        return {"pool_id": pool_id, "status": ST_ALREADY_SETTLED}

    state = await _read_pool(chain, pool_id)
    binding = parse_market_id(pool.market_id or state.market_id, pool.market_type if pool.market_type is not None else state.market_type)
    derived: Optional[str] = None
    if binding is not None:
        derived = await get_outcome(session, binding.fixture_id, binding.family)

    if state.is_settled:
        await _reconcile(session, pool, derived if is_available(derived) else None, state, None)
        log.info("settle_pool reconciled pool_id=%s result=%s creator_side_won=%s", pool_id, state.result_code, state.creator_side_won)
        return {"pool_id": pool_id, "status": ST_ALREADY_SETTLED}

    if binding is None:
        return await _halt(session, pool_id, PermanentChainError(f"UNBINDABLE_MARKET_ID:{pool.market_id}"))

    event_end = ensure_aware_utc(pool.event_end) if pool.event_end else state.event_end
    deadline = pl.arbitration_deadline(event_end, state.arbitration_deadline, cfg.arbitration_window_hours)
    fixture_status = await _fixture_status(session, binding.fixture_id)
    past_deadline = now >= deadline

    refund_reason = None
    if fixture_status in VOIDED:
        refund_reason = f"fixture_{fixture_status.lower()}"
    elif derived == UNAVAILABLE:
        refund_reason = f"market_unavailable:{binding.family}"
    elif state.total_bettor_stake == 0 and past_deadline:
        refund_reason = "no_bets"
    if refund_reason is not None:
        if past_deadline:
            return await _refund(session, chain, state, refund_reason)
        await _mark_waiting(session, pool_id, refund_reason)
        await session.commit()
        log.info("settle_pool waiting pool_id=%s reason=%s refund_after=%s", pool_id, refund_reason, deadline.isoformat())
        return {"pool_id": pool_id, "status": ST_WAITING, "reason": refund_reason}

    if not derived:
        await _mark_waiting(session, pool_id, "no_result")
        await session.commit()
        log.info("settle_pool waiting pool_id=%s reason=no_result fixture_id=%s market=%s", pool_id, binding.fixture_id, binding.family)
        return {"pool_id": pool_id, "status": ST_WAITING, "reason": "no_result"}

    market_id = state.market_id or pool.market_id
    is_set, data = await chain.call("guided_oracle", "getOutcome", market_id)
    oracle_mismatch = bool(is_set) and decode_outcome(data) != derived
    if oracle_mismatch:
        # Chain value wins; never overwrite an outcome already on the oracle.
        # The settled pool then disagrees with the derived result too; this record covers both.
        div = SettlementDivergence(pool_id, {"oracle_outcome": derived}, {"oracle_outcome": decode_outcome(data)})
        log.warning("settle_pool oracle_mismatch pool_id=%s derived=%s oracle=%s", pool_id, derived, decode_outcome(data))
        await audit.record_settlement_divergence(session, div)
        await session.commit()

    last_error = ""
    tx_hash: Optional[str] = None
    for attempt in range(max(1, int(cfg.settlement_max_attempts))):
        if shutdown is not None and shutdown.is_set():
            return {"pool_id": pool_id, "status": ST_INTERRUPTED}
        try:
            tx_hash = await _submit_and_settle(chain, pool_id, market_id, derived)
            break
        except RevertError as e:
            if e.code == ALREADY_SETTLED:
                log.info("settle_pool already_settled pool_id=%s tx=%s", pool_id, e.tx_hash)
                tx_hash = None
                break
            if e.code == ORACLE_NOT_SET:
                last_error = f"revert {e.code}"
            else:
                return await _halt(session, pool_id, PermanentChainError(e.code, tx_hash=e.tx_hash))
        except PermanentChainError as e:
            return await _halt(session, pool_id, e)
        except TransientError as e:
            last_error = str(e)
        delay = backoff_delay(attempt, cfg.settlement_backoff_base_seconds, cfg.settlement_backoff_max_seconds)
        log.warning("settle_pool retry pool_id=%s attempt=%s delay=%.1fs err=%s", pool_id, attempt + 1, delay, last_error)
        await _sleep(delay)
    else:
        next_at = now + timedelta(seconds=cfg.settlement_backoff_max_seconds)
        await _schedule_retry(session, pool_id, last_error, next_at)
        await session.commit()
        return {"pool_id": pool_id, "status": ST_RETRY, "error": last_error}

    state = await _read_pool(chain, pool_id)
    if not state.is_settled:
        next_at = now + timedelta(seconds=cfg.settlement_backoff_base_seconds)
        await _schedule_retry(session, pool_id, "settle_tx_confirmed_but_pool_unsettled", next_at)
        await session.commit()
        return {"pool_id": pool_id, "status": ST_RETRY, "error": "pool_unsettled_after_tx"}

    await _reconcile(session, pool, derived, state, tx_hash, divergence_recorded=oracle_mismatch)
    log.info(
        "settle_pool settled pool_id=%s result=%s creator_side_won=%s tx=%s",
        pool_id,
        state.result_code,
        state.creator_side_won,
        tx_hash,
    )
    return {"pool_id": pool_id, "status": ST_SETTLED if tx_hash else ST_ALREADY_SETTLED, "tx_hash": tx_hash}


async def settle_pool(
    session: AsyncSession,
    chain,
    pool_id: int,
    *,
    now: Optional[datetime] = None,
    cfg: Settings = settings,
    shutdown=None,
    _sleep=asyncio.sleep,
) -> dict:
    """Drive one pool to its settled (or refunded) state, at most once.

    Serialized per pool by an advisory lock; a busy lock means another worker
    owns the pool this tick.
    """
    now = ensure_aware_utc(now or utcnow())
    async with entity_lock("pool", int(pool_id), timeout=cfg.settlement_lock_timeout_seconds) as acquired:
        if not acquired:
            return {"pool_id": int(pool_id), "status": ST_BUSY}
        try:
            return await _settle_locked(session, chain, int(pool_id), now=now, cfg=cfg, shutdown=shutdown, _sleep=_sleep)
        except Exception:
            await session.rollback()
            raise


async def run(session: AsyncSession, *, chain, shutdown=None, now: Optional[datetime] = None, cfg: Settings = settings) -> dict:
    now = ensure_aware_utc(now or utcnow())
    advanced = await _advance_lifecycle(session, now)
    await session.commit()

    counts: dict[str, int] = {}
    for pool_id in await _due_pool_ids(session, now):
        if shutdown is not None and shutdown.is_set():
            log.info("settle_pools shutdown_requested processed=%s", sum(counts.values()))
            break
        try:
            out = await settle_pool(session, chain, pool_id, now=now, cfg=cfg, shutdown=shutdown)
        except TransientError as e:
            # Lock/read failures before the attempt loop; next tick retries.
            log.warning("settle_pool transient pool_id=%s err=%s", pool_id, e)
            out = {"pool_id": pool_id, "status": ST_RETRY}
        counts[out["status"]] = counts.get(out["status"], 0) + 1

    summary = {"advanced": advanced, **counts}
    log.info("settle_pools done %s", " ".join(f"{k}={v}" for k, v in sorted(summary.items())))
    return summary
