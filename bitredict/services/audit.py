from __future__ import annotations

import json

import httpx
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from bitredict.core.config import settings
from bitredict.core.errors import ResolutionDivergence, ResultConflict, SettlementDivergence
from bitredict.core.logger import get_logger
from bitredict.data.providers import telegram

log = get_logger("services.audit")

SETTLEMENT_DIVERGENCE = "settlement_divergence"
RESOLUTION_DIVERGENCE = "resolution_divergence"
RESULT_CONFLICT = "result_conflict"
PERMANENT_CHAIN_ERROR = "permanent_chain_error"
FATAL_CONFIG = "fatal_config"
RESOLVER_BLOCKED = "resolver_blocked"
BET_AFTER_EVENT_START = "bet_after_event_start"


async def record(
    session: AsyncSession,
    kind: str,
    entity_type: str,
    entity_id: object,
    *,
    expected: dict | list | None = None,
    observed: dict | list | None = None,
    message: str | None = None,
) -> None:
    await session.execute(
        text(
            """
            INSERT INTO oracle.audit_log(kind, entity_type, entity_id, expected, observed, message, created_at)
            VALUES(:kind, :etype, :eid, CAST(:expected AS jsonb), CAST(:observed AS jsonb), :message, now())
            """
        ),
        {
            "kind": kind,
            "etype": entity_type,
            "eid": str(entity_id),
            "expected": json.dumps(expected, default=str) if expected is not None else None,
            "observed": json.dumps(observed, default=str) if observed is not None else None,
            "message": message,
        },
    )


async def alert(kind: str, entity: str, details: dict) -> bool:
    """Log an operator alert and deliver it to Telegram when configured.

    Delivery is best effort: a failed send is logged and never masks the
    condition being reported.
    """
    log.error("alert kind=%s entity=%s details=%s", kind, entity, json.dumps(details, default=str))
    chat_id = settings.alert_chat_id
    if chat_id is None or not (settings.telegram_bot_token or "").strip():
        return False
    try:
        await telegram.send_message(chat_id, telegram.format_alert(kind, entity, details))
    except (httpx.HTTPError, RuntimeError, ValueError):
        log.exception("alert_delivery_failed kind=%s entity=%s", kind, entity)
        return False
    return True


async def record_settlement_divergence(session: AsyncSession, err: SettlementDivergence) -> None:
    await record(
        session,
        SETTLEMENT_DIVERGENCE,
        "pool",
        err.pool_id,
        expected=err.expected,
        observed=err.observed,
        message=str(err),
    )
    await alert(SETTLEMENT_DIVERGENCE, f"pool {err.pool_id}", {"expected": err.expected, "observed": err.observed})


async def record_resolution_divergence(session: AsyncSession, err: ResolutionDivergence) -> None:
    await record(
        session,
        RESOLUTION_DIVERGENCE,
        "cycle",
        err.cycle_id,
        expected=err.expected,
        observed=err.observed,
        message=str(err),
    )
    await alert(RESOLUTION_DIVERGENCE, f"cycle {err.cycle_id}", {"expected": err.expected, "observed": err.observed})


async def record_result_conflict(session: AsyncSession, err: ResultConflict) -> None:
    await session.execute(
        text(
            """
            INSERT INTO oracle.result_conflicts(fixture_id, stored, incoming, created_at)
            SELECT :fid, CAST(:stored AS jsonb), CAST(:incoming AS jsonb), now()
            WHERE NOT EXISTS (
              SELECT 1 FROM oracle.result_conflicts
              WHERE fixture_id=:fid AND resolved_at IS NULL AND incoming=CAST(:incoming AS jsonb)
            )
            """
        ),
        {
            "fid": err.fixture_id,
            "stored": json.dumps(err.stored, sort_keys=True),
            "incoming": json.dumps(err.incoming, sort_keys=True),
        },
    )
    await record(session, RESULT_CONFLICT, "fixture", err.fixture_id, expected=err.stored, observed=err.incoming)
    await alert(RESULT_CONFLICT, f"fixture {err.fixture_id}", {"stored": err.stored, "incoming": err.incoming})


async def open_conflict_fixtures(session: AsyncSession) -> set[str]:
    res = await session.execute(text("SELECT DISTINCT fixture_id FROM oracle.result_conflicts WHERE resolved_at IS NULL"))
    return {str(r[0]) for r in res.fetchall()}
