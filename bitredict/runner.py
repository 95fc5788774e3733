import asyncio
import json
import signal
import time
import traceback
from functools import partial
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from bitredict.core.chain import ChainClient
from bitredict.core.config import Settings, settings
from bitredict.core.db import SessionLocal, init_db
from bitredict.core.errors import FatalConfigError
from bitredict.core.http import close_http_clients
from bitredict.core.locks import entity_lock
from bitredict.core.logger import get_logger, set_component
from bitredict.core.timeutils import utcnow
from bitredict.jobs import index_chain, ingest_fixtures, resolve_cycles, settle_pools
from bitredict.services import audit

log = get_logger("runner")

COMPONENTS = ("ingestor", "settlement", "resolver", "indexer")
CHAIN_COMPONENTS = {
    "settlement": ("pool_core", "guided_oracle"),
    "resolver": ("oddyssey",),
    "indexer": (),
}

JOB_LOCKS: dict[str, asyncio.Lock] = {}


class ShutdownFlag:
    """Cooperative shutdown signal polled by jobs between entities."""

    def __init__(self):
        self._event = asyncio.Event()

    def set(self) -> None:
        self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


def _get_lock(name: str) -> asyncio.Lock:
    lock = JOB_LOCKS.get(name)
    if lock is None:
        lock = asyncio.Lock()
        JOB_LOCKS[name] = lock
    return lock


async def _job_run_start(session: AsyncSession, job_name: str, triggered_by: str | None, meta: Optional[dict] = None) -> int | None:
    try:
        res = await session.execute(
            text(
                """
                INSERT INTO oracle.job_runs(job_name, status, triggered_by, started_at, meta)
                VALUES(:job, 'running', :by, now(), CAST(:meta AS jsonb))
                RETURNING id
                """
            ),
            {"job": job_name, "by": triggered_by, "meta": json.dumps(meta or {}, default=str)},
        )
        rid = res.scalar_one()
        await session.commit()
        return int(rid)
    except DBAPIError:
        log.exception("job_runs_start_failed job=%s", job_name)
        await session.rollback()
        return None


async def _job_run_finish(
    session: AsyncSession,
    run_id: int | None,
    status: str,
    error: str | None = None,
    meta: Optional[dict] = None,
) -> None:
    if run_id is None:
        return
    try:
        await session.execute(
            text(
                """
                UPDATE oracle.job_runs
                SET status=:status, finished_at=now(), error=:error,
                    meta = COALESCE(meta, '{}'::jsonb) || CAST(:meta AS jsonb)
                WHERE id=:id
                """
            ),
            {"id": run_id, "status": status, "error": error, "meta": json.dumps(meta or {}, default=str)},
        )
        await session.commit()
    except DBAPIError:
        log.exception("job_runs_finish_failed id=%s status=%s", run_id, status)
        await session.rollback()


async def run_job(
    job_name: str,
    job_fn,
    *,
    triggered_by: str | None = None,
    meta: Optional[dict] = None,
    exclusive: bool = False,
    raise_errors: bool = False,
):
    """Run ``job_fn(session)`` with a ``job_runs`` row around it.

    Ticks of the same job never overlap in one process; ``exclusive`` also
    serializes across processes through an advisory lock. ``FatalConfigError``
    always propagates; other failures do when ``raise_errors`` is set.
    """
    lock = _get_lock(job_name)
    if lock.locked():
        log.warning("job_skip_already_running job=%s", job_name)
        return None
    async with lock:
        if exclusive:
            async with entity_lock("job", job_name) as acquired:
                if not acquired:
                    log.warning("job_skip_global_lock job=%s", job_name)
                    return None
                return await _run_job_locked(job_name, job_fn, triggered_by, meta, raise_errors)
        return await _run_job_locked(job_name, job_fn, triggered_by, meta, raise_errors)


async def _run_job_locked(job_name, job_fn, triggered_by, meta, raise_errors):
    async with SessionLocal() as session:
        run_id = await _job_run_start(session, job_name, triggered_by, meta)
        t0 = time.perf_counter()
        try:
            result = await job_fn(session)
        except Exception as e:
            tb = traceback.format_exc(limit=50)
            dur_ms = int((time.perf_counter() - t0) * 1000)
            log.exception("job_failed job=%s", job_name)
            await session.rollback()
            await _job_run_finish(session, run_id, "failed", tb[-8000:], meta={"duration_ms": dur_ms})
            if isinstance(e, FatalConfigError):
                await audit.alert(audit.FATAL_CONFIG, job_name, {"error": str(e)})
                raise
            if raise_errors:
                raise
            return None
        dur_ms = int((time.perf_counter() - t0) * 1000)
        finish_meta: dict = {"duration_ms": dur_ms}
        if isinstance(result, dict):
            finish_meta["result"] = result
        await _job_run_finish(session, run_id, "ok", None, meta=finish_meta)
        return result


async def prune_job_runs(session: AsyncSession, *, cfg: Settings = settings) -> dict:
    res = await session.execute(
        text("DELETE FROM oracle.job_runs WHERE started_at < now() - make_interval(days => :days)"),
        {"days": int(cfg.job_runs_retention_days)},
    )
    await session.commit()
    return {"deleted": int(res.rowcount or 0)}


def validate_runtime_config(component: str, cfg: Settings = settings) -> None:
    """Raise ``FatalConfigError`` when ``component`` cannot run with the current settings."""
    if component not in COMPONENTS:
        raise FatalConfigError(f"unknown component: {component}")
    missing: list[str] = []
    needs_provider = component == "ingestor" or cfg.is_prod
    needs_chain = component in CHAIN_COMPONENTS or cfg.is_prod
    if needs_provider and not (cfg.sportmonks_api_token or "").strip():
        missing.append("SPORTMONKS_API_TOKEN")
    if needs_chain:
        if not (cfg.rpc_url or "").strip():
            missing.append("RPC_URL")
        contracts = ("pool_core", "guided_oracle", "oddyssey") if cfg.is_prod else CHAIN_COMPONENTS.get(component, ())
        for name in contracts:
            if not cfg.contract_address(name):
                missing.append(f"{name.upper()}_ADDRESS")
        if component == "indexer" and not cfg.is_prod:
            if not any(cfg.contract_address(n) for n in ("pool_core", "guided_oracle", "oddyssey")):
                missing.append("POOL_CORE_ADDRESS|GUIDED_ORACLE_ADDRESS|ODDYSSEY_ADDRESS")
        signs = component in ("settlement", "resolver") or cfg.is_prod
        if signs and not (cfg.oracle_private_key or "").strip():
            missing.append("ORACLE_PRIVATE_KEY")
    if missing:
        raise FatalConfigError(f"{component}: missing configuration: {', '.join(missing)}")


def _component_jobs(component: str, chain, shutdown: ShutdownFlag, cfg: Settings) -> list[tuple[str, object, IntervalTrigger, bool]]:
    if component == "ingestor":
        return [
            (
                "ingest_upcoming",
                partial(ingest_fixtures.run, mode=ingest_fixtures.MODE_UPCOMING, cfg=cfg),
                IntervalTrigger(minutes=int(cfg.ingest_upcoming_interval_minutes)),
                False,
            ),
            (
                "ingest_live",
                partial(ingest_fixtures.run, mode=ingest_fixtures.MODE_LIVE, cfg=cfg),
                IntervalTrigger(seconds=int(cfg.ingest_live_interval_seconds)),
                False,
            ),
        ]
    if component == "settlement":
        return [
            (
                "settle_pools",
                partial(settle_pools.run, chain=chain, shutdown=shutdown, cfg=cfg),
                IntervalTrigger(seconds=int(cfg.settlement_interval_seconds)),
                False,
            )
        ]
    if component == "resolver":
        return [
            (
                "resolve_cycles",
                partial(resolve_cycles.run, chain=chain, shutdown=shutdown, cfg=cfg),
                IntervalTrigger(seconds=int(cfg.resolver_interval_seconds)),
                False,
            )
        ]
    if component == "indexer":
        return [
            (
                "index_chain",
                partial(index_chain.run, chain=chain, shutdown=shutdown, cfg=cfg),
                IntervalTrigger(seconds=int(cfg.indexer_interval_seconds)),
                True,
            )
        ]
    raise FatalConfigError(f"unknown component: {component}")


async def open_chain(component: str, cfg: Settings = settings) -> ChainClient | None:
    if component not in CHAIN_COMPONENTS:
        return None
    chain = ChainClient.from_settings(cfg)
    head = await chain.ping()
    log.info("chain_connected component=%s head=%s signer=%s", component, head, chain.signer_address)
    return chain


def _install_signal_handlers(shutdown: ShutdownFlag) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, shutdown.set)
        except (NotImplementedError, RuntimeError):
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(shutdown.set))


async def run_component(component: str, *, cfg: Settings = settings, shutdown: ShutdownFlag | None = None) -> None:
    """Long-running ``<component> run``: interval ticks until SIGINT/SIGTERM or a fatal error."""
    set_component(component)
    validate_runtime_config(component, cfg)
    await init_db()
    chain = await open_chain(component, cfg)
    shutdown = shutdown or ShutdownFlag()
    _install_signal_handlers(shutdown)

    fatal: list[BaseException] = []
    inflight: set[asyncio.Task] = set()

    async def _tick(name, fn, exclusive):
        task = asyncio.current_task()
        inflight.add(task)
        try:
            await run_job(name, fn, triggered_by="scheduler", exclusive=exclusive)
        except FatalConfigError as e:
            log.error("fatal_config job=%s err=%s; stopping %s", name, e, component)
            fatal.append(e)
            shutdown.set()
        finally:
            inflight.discard(task)

    scheduler = AsyncIOScheduler()
    for name, fn, trigger, exclusive in _component_jobs(component, chain, shutdown, cfg):
        scheduler.add_job(
            _tick,
            trigger,
            args=(name, fn, exclusive),
            id=name,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=60,
            next_run_time=utcnow(),
        )
    scheduler.add_job(
        _tick,
        IntervalTrigger(hours=24),
        args=(f"prune_job_runs_{component}", partial(prune_job_runs, cfg=cfg), False),
        id="prune_job_runs",
        max_instances=1,
        coalesce=True,
    )

    scheduler.start()
    log.info("component_started component=%s jobs=%s", component, ",".join(j.id for j in scheduler.get_jobs()))
    try:
        await shutdown.wait()
        log.info("component_stopping component=%s inflight=%s", component, len(inflight))
        scheduler.shutdown(wait=False)
        if inflight:
            _, pending = await asyncio.wait(set(inflight), timeout=float(cfg.shutdown_grace_seconds))
            for task in pending:
                log.warning("component_cancel_inflight component=%s task=%s", component, task.get_name())
                task.cancel()
    finally:
        if chain is not None:
            await chain.close()
        await close_http_clients()
    log.info("component_stopped component=%s", component)
    if fatal:
        raise fatal[0]
