import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest

from bitredict.core.chain import ALREADY_SETTLED, ORACLE_NOT_SET
from bitredict.core.config import Settings
from bitredict.core.errors import FatalConfigError, PermanentChainError, RevertError, TransientError
from bitredict.core.timeutils import to_epoch
from bitredict.data.abi import FLAG_CREATOR_SIDE_WON, FLAG_SETTLED
from bitredict.jobs import settle_pools
from bitredict.services import outcomes as oc

from fakes import FakeChain, FakeSession, row

SIGNER = "0x" + "a" * 40
EVENT_END = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
BEFORE_DEADLINE = EVENT_END + timedelta(hours=2)
AFTER_DEADLINE = EVENT_END + timedelta(hours=30)


def _cfg(**overrides):
    values = {
        "DATABASE_URL": "postgresql+asyncpg://u:p@localhost/db",
        "SETTLEMENT_MAX_ATTEMPTS": 3,
        "SETTLEMENT_BACKOFF_BASE_SECONDS": 0,
        "SETTLEMENT_BACKOFF_MAX_SECONDS": 60,
    }
    values.update(overrides)
    return Settings(**values)


class PoolWorld:
    """One pool on a fake chain; settlement flips the struct like the contract does."""

    def __init__(self, pool_id, market_id, predicted, *, bettor_stake=10**18, oracle_bot=SIGNER):
        self.pool_id = pool_id
        self.market_id = market_id
        self.predicted = predicted
        self.bettor_stake = bettor_stake
        self.flags = 0
        self.result = b"\x00" * 32
        self.oracle_outcome = None
        self.oracle_bot = oracle_bot
        self.chain = FakeChain(
            {
                ("pool_core", "getPool"): self.get_pool,
                ("guided_oracle", "getOutcome"): self.get_outcome,
                ("guided_oracle", "oracleBot"): lambda: self.oracle_bot,
            },
            signer=SIGNER,
        )
        self.chain.tx_effects[("guided_oracle", "submitOutcome")] = self.submit
        self.chain.tx_effects[("guided_oracle", "executeCall")] = self.settle
        self.chain.tx_effects[("pool_core", "settlePoolAutomatically")] = self.settle

    def get_pool(self, _pool_id):
        struct = [SIGNER, 200, self.flags, 0, 0, 0, 10**18, 10**18, 0, self.bettor_stake]
        struct += [oc.encode_outcome(self.predicted), self.result]
        struct += [to_epoch(EVENT_END) - 7200, to_epoch(EVENT_END), to_epoch(EVENT_END) - 7200, 0, 0]
        struct += [0] * 7 + [self.market_id]
        return struct

    def get_outcome(self, _market_id):
        if self.oracle_outcome is None:
            return (False, b"")
        return (True, oc.encode_outcome(self.oracle_outcome))

    def submit(self, _market_id, data):
        self.oracle_outcome = oc.decode_outcome(data)

    def settle(self, *_args, result=None):
        code = result or self.oracle_outcome
        self.result = oc.encode_outcome(code)
        self.flags = FLAG_SETTLED | (FLAG_CREATOR_SIDE_WON if code != self.predicted else 0)


def _patch(monkeypatch, fake_locks, world: PoolWorld, *, derived, fixture_status="FT"):
    async def _load_pool(_session, pool_id):
        return row(
            pool_id=pool_id,
            market_id=world.market_id,
            market_type=0,
            predicted_outcome=oc.encode_outcome(world.predicted),
            predicted_outcome_text=world.predicted,
            event_end=EVENT_END,
            arbitration_deadline=None,
            status="awaiting_result",
            is_settled=False,
            settle_attempts=0,
        )

    async def _fixture_status(_session, _fid):
        return fixture_status

    async def _get_outcome(_session, _fid, _market):
        return derived

    monkeypatch.setattr(settle_pools, "_load_pool", _load_pool)
    monkeypatch.setattr(settle_pools, "_fixture_status", _fixture_status)
    monkeypatch.setattr(settle_pools, "get_outcome", _get_outcome)
    monkeypatch.setattr(settle_pools, "entity_lock", fake_locks)


async def _no_sleep(_delay):
    return None


def _settle(session, world, now, cfg=None):
    return asyncio.run(
        settle_pools.settle_pool(session, world.chain, world.pool_id, now=now, cfg=cfg or _cfg(), _sleep=_no_sleep)
    )


def test_contrarian_pool_settles_for_creator(monkeypatch, fake_locks):
    world = PoolWorld(12, "19429285:1X2", oc.AWAY)
    _patch(monkeypatch, fake_locks, world, derived=oc.HOME)
    session = FakeSession()

    out = _settle(session, world, BEFORE_DEADLINE)

    assert out["status"] == settle_pools.ST_SETTLED
    assert [t[1] for t in world.chain.transactions] == ["submitOutcome", "executeCall"]
    assert world.chain.transactions[0][2][1] == oc.encode_outcome(oc.HOME)
    projected = session.statements("SET is_settled=true, status='settled'")[-1]
    assert projected["result_text"] == oc.HOME
    assert projected["csw"] is True
    assert not session.statements("INSERT INTO oracle.audit_log")
    assert ("pool", "12") in fake_locks.acquired


def test_non_bot_signer_settles_directly_when_outcome_already_set(monkeypatch, fake_locks):
    world = PoolWorld(13, "19429285:1X2", oc.HOME, oracle_bot="0x" + "c" * 40)
    world.oracle_outcome = oc.HOME
    _patch(monkeypatch, fake_locks, world, derived=oc.HOME)

    out = _settle(FakeSession(), world, BEFORE_DEADLINE)

    assert out["status"] == settle_pools.ST_SETTLED
    assert [t[1] for t in world.chain.transactions] == ["settlePoolAutomatically"]


def test_unset_outcome_with_foreign_signer_is_fatal(monkeypatch, fake_locks):
    world = PoolWorld(14, "19429285:1X2", oc.HOME, oracle_bot="0x" + "c" * 40)
    _patch(monkeypatch, fake_locks, world, derived=oc.HOME)
    session = FakeSession()

    with pytest.raises(FatalConfigError):
        _settle(session, world, BEFORE_DEADLINE)
    assert session.rollbacks == 1
    assert world.chain.transactions == []


def test_unavailable_half_time_market_refunds_without_oracle_outcome(monkeypatch, fake_locks):
    world = PoolWorld(7, "19429285:HT_OU15", oc.OVER)
    _patch(monkeypatch, fake_locks, world, derived=oc.UNAVAILABLE)
    session = FakeSession()

    out = _settle(session, world, AFTER_DEADLINE)

    assert out["status"] == settle_pools.ST_REFUNDED
    assert out["reason"] == "market_unavailable:HT_OU15"
    assert world.chain.transactions == []
    assert session.statements("SET status='refunded'")


def test_unavailable_market_waits_until_deadline(monkeypatch, fake_locks):
    world = PoolWorld(7, "19429285:HT_OU15", oc.OVER)
    _patch(monkeypatch, fake_locks, world, derived=oc.UNAVAILABLE)
    session = FakeSession()

    out = _settle(session, world, BEFORE_DEADLINE)

    assert out["status"] == settle_pools.ST_WAITING
    assert session.statements("SET status='waiting_for_result'")
    assert world.chain.transactions == []


def test_empty_pool_refund_goes_through_contract(monkeypatch, fake_locks):
    world = PoolWorld(8, "19429285:1X2", oc.HOME, bettor_stake=0)
    _patch(monkeypatch, fake_locks, world, derived=None)

    out = _settle(FakeSession(), world, AFTER_DEADLINE)

    assert out["status"] == settle_pools.ST_REFUNDED
    assert out["reason"] == "no_bets"
    assert [t[1] for t in world.chain.transactions] == ["checkAndRefundEmptyPool"]
    assert world.chain.transactions[0][3] == "refund"


def test_postponed_fixture_refunds(monkeypatch, fake_locks):
    world = PoolWorld(9, "19429285:1X2", oc.HOME)
    _patch(monkeypatch, fake_locks, world, derived=None, fixture_status="POSTPONED")

    out = _settle(FakeSession(), world, AFTER_DEADLINE)

    assert out["status"] == settle_pools.ST_REFUNDED
    assert out["reason"] == "fixture_postponed"


def test_missing_result_waits(monkeypatch, fake_locks):
    world = PoolWorld(10, "19429285:1X2", oc.HOME)
    _patch(monkeypatch, fake_locks, world, derived=None, fixture_status="INPLAY_2ND")

    out = _settle(FakeSession(), world, BEFORE_DEADLINE)

    assert out == {"pool_id": 10, "status": settle_pools.ST_WAITING, "reason": "no_result"}


def test_settle_is_at_most_once_under_concurrency(monkeypatch, fake_locks):
    world = PoolWorld(12, "19429285:1X2", oc.AWAY)
    _patch(monkeypatch, fake_locks, world, derived=oc.HOME)

    async def _both():
        return await asyncio.gather(
            settle_pools.settle_pool(FakeSession(), world.chain, 12, now=BEFORE_DEADLINE, cfg=_cfg(), _sleep=_no_sleep),
            settle_pools.settle_pool(FakeSession(), world.chain, 12, now=BEFORE_DEADLINE, cfg=_cfg(), _sleep=_no_sleep),
        )

    results = asyncio.run(_both())

    assert sorted(r["status"] for r in results) == [settle_pools.ST_ALREADY_SETTLED, settle_pools.ST_SETTLED]
    assert len(world.chain.sent("executeCall")) == 1
    assert len(world.chain.sent("submitOutcome")) == 1


def test_already_settled_revert_reconciles(monkeypatch, fake_locks):
    world = PoolWorld(12, "19429285:1X2", oc.AWAY)
    _patch(monkeypatch, fake_locks, world, derived=oc.HOME)

    def _raced(*args):
        world.settle(result=oc.HOME)
        raise RevertError(ALREADY_SETTLED, "execution reverted: Already settled")

    world.chain.tx_effects[("guided_oracle", "executeCall")] = _raced
    session = FakeSession()

    out = _settle(session, world, BEFORE_DEADLINE)

    assert out["status"] == settle_pools.ST_ALREADY_SETTLED
    assert session.statements("SET is_settled=true, status='settled'")
    assert not session.statements("SET status='halted'")


def test_oracle_not_set_revert_is_retried(monkeypatch, fake_locks):
    world = PoolWorld(12, "19429285:1X2", oc.AWAY)
    _patch(monkeypatch, fake_locks, world, derived=oc.HOME)
    world.chain.tx_effects[("guided_oracle", "executeCall")] = [RevertError(ORACLE_NOT_SET, "Outcome not set"), world.settle]

    out = _settle(FakeSession(), world, BEFORE_DEADLINE)

    assert out["status"] == settle_pools.ST_SETTLED
    assert len(world.chain.sent("executeCall")) == 2
    # The outcome was already on the oracle for the second pass.
    assert len(world.chain.sent("submitOutcome")) == 1


def test_unknown_revert_halts_pool(monkeypatch, fake_locks):
    world = PoolWorld(12, "19429285:1X2", oc.AWAY)
    _patch(monkeypatch, fake_locks, world, derived=oc.HOME)
    world.chain.tx_effects[("guided_oracle", "executeCall")] = PermanentChainError("POOL_PAUSED", tx_hash="0xabc")
    session = FakeSession()

    out = _settle(session, world, BEFORE_DEADLINE)

    assert out["status"] == settle_pools.ST_HALTED
    assert session.statements("SET status='halted'")
    audit_rows = session.statements("INSERT INTO oracle.audit_log")
    assert audit_rows[0]["kind"] == "permanent_chain_error"
    assert len(world.chain.sent("executeCall")) == 1


def test_transient_failures_schedule_next_attempt(monkeypatch, fake_locks):
    world = PoolWorld(12, "19429285:1X2", oc.AWAY)
    _patch(monkeypatch, fake_locks, world, derived=oc.HOME)
    world.chain.tx_effects[("guided_oracle", "executeCall")] = [TransientError("rpc timeout")] * 5
    session = FakeSession()

    out = _settle(session, world, BEFORE_DEADLINE, cfg=_cfg(SETTLEMENT_MAX_ATTEMPTS=2))

    assert out["status"] == settle_pools.ST_RETRY
    assert len(world.chain.sent("executeCall")) == 2
    retry = session.statements("settle_attempts = settle_attempts + 1")[0]
    assert retry["next_at"] == BEFORE_DEADLINE + timedelta(seconds=60)


def test_chain_result_wins_and_divergence_is_audited(monkeypatch, fake_locks):
    world = PoolWorld(12, "19429285:1X2", oc.AWAY)
    _patch(monkeypatch, fake_locks, world, derived=oc.HOME)
    world.chain.tx_effects[("guided_oracle", "executeCall")] = lambda *a: world.settle(result=oc.DRAW)
    session = FakeSession()

    out = _settle(session, world, BEFORE_DEADLINE)

    assert out["status"] == settle_pools.ST_SETTLED
    projected = session.statements("SET is_settled=true, status='settled'")[-1]
    assert projected["result_text"] == oc.DRAW
    audit_rows = session.statements("INSERT INTO oracle.audit_log")
    assert audit_rows[0]["kind"] == "settlement_divergence"


def test_oracle_mismatch_is_recorded_once(monkeypatch, fake_locks):
    world = PoolWorld(12, "19429285:1X2", oc.AWAY)
    world.oracle_outcome = oc.DRAW
    _patch(monkeypatch, fake_locks, world, derived=oc.HOME)
    alerts = []

    async def _alert(kind, entity, details):
        alerts.append((kind, entity))

    monkeypatch.setattr(settle_pools.audit, "alert", _alert)
    session = FakeSession()

    out = _settle(session, world, BEFORE_DEADLINE)

    assert out["status"] == settle_pools.ST_SETTLED
    assert session.statements("SET is_settled=true, status='settled'")[-1]["result_text"] == oc.DRAW
    audit_rows = session.statements("INSERT INTO oracle.audit_log")
    assert [r["kind"] for r in audit_rows] == ["settlement_divergence"]
    assert json.loads(audit_rows[0]["observed"]) == {"oracle_outcome": oc.DRAW}
    assert alerts == [("settlement_divergence", "pool 12")]


def test_unbindable_market_id_halts(monkeypatch, fake_locks):
    world = PoolWorld(15, "not-a-market", oc.HOME)
    _patch(monkeypatch, fake_locks, world, derived=None)

    out = _settle(FakeSession(), world, BEFORE_DEADLINE)

    assert out["status"] == settle_pools.ST_HALTED
    assert world.chain.transactions == []


def test_run_advances_lifecycle_and_counts(monkeypatch):
    seen = []

    async def _settle_pool(session, chain, pool_id, **_kwargs):
        seen.append(pool_id)
        if pool_id == 2:
            raise TransientError("lock connection dropped")
        return {"pool_id": pool_id, "status": settle_pools.ST_SETTLED}

    monkeypatch.setattr(settle_pools, "settle_pool", _settle_pool)
    session = FakeSession({"SELECT pool_id": [(1,), (2,)]})

    out = asyncio.run(settle_pools.run(session, chain=None, now=BEFORE_DEADLINE, cfg=_cfg()))

    assert seen == [1, 2]
    assert out[settle_pools.ST_SETTLED] == 1
    assert out[settle_pools.ST_RETRY] == 1
    assert session.statements("SET status = CASE")
