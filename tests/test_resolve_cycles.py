import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from bitredict.core.chain import ALREADY_SETTLED
from bitredict.core.config import Settings
from bitredict.core.errors import PermanentChainError, RevertError, TransientError
from bitredict.core.timeutils import to_epoch
from bitredict.jobs import resolve_cycles
from bitredict.services import outcomes as oc
from bitredict.services import scoring as sc

from fakes import FakeChain, FakeSession, row

CYCLE_ID = 5
END = datetime(2026, 3, 1, 23, 0, tzinfo=timezone.utc)
AFTER_END = END + timedelta(hours=3)
PAST_GRACE = END + timedelta(hours=12)
FIXTURES = [str(200 + i) for i in range(10)]
ZERO = resolve_cycles.ZERO_ADDRESS


def _cfg(**overrides):
    values = {"DATABASE_URL": "postgresql+asyncpg://u:p@localhost/db", "ODDYSSEY_MIN_CORRECT": 7, "CYCLE_GRACE_HOURS": 6}
    values.update(overrides)
    return Settings(**values)


def _snapshots():
    return [
        sc.MatchSnapshot(position=i, fixture_id=fid, odds_home=1800, odds_draw=3300, odds_away=4000, odds_over=1900, odds_under=1850)
        for i, fid in enumerate(FIXTURES)
    ]


def _outcomes(missing=()):
    out = {}
    for i, fid in enumerate(FIXTURES):
        out[fid] = {oc.MARKET_1X2: oc.HOME if i < 8 else oc.AWAY, oc.MARKET_OU25: oc.OVER}
    for fid, market in missing:
        out[fid].pop(market, None)
    return out


def _home_slip(slip_id, player):
    return (slip_id, player, [sc.make_pick(fid, 0, "H") for fid in FIXTURES])


def _away_slip(slip_id, player):
    return (slip_id, player, [sc.make_pick(fid, 0, "A") for fid in FIXTURES])


class CycleWorld:
    def __init__(self, *, leaderboard, chain_end=None, chain_resolved=False, cycle_kwargs=None, missing=()):
        self.cycle = dict(
            cycle_id=CYCLE_ID,
            cycle_end_epoch=to_epoch(END),
            cycle_end_time=END,
            is_resolved=False,
            evaluation_completed=False,
            partial_resolution_requested=False,
            halted=False,
            last_error=None,
        )
        self.cycle.update(cycle_kwargs or {})
        self.evaluations: dict[int, sc.SlipScore] = {}
        self.slips = [_home_slip(17, "0x" + "1" * 40), _away_slip(42, "0x" + "2" * 40)]
        self.missing = missing
        self.slip_loads = 0
        self.chain_resolved = chain_resolved
        self.chain = FakeChain(
            {
                ("oddyssey", "dailyCycleEndTimes"): lambda _cid: chain_end if chain_end is not None else to_epoch(END),
                ("oddyssey", "isCycleResolved"): lambda _cid: self.chain_resolved,
                ("oddyssey", "getDailyLeaderboard"): lambda _cid: leaderboard,
            }
        )
        self.chain.tx_effects[("oddyssey", "resolveDailyCycle")] = self._resolve

    def _resolve(self, *_args):
        self.chain_resolved = True

    def patch(self, monkeypatch, fake_locks):
        async def _load_cycle(_session, _cid):
            return row(**self.cycle)

        async def _load_snapshot(_session, _cid):
            return _snapshots()

        async def _get_outcomes_for(_session, _fids, _markets):
            return _outcomes(self.missing)

        async def _load_slips(_session, _cid):
            self.slip_loads += 1
            return list(self.slips)

        async def _stored(_session, _cid):
            return dict(self.evaluations)

        async def _write(session, cid, ranked):
            for s in ranked:
                self.evaluations.setdefault(s.slip_id, s)
            self.cycle["evaluation_completed"] = True
            await session.commit()

        mark_waiting = resolve_cycles._mark_waiting

        async def _mark_waiting(session, cid, reason):
            self.cycle["last_error"] = reason
            await mark_waiting(session, cid, reason)

        monkeypatch.setattr(resolve_cycles, "_load_cycle", _load_cycle)
        monkeypatch.setattr(resolve_cycles, "_mark_waiting", _mark_waiting)
        monkeypatch.setattr(resolve_cycles.cy, "load_snapshot", _load_snapshot)
        monkeypatch.setattr(resolve_cycles.cy, "load_slips", _load_slips)
        monkeypatch.setattr(resolve_cycles, "get_outcomes_for", _get_outcomes_for)
        monkeypatch.setattr(resolve_cycles, "_stored_evaluations", _stored)
        monkeypatch.setattr(resolve_cycles, "_write_evaluations", _write)
        monkeypatch.setattr(resolve_cycles, "entity_lock", fake_locks)


def _board(*entries):
    rows = [(player, sid, score, correct) for player, sid, score, correct in entries]
    while len(rows) < 5:
        rows.append((ZERO, 0, 0, 0))
    return rows


def _resolve(world, now=AFTER_END, cfg=None, session=None):
    session = session or FakeSession()
    out = asyncio.run(resolve_cycles.resolve_cycle(session, world.chain, CYCLE_ID, now=now, cfg=cfg or _cfg()))
    return out, session


def test_resolves_cycle_and_stores_chain_winners(monkeypatch, fake_locks):
    world = CycleWorld(leaderboard=_board(("0x" + "1" * 40, 17, 1800**8, 8)))
    world.patch(monkeypatch, fake_locks)

    out, session = _resolve(world)

    assert out["status"] == resolve_cycles.ST_RESOLVED
    assert out["divergence"] is False
    assert world.evaluations[17].final_score == 1800**8
    assert world.evaluations[17].rank == 1
    assert world.evaluations[42].eligible is False
    sent = world.chain.sent("resolveDailyCycle")
    assert len(sent) == 1
    payload = sent[0][2][1]
    assert payload[:8] == [(1, 1)] * 8
    assert payload[8:] == [(3, 1), (3, 1)]
    assert sent[0][3] == "resolve"
    winners = session.statements("INSERT INTO oracle.cycle_winners")
    assert [(w["pos"], w["sid"]) for w in winners] == [(1, 17)]
    assert winners[0]["score"] == Decimal(1800**8)
    assert session.statements("SET is_resolved=true")
    assert not session.statements("INSERT INTO oracle.audit_log")


def test_chain_leaderboard_wins_and_divergence_is_audited(monkeypatch, fake_locks):
    world = CycleWorld(leaderboard=_board(("0x" + "2" * 40, 42, 4000**2, 2)))
    world.patch(monkeypatch, fake_locks)

    out, session = _resolve(world)

    assert out["divergence"] is True
    winners = session.statements("INSERT INTO oracle.cycle_winners")
    assert [w["sid"] for w in winners] == [42]
    audit_rows = session.statements("INSERT INTO oracle.audit_log")
    assert audit_rows[0]["kind"] == "resolution_divergence"
    assert "17" in audit_rows[0]["expected"] and "42" in audit_rows[0]["observed"]


def test_cycle_not_due_is_left_alone(monkeypatch, fake_locks):
    world = CycleWorld(leaderboard=_board())
    world.patch(monkeypatch, fake_locks)

    out, _ = _resolve(world, now=END - timedelta(minutes=1))

    assert out["status"] == resolve_cycles.ST_NOT_DUE
    assert world.chain.transactions == []


def test_end_time_mismatch_halts_cycle(monkeypatch, fake_locks):
    world = CycleWorld(leaderboard=_board(), chain_end=to_epoch(END) + 3600)
    world.patch(monkeypatch, fake_locks)

    out, session = _resolve(world)

    assert out["status"] == resolve_cycles.ST_HALTED
    assert out["reason"].startswith("CYCLE_END_MISMATCH")
    assert session.statements("SET halted=true")
    assert world.slip_loads == 0
    assert world.chain.transactions == []


def test_missing_results_wait_within_grace(monkeypatch, fake_locks):
    world = CycleWorld(leaderboard=_board(), missing=[("203", oc.MARKET_OU25)])
    world.patch(monkeypatch, fake_locks)

    out, _ = _resolve(world)

    assert out["status"] == resolve_cycles.ST_WAITING
    assert out["missing"] == ["203:OU25"]
    assert world.evaluations == {}
    assert world.chain.transactions == []


def test_missing_results_past_grace_without_void_support_block(monkeypatch, fake_locks):
    world = CycleWorld(leaderboard=_board(), missing=[("203", oc.MARKET_OU25)])
    world.patch(monkeypatch, fake_locks)

    out, session = _resolve(world, now=PAST_GRACE, cfg=_cfg(CONTRACT_SUPPORTS_VOID=False))

    assert out["status"] == resolve_cycles.ST_BLOCKED
    audit_rows = session.statements("INSERT INTO oracle.audit_log")
    assert audit_rows[0]["kind"] == "resolver_blocked"
    assert world.chain.transactions == []


def test_blocked_cycle_is_audited_and_alerted_once(monkeypatch, fake_locks):
    world = CycleWorld(leaderboard=_board(), missing=[("203", oc.MARKET_OU25)])
    world.patch(monkeypatch, fake_locks)
    alerts = []

    async def _alert(kind, entity, details):
        alerts.append(kind)
        return False

    monkeypatch.setattr(resolve_cycles.audit, "alert", _alert)
    cfg = _cfg(CONTRACT_SUPPORTS_VOID=False)

    sessions = [_resolve(world, now=PAST_GRACE + timedelta(minutes=2 * tick), cfg=cfg)[1] for tick in range(3)]

    audit_rows = [r for s in sessions for r in s.statements("INSERT INTO oracle.audit_log")]
    assert len(audit_rows) == 1
    assert alerts == ["resolver_blocked"]
    assert world.cycle["last_error"] == "blocked:203:OU25"

    # A different set of missing markets is a new blocking condition.
    world.missing = [("203", oc.MARKET_OU25), ("207", oc.MARKET_1X2)]
    out, session = _resolve(world, now=PAST_GRACE + timedelta(minutes=10), cfg=cfg)
    assert out["status"] == resolve_cycles.ST_BLOCKED
    assert len(session.statements("INSERT INTO oracle.audit_log")) == 1
    assert len(alerts) == 2


def test_missing_results_past_grace_resolve_with_void_markets(monkeypatch, fake_locks):
    world = CycleWorld(leaderboard=_board(("0x" + "1" * 40, 17, 1800**8, 8)), missing=[("209", oc.MARKET_1X2)])
    world.patch(monkeypatch, fake_locks)

    out, session = _resolve(world, now=PAST_GRACE)

    assert out["status"] == resolve_cycles.ST_RESOLVED
    assert session.statements("SET partial_resolution_requested=true")
    payload = world.chain.sent("resolveDailyCycle")[0][2][1]
    assert payload[9] == (0, 1)
    assert world.evaluations[17].void_picks == 1
    assert world.evaluations[17].correct_count == 8


def test_rerun_uses_stored_evaluations_and_skips_resolved_chain(monkeypatch, fake_locks):
    world = CycleWorld(leaderboard=_board(("0x" + "1" * 40, 17, 1800**8, 8)))
    world.patch(monkeypatch, fake_locks)
    _resolve(world)
    assert world.slip_loads == 1

    # Crash after the tx: DB still says unresolved, chain already resolved.
    out, _ = _resolve(world)

    assert out["status"] == resolve_cycles.ST_RESOLVED
    assert world.slip_loads == 1
    assert len(world.chain.sent("resolveDailyCycle")) == 1


def test_already_resolved_cycle_only_reconciles(monkeypatch, fake_locks):
    world = CycleWorld(
        leaderboard=_board(("0x" + "1" * 40, 17, 1800**8, 8)),
        chain_resolved=True,
        cycle_kwargs={"is_resolved": True, "evaluation_completed": True},
    )
    world.evaluations[17] = sc.SlipScore(slip_id=17, correct_count=8, final_score=1800**8, eligible=True, rank=1)
    world.patch(monkeypatch, fake_locks)

    out, session = _resolve(world)

    assert out["status"] == resolve_cycles.ST_ALREADY_RESOLVED
    assert out["divergence"] is False
    assert world.chain.transactions == []
    assert session.statements("INSERT INTO oracle.cycle_winners")


def test_already_resolved_revert_is_not_an_error(monkeypatch, fake_locks):
    world = CycleWorld(leaderboard=_board(("0x" + "1" * 40, 17, 1800**8, 8)))
    world.patch(monkeypatch, fake_locks)
    world.chain.tx_effects[("oddyssey", "resolveDailyCycle")] = RevertError(ALREADY_SETTLED, "Cycle already resolved")

    out, session = _resolve(world)

    assert out["status"] == resolve_cycles.ST_RESOLVED
    assert not session.statements("SET halted=true")


def test_unknown_revert_halts_and_transient_retries(monkeypatch, fake_locks):
    world = CycleWorld(leaderboard=_board())
    world.patch(monkeypatch, fake_locks)
    world.chain.tx_effects[("oddyssey", "resolveDailyCycle")] = [TransientError("timeout"), PermanentChainError("NOT_ORACLE")]

    first, _ = _resolve(world)
    second, session = _resolve(world)

    assert first["status"] == resolve_cycles.ST_RETRY
    assert second["status"] == resolve_cycles.ST_HALTED
    assert session.statements("SET halted=true")


def test_reevaluate_reports_differences_without_writing(monkeypatch, fake_locks):
    world = CycleWorld(leaderboard=_board(), cycle_kwargs={"evaluation_completed": True})
    world.evaluations[17] = sc.SlipScore(slip_id=17, correct_count=7, final_score=1800**7, eligible=True, rank=1)
    world.patch(monkeypatch, fake_locks)
    session = FakeSession()

    out = asyncio.run(resolve_cycles.reevaluate(session, CYCLE_ID, cfg=_cfg()))

    assert out["status"] == "compared"
    by_slip = {d["slip_id"]: d for d in out["differences"]}
    assert by_slip[17]["stored"]["correct_count"] == 7
    assert by_slip[17]["computed"]["correct_count"] == 8
    assert by_slip[42]["stored"] is None
    assert session.calls == []
    assert session.commits == 0


def test_write_evaluations_binds_numeric_scores_and_commits_once():
    session = FakeSession()
    ranked = sc.rank_slips([sc.SlipScore(slip_id=1, correct_count=10, final_score=2**127, eligible=True)])

    asyncio.run(resolve_cycles._write_evaluations(session, CYCLE_ID, ranked))

    inserted = session.statements("INSERT INTO oracle.slip_evaluations")
    assert inserted[0]["score"] == Decimal(2**127)
    assert inserted[0]["rank"] == 1
    assert session.statements("SET evaluation_completed=true")
    assert session.commits == 1


def test_run_processes_due_cycles(monkeypatch):
    seen = []

    async def _resolve_cycle(session, chain, cycle_id, **_kwargs):
        seen.append(cycle_id)
        if cycle_id == 4:
            raise TransientError("lock connection lost")
        return {"cycle_id": cycle_id, "status": resolve_cycles.ST_RESOLVED}

    monkeypatch.setattr(resolve_cycles, "resolve_cycle", _resolve_cycle)
    session = FakeSession({"SELECT cycle_id": [(3,), (4,)]})

    out = asyncio.run(resolve_cycles.run(session, chain=None, now=AFTER_END, cfg=_cfg()))

    assert seen == [3, 4]
    assert out == {resolve_cycles.ST_RESOLVED: 1, resolve_cycles.ST_RETRY: 1}
