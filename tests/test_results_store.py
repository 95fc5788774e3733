import asyncio
import json

import pytest

from bitredict.core.errors import ResultConflict
from bitredict.services import outcomes as oc
from bitredict.services import results_store

from fakes import FakeSession, row


def _stored_row(raw: oc.RawScores, outcomes: dict):
    return row(fixture_id="19429285", outcomes=json.dumps(outcomes), **raw.to_dict())


def test_save_result_inserts_result_and_every_market():
    raw = oc.RawScores(home_ft=2, away_ft=1, home_ht=1, away_ht=0)
    session = FakeSession({"RETURNING fixture_id": [row(fixture_id="19429285")]})

    out = asyncio.run(results_store.save_result(session, 19429285, raw, oc.derive_outcomes(raw)))

    assert out == results_store.INSERTED
    markets = session.statements("INSERT INTO oracle.match_results")
    assert {p["market"] for p in markets} == set(oc.ALL_FAMILIES)
    one_x_two = next(p for p in markets if p["market"] == oc.MARKET_1X2)
    assert one_x_two["code"] == oc.HOME
    assert one_x_two["bytes"] == oc.encode_outcome(oc.HOME)
    assert one_x_two["available"] is True
    assert session.commits == 0


def test_save_result_marks_unavailable_ht_markets():
    raw = oc.RawScores(home_ft=0, away_ft=0)
    session = FakeSession({"RETURNING fixture_id": [row(fixture_id="7")]})
    asyncio.run(results_store.save_result(session, "7", raw, oc.derive_outcomes(raw)))
    ht = next(p for p in session.statements("INSERT INTO oracle.match_results") if p["market"] == oc.MARKET_HT_OU15)
    assert ht["available"] is False
    assert ht["bytes"] is None
    assert ht["code"] == oc.UNAVAILABLE


def test_save_result_same_result_is_noop():
    raw = oc.RawScores(home_ft=1, away_ft=1, home_ht=0, away_ht=0)
    derived = oc.derive_outcomes(raw)
    session = FakeSession({"FROM oracle.fixture_results": [_stored_row(raw, derived)]})

    out = asyncio.run(results_store.save_result(session, "19429285", raw, derived))

    assert out == results_store.UNCHANGED
    assert not session.statements("INSERT INTO oracle.match_results")


def test_save_result_different_result_raises_conflict():
    stored = oc.RawScores(home_ft=1, away_ft=1, home_ht=0, away_ht=0)
    incoming = oc.RawScores(home_ft=2, away_ft=1, home_ht=0, away_ht=0)
    session = FakeSession({"FROM oracle.fixture_results": [_stored_row(stored, oc.derive_outcomes(stored))]})

    with pytest.raises(ResultConflict) as exc:
        asyncio.run(results_store.save_result(session, "19429285", incoming, oc.derive_outcomes(incoming)))

    assert exc.value.fixture_id == "19429285"
    assert exc.value.stored["outcomes"][oc.MARKET_1X2] == oc.DRAW
    assert exc.value.incoming["outcomes"][oc.MARKET_1X2] == oc.HOME
    assert not session.statements("INSERT INTO oracle.match_results")


def test_save_result_rejects_outcomes_not_derived_from_raw():
    raw = oc.RawScores(home_ft=1, away_ft=0)
    bad = dict(oc.derive_outcomes(raw), **{oc.MARKET_1X2: oc.AWAY})
    with pytest.raises(ValueError):
        asyncio.run(results_store.save_result(FakeSession(), "1", raw, bad))


def test_supersede_result_writes_audit_and_replaces_markets():
    stored = oc.RawScores(home_ft=1, away_ft=1, home_ht=0, away_ht=0)
    corrected = oc.RawScores(home_ft=1, away_ft=2, home_ht=0, away_ht=1)
    session = FakeSession({"FROM oracle.fixture_results": [_stored_row(stored, oc.derive_outcomes(stored))]})

    out = asyncio.run(results_store.supersede_result(session, "19429285", corrected, reason="provider correction", actor="ops"))

    assert out["changed"] is True
    assert out["new"][oc.MARKET_1X2] == oc.AWAY
    audit_rows = session.statements("INSERT INTO oracle.result_supersedes")
    assert audit_rows and audit_rows[0]["reason"] == "provider correction"
    assert audit_rows[0]["actor"] == "ops"
    assert session.statements("DELETE FROM oracle.match_results")
    assert session.statements("UPDATE oracle.result_conflicts SET resolved_at=now()")


def test_supersede_requires_reason_and_stored_result():
    raw = oc.RawScores(home_ft=1, away_ft=0)
    with pytest.raises(ValueError):
        asyncio.run(results_store.supersede_result(FakeSession(), "1", raw, reason=" "))
    with pytest.raises(ValueError):
        asyncio.run(results_store.supersede_result(FakeSession(), "1", raw, reason="fix"))


def test_get_outcomes_for_groups_by_fixture():
    session = FakeSession(
        {
            "FROM oracle.match_results": [
                row(fixture_id="1", market=oc.MARKET_1X2, outcome_code=oc.HOME),
                row(fixture_id="1", market=oc.MARKET_OU25, outcome_code=oc.UNDER),
                row(fixture_id="2", market=oc.MARKET_1X2, outcome_code=oc.DRAW),
            ]
        }
    )
    out = asyncio.run(results_store.get_outcomes_for(session, ["1", "2"], (oc.MARKET_1X2, oc.MARKET_OU25)))
    assert out == {"1": {oc.MARKET_1X2: oc.HOME, oc.MARKET_OU25: oc.UNDER}, "2": {oc.MARKET_1X2: oc.DRAW}}
    assert asyncio.run(results_store.get_outcomes_for(session, [], (oc.MARKET_1X2,))) == {}
