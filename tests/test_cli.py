import asyncio
import json
from datetime import date

import pytest
from pydantic import TypeAdapter, ValidationError

from bitredict import cli
from bitredict.core.errors import ChainUnreachable, DatabaseUnreachable, FatalConfigError, PermanentChainError


def _validation_error():
    try:
        TypeAdapter(int).validate_python("not-an-int")
    except ValidationError as e:
        return e
    raise AssertionError("expected ValidationError")


@pytest.mark.parametrize(
    "exc, code",
    [
        (FatalConfigError("missing RPC_URL"), cli.EXIT_CONFIG),
        (ChainUnreachable("down"), cli.EXIT_CHAIN),
        (DatabaseUnreachable("down"), cli.EXIT_DATABASE),
        (PermanentChainError("BAD"), cli.EXIT_FAILURE),
        (RuntimeError("boom"), cli.EXIT_FAILURE),
    ],
)
def test_exit_code_for(exc, code):
    assert cli.exit_code_for(exc) == code


def test_settings_validation_error_is_config_exit():
    assert cli.exit_code_for(_validation_error()) == cli.EXIT_CONFIG


def test_parser_commands():
    parser = cli.build_parser()
    args = parser.parse_args(["ingestor", "backfill", "2026-01-01", "2026-01-07"])
    assert (args.component, args.command) == ("ingestor", "backfill")
    assert args.date_from == date(2026, 1, 1)

    args = parser.parse_args(["ingestor", "supersede-result", "19429285", "--reason", "provider fix"])
    assert args.fixture_id == "19429285" and args.actor == "operator"

    assert parser.parse_args(["settlement", "settle-pool", "12"]).pool_id == 12
    assert parser.parse_args(["resolver", "reevaluate", "5"]).cycle_id == 5
    assert parser.parse_args(["indexer", "rescan", "1000"]).from_block == 1000

    with pytest.raises(SystemExit):
        parser.parse_args(["settlement", "settle-pool", "-1"])
    with pytest.raises(SystemExit):
        parser.parse_args(["ingestor", "backfill", "yesterday", "2026-01-07"])


@pytest.mark.parametrize(
    "exc, code",
    [
        (FatalConfigError("ORACLE_PRIVATE_KEY missing"), 2),
        (ChainUnreachable("rpc down"), 3),
        (DatabaseUnreachable("db down"), 4),
        (ValueError("bad"), 1),
    ],
)
def test_main_maps_failures_to_exit_codes(monkeypatch, exc, code):
    async def _dispatch(_args):
        raise exc

    monkeypatch.setattr(cli, "dispatch", _dispatch)
    assert cli.main(["resolver", "resolve-cycle", "5"]) == code


def test_main_prints_result_as_json(monkeypatch, capsys):
    async def _dispatch(args):
        return {"pool_id": args.pool_id, "status": "settled"}

    monkeypatch.setattr(cli, "dispatch", _dispatch)

    assert cli.main(["settlement", "settle-pool", "12"]) == cli.EXIT_OK
    assert json.loads(capsys.readouterr().out) == {"pool_id": 12, "status": "settled"}


def test_dispatch_settle_pool_runs_one_shot(monkeypatch):
    captured = {}

    async def _one_shot(component, name, job_fn, *, needs_chain):
        captured.update(component=component, name=name, needs_chain=needs_chain)
        return {"ok": True}

    monkeypatch.setattr(cli, "_one_shot", _one_shot)
    args = cli.build_parser().parse_args(["settlement", "settle-pool", "12"])

    assert asyncio.run(cli.dispatch(args)) == {"ok": True}
    assert captured == {"component": "settlement", "name": "settle_pool", "needs_chain": True}


def test_dispatch_reevaluate_needs_no_chain(monkeypatch):
    captured = {}

    async def _one_shot(component, name, job_fn, *, needs_chain):
        captured.update(component=component, name=name, needs_chain=needs_chain)
        return {}

    monkeypatch.setattr(cli, "_one_shot", _one_shot)
    asyncio.run(cli.dispatch(cli.build_parser().parse_args(["resolver", "reevaluate", "5"])))
    assert captured == {"component": "resolver", "name": "reevaluate", "needs_chain": False}
