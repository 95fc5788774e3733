"""Operational CLI: ``bitredict <component> <command>``.

Exit codes: 0 success, 1 generic failure, 2 configuration error,
3 chain unreachable, 4 database unreachable.
"""

import argparse
import asyncio
import json
import sys
from datetime import date
from functools import partial

from dotenv import load_dotenv
from pydantic import ValidationError

from bitredict.core.errors import ChainUnreachable, DatabaseUnreachable, FatalConfigError
from bitredict.core.logger import get_logger, set_component

load_dotenv()

log = get_logger("cli")

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2
EXIT_CHAIN = 3
EXIT_DATABASE = 4


def _date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"expected YYYY-MM-DD, got {value!r}") from e


def _non_negative(value: str) -> int:
    n = int(value)
    if n < 0:
        raise argparse.ArgumentTypeError("must be >= 0")
    return n


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="bitredict", description="Bitredict oracle and settlement services")
    components = parser.add_subparsers(dest="component", required=True)

    ingestor = components.add_parser("ingestor", help="Fixture ingestor").add_subparsers(dest="command", required=True)
    ingestor.add_parser("run", help="Poll the upcoming and live windows until stopped")
    backfill = ingestor.add_parser("backfill", help="Ingest fixtures day by day for a date range")
    backfill.add_argument("date_from", type=_date)
    backfill.add_argument("date_to", type=_date)
    supersede = ingestor.add_parser("supersede-result", help="Replace a stored result with an audited correction")
    supersede.add_argument("fixture_id")
    supersede.add_argument("--reason", required=True)
    supersede.add_argument("--actor", default="operator")

    settlement = components.add_parser("settlement", help="Pool settlement engine").add_subparsers(dest="command", required=True)
    settlement.add_parser("run", help="Settle due pools until stopped")
    settle_one = settlement.add_parser("settle-pool", help="Settle one pool now")
    settle_one.add_argument("pool_id", type=_non_negative)

    resolver = components.add_parser("resolver", help="Oddyssey cycle resolver").add_subparsers(dest="command", required=True)
    resolver.add_parser("run", help="Resolve due cycles until stopped")
    resolve_one = resolver.add_parser("resolve-cycle", help="Resolve one cycle now")
    resolve_one.add_argument("cycle_id", type=_non_negative)
    reeval = resolver.add_parser("reevaluate", help="Recompute a cycle's scores and diff against stored ones")
    reeval.add_argument("cycle_id", type=_non_negative)

    indexer = components.add_parser("indexer", help="Chain event indexer").add_subparsers(dest="command", required=True)
    indexer.add_parser("run", help="Tail contract events until stopped")
    rescan = indexer.add_parser("rescan", help="Re-index from a block to head")
    rescan.add_argument("from_block", type=_non_negative)

    return parser


async def _one_shot(component: str, name: str, job_fn, *, needs_chain: bool):
    from bitredict import runner
    from bitredict.core.db import init_db
    from bitredict.core.http import close_http_clients

    set_component(component)
    runner.validate_runtime_config(component)
    await init_db()
    chain = await runner.open_chain(component) if needs_chain else None
    try:
        fn = partial(job_fn, chain) if needs_chain else job_fn
        return await runner.run_job(name, fn, triggered_by="cli", raise_errors=True)
    finally:
        if chain is not None:
            await chain.close()
        await close_http_clients()


async def dispatch(args: argparse.Namespace):
    from bitredict import runner
    from bitredict.jobs import index_chain, ingest_fixtures, resolve_cycles, settle_pools

    if args.command == "run":
        await runner.run_component(args.component)
        return None

    if args.component == "ingestor":
        if args.command == "backfill":
            fn = partial(ingest_fixtures.backfill, date_from=args.date_from, date_to=args.date_to)
            return await _one_shot("ingestor", "ingest_backfill", fn, needs_chain=False)
        if args.command == "supersede-result":
            fn = partial(ingest_fixtures.supersede, fixture_id=args.fixture_id, reason=args.reason, actor=args.actor)
            return await _one_shot("ingestor", "supersede_result", fn, needs_chain=False)
    if args.component == "settlement" and args.command == "settle-pool":
        async def _settle(chain, session):
            return await settle_pools.settle_pool(session, chain, args.pool_id)

        return await _one_shot("settlement", "settle_pool", _settle, needs_chain=True)
    if args.component == "resolver":
        if args.command == "resolve-cycle":
            async def _resolve(chain, session):
                return await resolve_cycles.resolve_cycle(session, chain, args.cycle_id)

            return await _one_shot("resolver", "resolve_cycle", _resolve, needs_chain=True)
        if args.command == "reevaluate":
            fn = partial(resolve_cycles.reevaluate, cycle_id=args.cycle_id)
            return await _one_shot("resolver", "reevaluate", fn, needs_chain=False)
    if args.component == "indexer" and args.command == "rescan":
        async def _rescan(chain, session):
            return await index_chain.rescan(session, chain, args.from_block)

        return await _one_shot("indexer", "index_rescan", _rescan, needs_chain=True)
    raise ValueError(f"unknown command: {args.component} {args.command}")


def exit_code_for(exc: BaseException) -> int:
    if isinstance(exc, (FatalConfigError, ValidationError)):
        return EXIT_CONFIG
    if isinstance(exc, ChainUnreachable):
        return EXIT_CHAIN
    if isinstance(exc, DatabaseUnreachable):
        return EXIT_DATABASE
    return EXIT_FAILURE


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        result = asyncio.run(dispatch(args))
    except KeyboardInterrupt:
        return EXIT_OK
    except Exception as e:
        code = exit_code_for(e)
        log.error("command_failed component=%s command=%s exit=%s err=%s", args.component, args.command, code, e)
        return code
    if result is not None:
        print(json.dumps(result, default=str, indent=2, sort_keys=True))
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
