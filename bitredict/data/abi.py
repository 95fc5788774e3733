"""JSON ABI fragments for the three contracts the oracle backend talks to.

Only the functions and events consumed here are listed; the contracts
themselves are external and fixed.
"""

from __future__ import annotations


def _p(type_: str, name: str = "", *, indexed: bool | None = None, components: list | None = None) -> dict:
    out: dict = {"type": type_, "name": name}
    if indexed is not None:
        out["indexed"] = indexed
    if components is not None:
        out["components"] = components
        out["internalType"] = "struct"
    return out


def _fn(name: str, inputs: list, outputs: list | None = None, *, view: bool = False) -> dict:
    return {
        "type": "function",
        "name": name,
        "inputs": inputs,
        "outputs": outputs or [],
        "stateMutability": "view" if view else "nonpayable",
    }


def _ev(name: str, inputs: list) -> dict:
    return {"type": "event", "name": name, "anonymous": False, "inputs": inputs}


POOL_STRUCT = [
    _p("address", "creator"),
    _p("uint16", "odds"),
    _p("uint8", "flags"),
    _p("uint8", "oracleType"),
    _p("uint8", "marketType"),
    _p("uint8", "reserved"),
    _p("uint256", "creatorStake"),
    _p("uint256", "totalCreatorSideStake"),
    _p("uint256", "maxBettorStake"),
    _p("uint256", "totalBettorStake"),
    _p("bytes32", "predictedOutcome"),
    _p("bytes32", "result"),
    _p("uint256", "eventStartTime"),
    _p("uint256", "eventEndTime"),
    _p("uint256", "bettingEndTime"),
    _p("uint256", "resultTimestamp"),
    _p("uint256", "arbitrationDeadline"),
    _p("uint256", "maxBetPerUser"),
    _p("bytes32", "league"),
    _p("bytes32", "category"),
    _p("bytes32", "region"),
    _p("bytes32", "homeTeam"),
    _p("bytes32", "awayTeam"),
    _p("bytes32", "title"),
    _p("string", "marketId"),
]

POOL_CORE_ABI = [
    _fn("getPool", [_p("uint256", "poolId")], [_p("tuple", "", components=POOL_STRUCT)], view=True),
    _fn("poolCount", [], [_p("uint256")], view=True),
    _fn("settlePool", [_p("uint256", "poolId"), _p("bytes32", "outcome")]),
    _fn("settlePoolAutomatically", [_p("uint256", "poolId")]),
    _fn("checkAndRefundEmptyPool", [_p("uint256", "poolId")]),
    _ev(
        "PoolCreated",
        [
            _p("uint256", "poolId", indexed=True),
            _p("address", "creator", indexed=True),
            _p("uint256", "eventStartTime", indexed=False),
            _p("uint256", "eventEndTime", indexed=False),
            _p("uint8", "oracleType", indexed=False),
            _p("bytes32", "marketId", indexed=False),
            _p("uint8", "marketType", indexed=False),
            _p("string", "league", indexed=False),
            _p("string", "category", indexed=False),
        ],
    ),
    _ev(
        "BetPlaced",
        [
            _p("uint256", "poolId", indexed=True),
            _p("address", "bettor", indexed=True),
            _p("uint256", "amount", indexed=False),
            _p("bool", "isForOutcome", indexed=False),
        ],
    ),
    _ev(
        "PoolSettled",
        [
            _p("uint256", "poolId", indexed=True),
            _p("bytes32", "result", indexed=False),
            _p("bool", "creatorSideWon", indexed=False),
            _p("uint256", "timestamp", indexed=False),
        ],
    ),
    _ev(
        "PoolRefunded",
        [
            _p("uint256", "poolId", indexed=True),
            _p("string", "reason", indexed=False),
        ],
    ),
]

GUIDED_ORACLE_ABI = [
    _fn("oracleBot", [], [_p("address")], view=True),
    _fn(
        "getOutcome",
        [_p("string", "marketId")],
        [_p("bool", "isSet"), _p("bytes", "resultData")],
        view=True,
    ),
    _fn("submitOutcome", [_p("string", "marketId"), _p("bytes", "resultData")]),
    _fn("executeCall", [_p("address", "target"), _p("bytes", "data")], [_p("bytes")]),
    _ev(
        "OutcomeSubmitted",
        [
            _p("string", "marketId", indexed=True),
            _p("bytes", "resultData", indexed=False),
            _p("uint256", "timestamp", indexed=False),
        ],
    ),
]

CYCLE_RESULT = [_p("uint8", "moneyline"), _p("uint8", "overUnder")]

DAILY_MATCH = [
    _p("uint64", "id"),
    _p("uint64", "startTime"),
    _p("uint32", "oddsHome"),
    _p("uint32", "oddsDraw"),
    _p("uint32", "oddsAway"),
    _p("uint32", "oddsOver"),
    _p("uint32", "oddsUnder"),
    _p("tuple", "result", components=CYCLE_RESULT),
]

SLIP_PREDICTION = [
    _p("uint64", "matchId"),
    _p("uint8", "betType"),
    _p("string", "selection"),
    _p("uint32", "selectedOdd"),
]

SLIP_STRUCT = [
    _p("address", "player"),
    _p("uint256", "cycleId"),
    _p("uint256", "placedAt"),
    _p("tuple[10]", "predictions", components=SLIP_PREDICTION),
    _p("uint256", "finalScore"),
    _p("uint8", "correctCount"),
    _p("bool", "isEvaluated"),
]

LEADERBOARD_ENTRY = [
    _p("address", "player"),
    _p("uint256", "slipId"),
    _p("uint256", "finalScore"),
    _p("uint8", "correctCount"),
]

ODDYSSEY_ABI = [
    _fn("dailyCycleId", [], [_p("uint256")], view=True),
    _fn("dailyCycleEndTimes", [_p("uint256")], [_p("uint256")], view=True),
    _fn("isCycleResolved", [_p("uint256")], [_p("bool")], view=True),
    _fn(
        "getCycleStatus",
        [_p("uint256", "_cycleId")],
        [
            _p("bool", "exists"),
            _p("uint8", "state"),
            _p("uint256", "endTime"),
            _p("uint256", "prizePool"),
            _p("uint32", "cycleSlipCount"),
            _p("bool", "hasWinner"),
        ],
        view=True,
    ),
    _fn(
        "getCycleMatches",
        [_p("uint256", "_cycleId")],
        [_p("tuple[10]", "", components=DAILY_MATCH)],
        view=True,
    ),
    _fn("getSlip", [_p("uint256", "_slipId")], [_p("tuple", "", components=SLIP_STRUCT)], view=True),
    _fn(
        "getDailyLeaderboard",
        [_p("uint256", "_cycleId")],
        [_p("tuple[5]", "", components=LEADERBOARD_ENTRY)],
        view=True,
    ),
    _fn(
        "resolveDailyCycle",
        [_p("uint256", "_cycleId"), _p("tuple[10]", "_results", components=CYCLE_RESULT)],
    ),
    _ev(
        "CycleStarted",
        [
            _p("uint256", "cycleId", indexed=True),
            _p("uint256", "endTime", indexed=False),
        ],
    ),
    _ev(
        "SlipPlaced",
        [
            _p("uint256", "cycleId", indexed=True),
            _p("address", "player", indexed=True),
            _p("uint256", "slipId", indexed=True),
        ],
    ),
    _ev(
        "CycleResolved",
        [
            _p("uint256", "cycleId", indexed=True),
            _p("uint256", "prizePool", indexed=False),
        ],
    ),
]

# Settings address key -> ABI.
CONTRACTS = {
    "pool_core": POOL_CORE_ABI,
    "guided_oracle": GUIDED_ORACLE_ABI,
    "oddyssey": ODDYSSEY_ABI,
}

# Events the indexer tails, per contract.
INDEXED_EVENTS = {
    "pool_core": ("PoolCreated", "BetPlaced", "PoolSettled", "PoolRefunded"),
    "guided_oracle": ("OutcomeSubmitted",),
    "oddyssey": ("CycleStarted", "SlipPlaced", "CycleResolved"),
}

# Pool.flags bits.
FLAG_SETTLED = 1 << 0
FLAG_CREATOR_SIDE_WON = 1 << 1
FLAG_PRIVATE = 1 << 2
FLAG_USES_BITR = 1 << 3

# Oddyssey cycle state enum.
CYCLE_NOT_STARTED = 0
CYCLE_ACTIVE = 1
CYCLE_ENDED = 2
CYCLE_RESOLVED = 3
