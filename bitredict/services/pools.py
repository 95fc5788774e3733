from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from bitredict.core.timeutils import from_epoch
from bitredict.data.abi import FLAG_CREATOR_SIDE_WON, FLAG_PRIVATE, FLAG_SETTLED, FLAG_USES_BITR

from .outcomes import decode_outcome

OPEN = "open"
BETTING_CLOSED = "betting_closed"
AWAITING_RESULT = "awaiting_result"
WAITING_FOR_RESULT = "waiting_for_result"
SETTLED = "settled"
REFUNDED = "refunded"
HALTED = "halted"

TERMINAL = (SETTLED, REFUNDED, HALTED)

ORACLE_TYPES = {0: "GUIDED", 1: "OPTIMISTIC"}


def _bytes(value) -> bytes:
    if isinstance(value, str):
        raw = value[2:] if value.startswith("0x") else value
        return bytes.fromhex(raw)
    return bytes(value or b"")


@dataclass(frozen=True)
class PoolChainState:
    pool_id: int
    creator: str
    odds: int
    flags: int
    oracle_type: int
    market_type: int
    creator_stake: int
    total_creator_side_stake: int
    total_bettor_stake: int
    predicted_outcome: bytes
    result: bytes
    event_start: Optional[datetime]
    event_end: Optional[datetime]
    betting_end: Optional[datetime]
    result_timestamp: Optional[datetime]
    arbitration_deadline: Optional[datetime]
    market_id: str

    @property
    def is_settled(self) -> bool:
        return bool(self.flags & FLAG_SETTLED)

    @property
    def creator_side_won(self) -> bool:
        return bool(self.flags & FLAG_CREATOR_SIDE_WON)

    @property
    def is_private(self) -> bool:
        return bool(self.flags & FLAG_PRIVATE)

    @property
    def uses_bitr(self) -> bool:
        return bool(self.flags & FLAG_USES_BITR)

    @property
    def result_code(self) -> str:
        return decode_outcome(self.result)

    @property
    def predicted_code(self) -> str:
        return decode_outcome(self.predicted_outcome)


def parse_pool_struct(pool_id: int, raw) -> PoolChainState:
    """Decode ``PoolCore.getPool`` output (positional tuple or mapping)."""
    if hasattr(raw, "keys"):
        get = raw.__getitem__
        names = True
    else:
        seq = list(raw)
        get = None
        names = False

    def field(name: str, index: int):
        return get(name) if names else seq[index]

    return PoolChainState(
        pool_id=int(pool_id),
        creator=str(field("creator", 0)),
        odds=int(field("odds", 1)),
        flags=int(field("flags", 2)),
        oracle_type=int(field("oracleType", 3)),
        market_type=int(field("marketType", 4)),
        creator_stake=int(field("creatorStake", 6)),
        total_creator_side_stake=int(field("totalCreatorSideStake", 7)),
        total_bettor_stake=int(field("totalBettorStake", 9)),
        predicted_outcome=_bytes(field("predictedOutcome", 10)),
        result=_bytes(field("result", 11)),
        event_start=from_epoch(field("eventStartTime", 12)),
        event_end=from_epoch(field("eventEndTime", 13)),
        betting_end=from_epoch(field("bettingEndTime", 14)),
        result_timestamp=from_epoch(field("resultTimestamp", 15)),
        arbitration_deadline=from_epoch(field("arbitrationDeadline", 16)),
        market_id=str(field("marketId", 24) or ""),
    )


def creator_side_wins(predicted_code: str, result_code: str) -> bool:
    """Contrarian pools: the creator wins iff the predicted outcome did not happen."""
    return predicted_code != result_code


def arbitration_deadline(event_end: datetime, chain_deadline: Optional[datetime], window_hours: int) -> datetime:
    if chain_deadline is not None:
        return chain_deadline
    return event_end + timedelta(hours=int(window_hours))


def lifecycle_status(now: datetime, betting_end: Optional[datetime], event_end: Optional[datetime]) -> str:
    if event_end is not None and now >= event_end:
        return AWAITING_RESULT
    if betting_end is not None and now >= betting_end:
        return BETTING_CLOSED
    return OPEN
