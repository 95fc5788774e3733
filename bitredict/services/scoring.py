"""Oddyssey slip scoring and ranking, mirroring the contract rule.

``final_score`` is the product of the frozen x1000 odds of the correct picks
(1 for wrong or void picks) in unsigned 128-bit arithmetic. Overflow
disqualifies the slip; fewer than ``min_correct`` hits zero the score.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Iterable, Optional

from bitredict.core.errors import DataIncomplete

from . import outcomes as oc

UINT128_MAX = (1 << 128) - 1
MATCH_COUNT = 10
LEADERBOARD_SIZE = 5

SEL_HOME = "H"
SEL_DRAW = "D"
SEL_AWAY = "A"
SEL_OVER = "O"
SEL_UNDER = "U"

SELECTION_CODES = {
    (oc.MARKET_1X2, SEL_HOME): oc.HOME,
    (oc.MARKET_1X2, SEL_DRAW): oc.DRAW,
    (oc.MARKET_1X2, SEL_AWAY): oc.AWAY,
    (oc.MARKET_OU25, SEL_OVER): oc.OVER,
    (oc.MARKET_OU25, SEL_UNDER): oc.UNDER,
}

_SELECTION_ALIASES = {
    oc.MARKET_1X2: {
        "H": SEL_HOME, "1": SEL_HOME, "HOME": SEL_HOME,
        "D": SEL_DRAW, "X": SEL_DRAW, "DRAW": SEL_DRAW,
        "A": SEL_AWAY, "2": SEL_AWAY, "AWAY": SEL_AWAY,
    },
    oc.MARKET_OU25: {
        "O": SEL_OVER, "OVER": SEL_OVER,
        "U": SEL_UNDER, "UNDER": SEL_UNDER,
    },
}

# Contract bet type enum.
BET_TYPES = {0: oc.MARKET_1X2, 1: oc.MARKET_OU25}

# Cycle result payload enums (0 = not set / void).
MONEYLINE_RESULT = {oc.HOME: 1, oc.DRAW: 2, oc.AWAY: 3}
OVER_UNDER_RESULT = {oc.OVER: 1, oc.UNDER: 2}


@dataclass(frozen=True)
class Pick:
    fixture_id: str
    market: str
    selection: str


@dataclass(frozen=True)
class MatchSnapshot:
    position: int
    fixture_id: str
    odds_home: int
    odds_draw: int
    odds_away: int
    odds_over: int
    odds_under: int

    def odds_for(self, market: str, selection: str) -> int:
        table = {
            (oc.MARKET_1X2, SEL_HOME): self.odds_home,
            (oc.MARKET_1X2, SEL_DRAW): self.odds_draw,
            (oc.MARKET_1X2, SEL_AWAY): self.odds_away,
            (oc.MARKET_OU25, SEL_OVER): self.odds_over,
            (oc.MARKET_OU25, SEL_UNDER): self.odds_under,
        }
        return int(table[(market, selection)])


@dataclass(frozen=True)
class SlipScore:
    slip_id: int
    correct_count: int
    final_score: int
    eligible: bool
    disqualified_overflow: bool = False
    void_picks: int = 0
    rank: Optional[int] = None
    player: Optional[str] = field(default=None, compare=False)


def normalize_market(raw) -> str:
    if isinstance(raw, int) or (isinstance(raw, str) and raw.strip().isdigit()):
        market = BET_TYPES.get(int(raw))
        if market is None:
            raise ValueError(f"unknown bet type: {raw!r}")
        return market
    key = str(raw or "").strip().upper()
    if key in {"1X2", "MONEYLINE", "FT_1X2"}:
        return oc.MARKET_1X2
    if key in {"OU25", "OU", "OVERUNDER", "OVER_UNDER"}:
        return oc.MARKET_OU25
    raise ValueError(f"unknown slip market: {raw!r}")


def normalize_selection(market: str, raw) -> str:
    key = str(raw or "").strip().upper()
    sel = _SELECTION_ALIASES.get(market, {}).get(key)
    if sel is None:
        raise ValueError(f"unknown selection {raw!r} for market {market}")
    return sel


def make_pick(fixture_id, market, selection) -> Pick:
    m = normalize_market(market)
    return Pick(fixture_id=str(fixture_id), market=m, selection=normalize_selection(m, selection))


def score_slip(
    slip_id: int,
    picks: list[Pick],
    snapshots: dict[str, MatchSnapshot],
    outcomes: dict[str, dict[str, str]],
    *,
    min_correct: int,
    allow_void: bool = False,
    player: str | None = None,
) -> SlipScore:
    """Score one slip against frozen odds and derived outcomes.

    A missing or unavailable outcome is a void pick when ``allow_void`` is
    set (factor 1, not counted as correct); otherwise ``DataIncomplete``.
    """
    if len(picks) != MATCH_COUNT:
        raise ValueError(f"slip {slip_id} has {len(picks)} picks, expected {MATCH_COUNT}")
    correct = 0
    voids = 0
    product = 1
    overflow = False
    for pick in picks:
        snap = snapshots.get(pick.fixture_id)
        if snap is None:
            raise ValueError(f"slip {slip_id} picks fixture {pick.fixture_id} outside the cycle snapshot")
        actual = (outcomes.get(pick.fixture_id) or {}).get(pick.market)
        if not oc.is_available(actual):
            if not allow_void:
                raise DataIncomplete(f"fixture {pick.fixture_id}", f"{pick.market} outcome missing")
            voids += 1
            continue
        if SELECTION_CODES[(pick.market, pick.selection)] != actual:
            continue
        correct += 1
        if not overflow:
            product *= snap.odds_for(pick.market, pick.selection)
            if product > UINT128_MAX:
                overflow = True

    eligible = correct >= int(min_correct) and not overflow
    return SlipScore(
        slip_id=int(slip_id),
        correct_count=correct,
        final_score=product if eligible else 0,
        eligible=eligible,
        disqualified_overflow=overflow,
        void_picks=voids,
        player=player,
    )


def rank_slips(scores: Iterable[SlipScore]) -> list[SlipScore]:
    """Eligible slips ordered by (score desc, correct desc, slip_id asc), ranks from 1.

    Ineligible slips follow, unranked, by slip_id.
    """
    items = list(scores)
    eligible = sorted(
        (s for s in items if s.eligible),
        key=lambda s: (-s.final_score, -s.correct_count, s.slip_id),
    )
    rest = sorted((s for s in items if not s.eligible), key=lambda s: s.slip_id)
    ranked = [replace(s, rank=i) for i, s in enumerate(eligible, start=1)]
    return ranked + [replace(s, rank=None) for s in rest]


def top_slips(ranked: list[SlipScore], size: int = LEADERBOARD_SIZE) -> list[int]:
    return [s.slip_id for s in ranked if s.rank is not None][:size]


def cycle_results_payload(
    snapshots: list[MatchSnapshot],
    outcomes: dict[str, dict[str, str]],
) -> list[tuple[int, int]]:
    """Ten ``(moneyline, overUnder)`` enums in snapshot order; 0 marks a void market."""
    payload = []
    for snap in sorted(snapshots, key=lambda s: s.position):
        fixture = outcomes.get(snap.fixture_id) or {}
        payload.append(
            (
                MONEYLINE_RESULT.get(fixture.get(oc.MARKET_1X2), 0),
                OVER_UNDER_RESULT.get(fixture.get(oc.MARKET_OU25), 0),
            )
        )
    return payload
