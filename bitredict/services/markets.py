from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from . import outcomes as oc

# PoolCore.marketType enum -> market family.
MARKET_TYPES: dict[int, str] = {
    0: oc.MARKET_1X2,
    1: oc.MARKET_OU25,
    2: oc.MARKET_OU15,
    3: oc.MARKET_OU35,
    4: oc.MARKET_OU05,
    5: oc.MARKET_BTTS,
    6: oc.MARKET_HT_1X2,
    7: oc.MARKET_HT_OU05,
    8: oc.MARKET_HT_OU15,
}

_FAMILY_ALIASES = {
    "1X2": oc.MARKET_1X2,
    "MONEYLINE": oc.MARKET_1X2,
    "FT_1X2": oc.MARKET_1X2,
    "OU05": oc.MARKET_OU05,
    "OU15": oc.MARKET_OU15,
    "OU25": oc.MARKET_OU25,
    "OU35": oc.MARKET_OU35,
    "BTTS": oc.MARKET_BTTS,
    "HT_1X2": oc.MARKET_HT_1X2,
    "HT_OU05": oc.MARKET_HT_OU05,
    "HT_OU15": oc.MARKET_HT_OU15,
}


@dataclass(frozen=True)
class MarketBinding:
    fixture_id: str
    family: str

    @property
    def market_id(self) -> str:
        return format_market_id(self.fixture_id, self.family)

    @property
    def is_half_time(self) -> bool:
        return self.family in oc.HT_FAMILIES


def normalize_family(raw: str | None) -> Optional[str]:
    key = (raw or "").strip().upper().replace("-", "_").replace("/", "")
    return _FAMILY_ALIASES.get(key)


def format_market_id(fixture_id: str | int, family: str) -> str:
    return f"{fixture_id}:{family}"


def parse_market_id(market_id: str | None, market_type: int | None = None) -> Optional[MarketBinding]:
    """Bind a pool's ``market_id`` to (fixture, family).

    Accepts ``"<fixture_id>:<FAMILY>"``, or a bare fixture id whose family
    comes from the pool's on-chain ``marketType``. Returns ``None`` when the
    id cannot be bound.
    """
    raw = (market_id or "").strip()
    if not raw:
        return None
    if ":" in raw:
        fixture_part, family_part = raw.split(":", 1)
        family = normalize_family(family_part)
    else:
        fixture_part = raw
        family = MARKET_TYPES.get(int(market_type)) if market_type is not None else None
    fixture_part = fixture_part.strip()
    if not family or not fixture_part.isdigit():
        return None
    return MarketBinding(fixture_id=fixture_part, family=family)
