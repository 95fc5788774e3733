"""Canonical market outcomes derived from raw fixture scores.

``derive_outcomes`` is a pure function: the same ``RawScores`` always yields
the same codes. Codes are short ASCII strings that go on-chain as ``bytes32``
(UTF-8, right-padded with NUL bytes).
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import Optional

MARKET_1X2 = "1X2"
MARKET_OU05 = "OU05"
MARKET_OU15 = "OU15"
MARKET_OU25 = "OU25"
MARKET_OU35 = "OU35"
MARKET_BTTS = "BTTS"
MARKET_HT_1X2 = "HT_1X2"
MARKET_HT_OU05 = "HT_OU05"
MARKET_HT_OU15 = "HT_OU15"

FT_OU_THRESHOLDS = {
    MARKET_OU05: Decimal("0.5"),
    MARKET_OU15: Decimal("1.5"),
    MARKET_OU25: Decimal("2.5"),
    MARKET_OU35: Decimal("3.5"),
}
HT_OU_THRESHOLDS = {
    MARKET_HT_OU05: Decimal("0.5"),
    MARKET_HT_OU15: Decimal("1.5"),
}

FT_FAMILIES = (MARKET_1X2, MARKET_OU05, MARKET_OU15, MARKET_OU25, MARKET_OU35, MARKET_BTTS)
HT_FAMILIES = (MARKET_HT_1X2, MARKET_HT_OU05, MARKET_HT_OU15)
ALL_FAMILIES = FT_FAMILIES + HT_FAMILIES

HOME = "1"
DRAW = "X"
AWAY = "2"
OVER = "Over"
UNDER = "Under"
YES = "Yes"
NO = "No"
UNAVAILABLE = "UNAVAILABLE"

CODES_BY_FAMILY = {
    MARKET_1X2: (HOME, DRAW, AWAY),
    MARKET_HT_1X2: (HOME, DRAW, AWAY),
    MARKET_BTTS: (YES, NO),
    **{family: (OVER, UNDER) for family in FT_OU_THRESHOLDS},
    **{family: (OVER, UNDER) for family in HT_OU_THRESHOLDS},
}


@dataclass(frozen=True)
class RawScores:
    home_ft: int
    away_ft: int
    home_ht: Optional[int] = None
    away_ht: Optional[int] = None
    # After extra time, shootout excluded. Present only when the fixture went to ET.
    home_et: Optional[int] = None
    away_et: Optional[int] = None
    home_pen: Optional[int] = None
    away_pen: Optional[int] = None

    def __post_init__(self):
        for name, value in asdict(self).items():
            if value is None:
                continue
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValueError(f"RawScores.{name} must be a non-negative int, got {value!r}")
        if self.home_ft is None or self.away_ft is None:
            raise ValueError("RawScores requires a full-time score")
        if (self.home_ht is None) != (self.away_ht is None):
            raise ValueError("RawScores half-time score must be complete or absent")
        if (self.home_et is None) != (self.away_et is None):
            raise ValueError("RawScores extra-time score must be complete or absent")

    @property
    def has_ht(self) -> bool:
        return self.home_ht is not None and self.away_ht is not None

    @property
    def went_to_extra_time(self) -> bool:
        return self.home_et is not None and self.away_et is not None

    def final(self) -> tuple[int, int]:
        """Score that settles 1X2/OU/BTTS families."""
        if self.went_to_extra_time:
            return self.home_et, self.away_et
        return self.home_ft, self.away_ft

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "RawScores":
        fields = cls.__dataclass_fields__
        return cls(**{k: (int(v) if v is not None else None) for k, v in data.items() if k in fields})


def _one_x_two(home: int, away: int) -> str:
    if home > away:
        return HOME
    if away > home:
        return AWAY
    return DRAW


def _over_under(home: int, away: int, threshold: Decimal) -> str:
    return OVER if Decimal(home + away) > threshold else UNDER


def derive_outcomes(raw: RawScores) -> dict[str, str]:
    home, away = raw.final()
    out: dict[str, str] = {MARKET_1X2: _one_x_two(home, away)}
    for family, threshold in FT_OU_THRESHOLDS.items():
        out[family] = _over_under(home, away, threshold)
    out[MARKET_BTTS] = YES if home >= 1 and away >= 1 else NO

    if raw.has_ht:
        out[MARKET_HT_1X2] = _one_x_two(raw.home_ht, raw.away_ht)
        for family, threshold in HT_OU_THRESHOLDS.items():
            out[family] = _over_under(raw.home_ht, raw.away_ht, threshold)
    else:
        for family in HT_FAMILIES:
            out[family] = UNAVAILABLE
    return out


def is_available(code: Optional[str]) -> bool:
    return bool(code) and code != UNAVAILABLE


def encode_outcome(code: str) -> bytes:
    data = code.encode("utf-8")
    if len(data) > 32:
        raise ValueError(f"outcome code longer than 32 bytes: {code!r}")
    return data.ljust(32, b"\x00")


def decode_outcome(value: bytes | str | None) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        raw = value[2:] if value.startswith("0x") else value
        value = bytes.fromhex(raw)
    return bytes(value).rstrip(b"\x00").decode("utf-8", errors="replace")


def outcome_hex(code: str) -> str:
    return "0x" + encode_outcome(code).hex()
