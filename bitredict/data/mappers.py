from typing import Optional

SCHEDULED = "SCHEDULED"
INPLAY_1ST = "INPLAY_1ST"
HT = "HT"
INPLAY_2ND = "INPLAY_2ND"
FT = "FT"
AET = "AET"
PEN = "PEN"
POSTPONED = "POSTPONED"
CANCELLED = "CANCELLED"

FINISHED = frozenset({FT, AET, PEN})
VOIDED = frozenset({POSTPONED, CANCELLED})
LIVE = frozenset({INPLAY_1ST, HT, INPLAY_2ND})

# Progress order; a fixture status never moves to a lower rank once finished.
_RANK = {SCHEDULED: 0, POSTPONED: 0, INPLAY_1ST: 1, HT: 2, INPLAY_2ND: 3, FT: 4, AET: 4, PEN: 4, CANCELLED: 4}


def normalize_status(state: Optional[str]) -> Optional[str]:
    """Map a SportMonks ``state.state`` short code to the internal status.

    Returns ``None`` for unknown codes; the caller keeps the stored status.
    """
    code = (state or "").strip().upper()
    if not code:
        return None

    not_started = {"NS", "TBA", "PENDING"}
    first_half = {"INPLAY_1ST_HALF", "1ST_HALF"}
    half_time = {"HT"}
    second_half = {
        "INPLAY_2ND_HALF",
        "INPLAY_ET",
        "INPLAY_ET_2ND_HALF",
        "BREAK",
        "EXTRA_TIME_BREAK",
        "INPLAY_PENALTIES",
        "PEN_BREAK",
    }
    postponed = {"POSTPONED", "DELAYED", "SUSPENDED", "INTERRUPTED"}
    cancelled = {"CANCELLED", "ABANDONED", "WALKOVER", "AWARDED", "DELETED"}

    if code == "FT":
        return FT
    if code == "AET":
        return AET
    if code in {"FT_PEN", "PEN"}:
        return PEN
    if code in not_started:
        return SCHEDULED
    if code in first_half:
        return INPLAY_1ST
    if code in half_time:
        return HT
    if code in second_half:
        return INPLAY_2ND
    if code in postponed:
        return POSTPONED
    if code in cancelled:
        return CANCELLED
    return None


def merge_status(stored: Optional[str], incoming: Optional[str]) -> Optional[str]:
    """Monotonic status merge: finished never reverts to live or scheduled."""
    if incoming is None:
        return stored
    if stored is None:
        return incoming
    if stored in FINISHED and incoming not in FINISHED:
        return stored
    if stored == CANCELLED and incoming != CANCELLED:
        return stored
    if stored in LIVE and _RANK.get(incoming, 0) < _RANK.get(stored, 0) and incoming != POSTPONED:
        return stored
    return incoming


def is_finished(status: Optional[str]) -> bool:
    return (status or "") in FINISHED
