"""Failure taxonomy shared by every component.

Outbound calls classify their failures into one of these classes before any
retry decision is made; only ``TransientError`` is ever retried.
"""

from __future__ import annotations


class BitredictError(RuntimeError):
    pass


class TransientError(BitredictError):
    """Network, RPC timeout, 5xx/429 or nonce race. Safe to retry."""

    def __init__(self, message: str, *, retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class PermanentProviderError(BitredictError):
    """Provider answered with a 4xx other than 429."""

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class DataIncomplete(BitredictError):
    """Fixture not finished or derived outcome missing; the caller defers."""

    def __init__(self, entity: str, reason: str):
        super().__init__(f"{entity}: {reason}")
        self.entity = entity
        self.reason = reason


class ResultConflict(BitredictError):
    def __init__(self, fixture_id: str, stored: dict, incoming: dict):
        super().__init__(f"result conflict fixture_id={fixture_id} stored={stored} incoming={incoming}")
        self.fixture_id = str(fixture_id)
        self.stored = dict(stored)
        self.incoming = dict(incoming)


class SettlementDivergence(BitredictError):
    def __init__(self, pool_id: int, expected: dict, observed: dict):
        super().__init__(f"settlement divergence pool_id={pool_id} expected={expected} observed={observed}")
        self.pool_id = int(pool_id)
        self.expected = dict(expected)
        self.observed = dict(observed)


class ResolutionDivergence(BitredictError):
    def __init__(self, cycle_id: int, expected: list, observed: list):
        super().__init__(f"resolution divergence cycle_id={cycle_id} expected={expected} observed={observed}")
        self.cycle_id = int(cycle_id)
        self.expected = list(expected)
        self.observed = list(observed)


class PermanentChainError(BitredictError):
    """Revert whose reason is not in the whitelist. The entity halts."""

    def __init__(self, reason: str, *, tx_hash: str | None = None):
        super().__init__(f"permanent chain error: {reason}")
        self.reason = reason
        self.tx_hash = tx_hash


class RevertError(BitredictError):
    """A classified contract revert. ``code`` is the normalised reason."""

    def __init__(self, code: str, raw_reason: str = "", *, tx_hash: str | None = None):
        super().__init__(f"revert {code}: {raw_reason}")
        self.code = code
        self.raw_reason = raw_reason
        self.tx_hash = tx_hash


class FatalConfigError(BitredictError):
    exit_code = 2


class ChainUnreachable(BitredictError):
    exit_code = 3


class DatabaseUnreachable(BitredictError):
    exit_code = 4
