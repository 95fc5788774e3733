"""Test doubles shared by the job tests."""

from types import SimpleNamespace

from bitredict.core.chain import TxResult


class FakeResult:
    def __init__(self, rows=None, *, rowcount: int = 1):
        self._rows = list(rows or [])
        self.rowcount = rowcount

    def first(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)

    def scalar_one(self):
        return self._rows[0][0]


class FakeSession:
    """Records statements; ``responses`` maps a SQL fragment to rows returned for it."""

    def __init__(self, responses: dict | None = None):
        self.calls: list[tuple[str, dict | None]] = []
        self.responses = dict(responses or {})
        self.commits = 0
        self.rollbacks = 0

    async def execute(self, stmt, params=None):
        sql = str(stmt)
        self.calls.append((sql, dict(params) if params is not None else None))
        for fragment, rows in self.responses.items():
            if fragment in sql:
                if callable(rows):
                    rows = rows(params or {})
                return FakeResult(rows)
        return FakeResult([])

    async def commit(self):
        self.commits += 1

    async def rollback(self):
        self.rollbacks += 1

    def statements(self, fragment: str) -> list[dict | None]:
        return [params for sql, params in self.calls if fragment in sql]


def row(**kwargs):
    return SimpleNamespace(**kwargs)


class FakeChain:
    """Scriptable contract surface: ``reads`` maps (contract, fn) to a value or callable."""

    def __init__(self, reads: dict | None = None, *, signer: str = "0x" + "a" * 40):
        self.reads = dict(reads or {})
        self.transactions: list[tuple] = []
        self.tx_effects: dict[tuple[str, str], object] = {}
        self.signer_address = signer
        self._tx_counter = 0

    async def call(self, contract, fn, *args, block="latest"):
        value = self.reads[(contract, fn)]
        if callable(value):
            return value(*args)
        return value

    async def transact(self, contract, fn, *args, gas_kind):
        self.transactions.append((contract, fn, args, gas_kind))
        effect = self.tx_effects.get((contract, fn))
        if isinstance(effect, list):
            effect = effect.pop(0) if effect else None
        if isinstance(effect, BaseException):
            raise effect
        if callable(effect):
            effect(*args)
        self._tx_counter += 1
        return TxResult(tx_hash=f"0x{self._tx_counter:064x}", block_number=100 + self._tx_counter, status=1, gas_used=21000)

    def encode_call(self, contract, fn, *args):
        return f"{contract}.{fn}{args}".encode()

    def address(self, name):
        return "0x" + "b" * 40

    def sent(self, fn: str) -> list[tuple]:
        return [t for t in self.transactions if t[1] == fn]
