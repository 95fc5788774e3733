from . import index_chain, ingest_fixtures, resolve_cycles, settle_pools  # noqa: F401

__all__ = [
    "index_chain",
    "ingest_fixtures",
    "resolve_cycles",
    "settle_pools",
]
