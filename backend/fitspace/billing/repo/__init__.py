from .interfaces import LedgerStore, PackageCatalog
from .memory import InMemoryLedgerStore, InMemoryPackageCatalog
from .sql import SqlLedgerStore, SqlPackageCatalog

__all__ = [
    'LedgerStore',
    'PackageCatalog',
    'InMemoryLedgerStore',
    'InMemoryPackageCatalog',
    'SqlLedgerStore',
    'SqlPackageCatalog',
]
