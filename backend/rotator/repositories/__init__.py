# Repositories

from .base import (
    RepositoryError,
    ActiveLockExistsError,
    BotRepository,
    SnapshotRepository,
    LockRepository,
    TradeRepository,
    AuditRepository,
    Repositories,
    RepositoryProvider,
)
from .sql import SqlRepositoryProvider, build_repositories

__all__ = [
    "RepositoryError",
    "ActiveLockExistsError",
    "BotRepository",
    "SnapshotRepository",
    "LockRepository",
    "TradeRepository",
    "AuditRepository",
    "Repositories",
    "RepositoryProvider",
    "SqlRepositoryProvider",
    "build_repositories",
]
