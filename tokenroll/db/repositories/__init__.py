"""Repository package for database access."""

from .offsets import SqliteLogFileStateRepository
from .usage import SqliteUsageBucketRepository
from .identity import SqliteSessionIdentityRepository

__all__ = [
    "SqliteLogFileStateRepository",
    "SqliteUsageBucketRepository",
    "SqliteSessionIdentityRepository",
]
