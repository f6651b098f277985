"""Trade Journal Engine package."""

from .config import (
    EngineConfig,
    FetchConfig,
    LoggingConfig,
    PersistenceConfig,
    RetryPolicy,
)

__all__ = [
    "EngineConfig",
    "FetchConfig",
    "LoggingConfig",
    "PersistenceConfig",
    "RetryPolicy",
]
