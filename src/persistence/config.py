"""
Persistence Configuration

Immutable settings for the store connection and the retry channel, read from
the environment at startup.
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class StoreConfig:
    """
    PostgreSQL connection settings.

    Rendered into the libpq key/value form; TLS is disabled unless `sslmode`
    says otherwise.
    """
    user: str
    password: str
    host: str = "localhost"
    port: str = "5432"
    dbname: str = "meter"
    sslmode: str = "disable"
    connect_timeout: int = 10
    statement_timeout_ms: int = 30000
    pool_min: int = 1
    pool_max: int = 10

    @property
    def dsn(self) -> str:
        return (
            f"user={self.user} password={self.password} host={self.host} "
            f"port={self.port} dbname={self.dbname} sslmode={self.sslmode}"
        )

    def __str__(self) -> str:
        return self.dsn

    def __repr__(self) -> str:
        return (
            f"StoreConfig(user={self.user!r}, password='***', host={self.host!r}, "
            f"port={self.port!r}, dbname={self.dbname!r}, sslmode={self.sslmode!r})"
        )

    @classmethod
    def from_env(cls, prefix: str = "METER_DB_") -> "StoreConfig":
        """Build from METER_DB_* environment variables."""
        env = os.environ
        return cls(
            user=env.get(f"{prefix}USER", "postgres"),
            password=env.get(f"{prefix}PASSWORD", ""),
            host=env.get(f"{prefix}HOST", "localhost"),
            port=env.get(f"{prefix}PORT", "5432"),
            dbname=env.get(f"{prefix}NAME", "meter"),
            sslmode=env.get(f"{prefix}SSLMODE", "disable"),
            connect_timeout=int(env.get(f"{prefix}CONNECT_TIMEOUT", 10)),
            statement_timeout_ms=int(env.get(f"{prefix}STATEMENT_TIMEOUT_MS", 30000)),
            pool_min=int(env.get(f"{prefix}POOL_MIN", 1)),
            pool_max=int(env.get(f"{prefix}POOL_MAX", 10)),
        )


class RetryMode(Enum):
    """What the retry channel does when it is full."""
    DROP = "DROP"  # drop and count immediately
    BLOCK = "BLOCK"  # wait up to offer_timeout in the background, then drop


@dataclass(frozen=True)
class RetryPolicy:
    """Back-pressure policy of the retry channel."""
    capacity: int = 1024
    mode: RetryMode = RetryMode.DROP
    offer_timeout: float = 5.0
    max_pending_offers: int = 64

    @classmethod
    def from_env(cls) -> "RetryPolicy":
        env = os.environ
        return cls(
            capacity=int(env.get("METER_RETRY_CAPACITY", 1024)),
            mode=RetryMode[env.get("METER_RETRY_MODE", "DROP").upper()],
            offer_timeout=float(env.get("METER_RETRY_OFFER_TIMEOUT", 5.0)),
            max_pending_offers=int(env.get("METER_RETRY_MAX_PENDING", 64)),
        )


@dataclass(frozen=True)
class PersisterSettings:
    """
    Startup wiring for the write path.

    `dry_run` selects the NullPersister; `database_url` (sqlite:///...) wins
    over `store` when both are set.
    """
    dry_run: bool = False
    verbose: bool = False
    database_url: Optional[str] = None
    store: Optional[StoreConfig] = None
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    @classmethod
    def from_env(cls) -> "PersisterSettings":
        database_url = os.environ.get("DATABASE_URL")
        return cls(
            dry_run=_env_bool("METER_DRY_RUN"),
            verbose=_env_bool("METER_VERBOSE"),
            database_url=database_url,
            store=None if database_url else StoreConfig.from_env(),
            retry=RetryPolicy.from_env(),
        )
