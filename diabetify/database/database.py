"""
Shard router.

Each user's rows live on exactly one relational backend, picked by a range
map over the user id. Repositories never hold a session of their own; they
hand a unit of work to the router, which opens a session on the right
backend, commits on success and rolls back on failure.
"""

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, Dict, Iterator, Optional, Sequence, TypeVar

from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import QueuePool

from diabetify.config import Settings, ShardConfig
from diabetify.errors import ConfigError, ShardError
from diabetify.utils.logger import get_logger, log_shard_route

logger = get_logger(__name__)

Base = declarative_base()

T = TypeVar("T")


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Shard:
    """One backend: its engine, session factory and owned id range."""

    def __init__(self, config: ShardConfig, pool_size=5, max_overflow=10, pool_recycle=300):
        self.config = config
        self.name = config.name
        dsn = config.dsn
        if dsn.startswith("sqlite"):
            self.engine = create_engine(dsn, connect_args={"check_same_thread": False})
        else:
            self.engine = create_engine(
                dsn,
                poolclass=QueuePool,
                pool_size=pool_size,
                max_overflow=max_overflow,
                pool_recycle=pool_recycle,
                pool_pre_ping=True,  # Verify connection before use
                connect_args={"application_name": f"diabetify-{config.name}"}
                if dsn.startswith("postgresql") else {},
            )
        # Rows are read after their session closes
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        db = self.SessionLocal()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def run(self, work: Callable[[Session], T]) -> T:
        try:
            with self.session() as db:
                return work(db)
        except SQLAlchemyError as e:
            logger.error(f"Unit of work failed on {self.name}: {e}")
            raise ShardError(self.name, str(e)) from e

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.warning(f"Ping failed for {self.name}: {e}")
            return False

    def dispose(self):
        self.engine.dispose()

    def __repr__(self):
        return f"<Shard {self.name} [{self.config.min_id}..{self.config.max_id}]>"


class ShardRouter:
    """
    Routes per-user work to one backend and coordinates global work.

    shard_of() is a pure function of the configured ranges. Ids outside
    every range go to the first configured shard. There is no cross-shard
    atomicity: on_all_shards() runs sequentially and stops at the first
    failure, leaving earlier shards' work committed.
    """

    def __init__(self, shards: Sequence[Shard]):
        if not shards:
            raise ConfigError("At least one shard must be configured")
        self._order = list(shards)
        self._by_name = {s.name: s for s in shards}
        if len(self._by_name) != len(self._order):
            raise ConfigError("Shard names must be unique")

    @classmethod
    def from_settings(cls, settings: Settings) -> "ShardRouter":
        return cls([
            Shard(cfg, settings.db_pool_size, settings.db_max_overflow, settings.db_pool_recycle_seconds)
            for cfg in settings.shards
        ])

    def shard_of(self, user_id: int) -> str:
        for shard in self._order:
            if shard.config.covers(user_id):
                return shard.name
        fallback = self._order[0].name
        log_shard_route(logger, user_id, fallback, fallback=True)
        return fallback

    def shard_for_user(self, user_id: int) -> Shard:
        return self._by_name[self.shard_of(user_id)]

    def on_user_shard(self, user_id: int, work: Callable[[Session], T]) -> T:
        shard = self.shard_for_user(user_id)
        log_shard_route(logger, user_id, shard.name)
        return shard.run(work)

    def on_all_shards(self, work: Callable[[Session], T]) -> Dict[str, T]:
        results = {}
        for shard in self._order:
            try:
                results[shard.name] = shard.run(work)
            except ShardError:
                logger.error(f"Fan-out stopped at {shard.name}")
                raise
        return results

    def first_hit(self, work: Callable[[Session], Optional[T]]) -> Optional[T]:
        """Anchor-less lookup: shards in configured order, first non-None result wins."""
        for shard in self._order:
            found = shard.run(work)
            if found is not None:
                return found
        return None

    def shards(self) -> Dict[str, Shard]:
        return dict((s.name, s) for s in self._order)

    def check_health(self) -> Dict[str, bool]:
        return {s.name: s.ping() for s in self._order}

    def dispose(self):
        for shard in self._order:
            shard.dispose()
