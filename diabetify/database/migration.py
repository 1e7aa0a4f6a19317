from sqlalchemy import inspect, text
from sqlalchemy.exc import SQLAlchemyError

from diabetify.errors import ShardError
from diabetify.utils.logger import get_logger

from .database import Base, Shard, ShardRouter
from . import models  # noqa: F401  (registers tables on Base)

logger = get_logger(__name__)

# Columns added after the first schema release: table -> {column: DDL type}
ADDITIVE_COLUMNS = {
    "users": {"last_prediction_at": "TIMESTAMP"},
    "predictions": {"avg_smoke_count": "INTEGER", "prediction_summary": "TEXT"},
    "prediction_jobs": {"completed_at": "TIMESTAMP"},
}


def check_and_migrate_tables(shard: Shard):
    """
    Simple migration step to add missing columns if they don't exist.
    """
    insp = inspect(shard.engine)
    existing_tables = insp.get_table_names()
    with shard.engine.connect() as conn:
        for table, new_cols in ADDITIVE_COLUMNS.items():
            if table not in existing_tables:
                continue
            columns = [c["name"] for c in insp.get_columns(table)]
            for col, dtype in new_cols.items():
                if col not in columns:
                    logger.info(f"Migrating {shard.name}: adding column '{col}' to {table}")
                    conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {col} {dtype}"))
        conn.commit()


def init_shard(shard: Shard):
    """Creates missing tables on one shard and applies additive migrations."""
    try:
        check_and_migrate_tables(shard)
        Base.metadata.create_all(bind=shard.engine)
    except SQLAlchemyError as e:
        raise ShardError(shard.name, f"schema initialisation failed: {e}") from e
    logger.info(f"Schema ready on {shard.name}")


def init_shards(router: ShardRouter):
    """
    Opens every configured shard and brings its schema up to date.
    Raises ShardError on the first backend that cannot be reached.
    """
    for name, shard in router.shards().items():
        if not shard.ping():
            raise ShardError(name, "backend unreachable")
        init_shard(shard)
