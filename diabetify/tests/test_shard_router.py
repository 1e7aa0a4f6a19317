import pytest
from sqlalchemy import inspect, text

from diabetify.config import ShardConfig, load_settings, parse_shards
from diabetify.database.database import Shard, ShardRouter
from diabetify.database.migration import init_shard
from diabetify.database.models import Prediction, User
from diabetify.errors import ConfigError, ShardError
from diabetify.repositories.users import UserRepo
from diabetify.tests.support import seed_user


def test_shard_of_follows_range_map(router):
    assert router.shard_of(1) == "shard1"
    assert router.shard_of(5000) == "shard1"
    assert router.shard_of(5001) == "shard2"
    assert router.shard_of(10000) == "shard2"


def test_shard_of_falls_back_to_first_shard(router):
    assert router.shard_of(10001) == "shard1"
    assert router.shard_of(0) == "shard1"


def test_shard_of_is_stable_across_router_instances(settings, router):
    other = ShardRouter([Shard(cfg) for cfg in settings.shards])
    try:
        for user_id in (1, 42, 4999, 5000, 5001, 7777, 10000, 123456):
            assert other.shard_of(user_id) == router.shard_of(user_id)
    finally:
        other.dispose()


def test_user_records_live_on_their_shard(router):
    seed_user(router, 1)
    seed_user(router, 5001)
    shards = router.shards()

    def user_ids(db):
        return sorted(u.id for u in db.query(User).all())

    assert shards["shard1"].run(user_ids) == [1]
    assert shards["shard2"].run(user_ids) == [5001]


def test_on_all_shards_returns_per_shard_results(router):
    seed_user(router, 2)
    seed_user(router, 3)
    seed_user(router, 6000)
    counts = router.on_all_shards(lambda db: db.query(User).count())
    assert counts == {"shard1": 2, "shard2": 1}


def test_on_all_shards_stops_at_first_failure(router):
    visited = []

    def work(db):
        visited.append(db.bind.url.database)
        raise ShardError("test", "boom")

    with pytest.raises(ShardError):
        router.on_all_shards(work)
    assert len(visited) == 1


def test_unit_of_work_rolls_back_on_error(router):
    def work(db):
        db.add(User(id=7, email="seven@example.com", password_hash="x"))
        db.flush()
        raise ValueError("abort")

    with pytest.raises(ValueError):
        router.on_user_shard(7, work)
    assert UserRepo(router).get_by_id(7) is None


def test_backend_errors_become_shard_errors(router):
    seed_user(router, 8, email="dup@example.com")
    with pytest.raises(ShardError) as excinfo:
        seed_user(router, 9, email="dup@example.com")
    assert excinfo.value.shard_name == "shard1"


def test_anchorless_lookup_by_email(router):
    seed_user(router, 5002, email="far@example.com")
    users = UserRepo(router)
    found = users.get_by_email("far@example.com")
    assert found is not None and found.id == 5002
    assert users.get_by_email("nobody@example.com") is None


def test_check_health_pings_every_shard(router):
    assert router.check_health() == {"shard1": True, "shard2": True}


def test_router_rejects_empty_and_duplicate_configuration(tmp_path):
    with pytest.raises(ConfigError):
        ShardRouter([])
    cfg = ShardConfig("shard1", f"sqlite:///{tmp_path / 'a.db'}", 1, 10)
    with pytest.raises(ConfigError):
        ShardRouter([Shard(cfg), Shard(cfg)])


def test_parse_shards_default_ranges():
    shards = parse_shards({
        "DATABASE_URL_SHARD1": "postgres://u:p@db1/diabetify",
        "DATABASE_URL_SHARD2": "postgresql://u:p@db2/diabetify",
    })
    assert [(s.name, s.min_id, s.max_id) for s in shards] == [
        ("shard1", 1, 5000),
        ("shard2", 5001, 10000),
    ]
    assert shards[0].dsn.startswith("postgresql://")


def test_parse_shards_explicit_ranges_and_overlap():
    shards = parse_shards({
        "DATABASE_URL_SHARD1": "sqlite:///a.db",
        "DATABASE_URL_SHARD2": "sqlite:///b.db",
        "SHARD2_RANGE": "20001-40000",
    })
    assert (shards[1].min_id, shards[1].max_id) == (20001, 40000)

    with pytest.raises(ConfigError):
        parse_shards({
            "DATABASE_URL_SHARD1": "sqlite:///a.db",
            "DATABASE_URL_SHARD2": "sqlite:///b.db",
            "SHARD2_RANGE": "100-6000",
        })


def test_single_database_url_is_a_one_shard_configuration():
    shards = parse_shards({"DATABASE_URL": "sqlite:///only.db"})
    assert len(shards) == 1
    assert shards[0].covers(1) and shards[0].covers(10 ** 9)


def test_load_settings_rejects_bad_numbers():
    with pytest.raises(ConfigError):
        load_settings({"MAX_ACTIVE_JOBS_PER_USER": "three"})
    with pytest.raises(ConfigError):
        load_settings({"WORKER_POOL_SIZE": "0"})
    with pytest.raises(ConfigError):
        load_settings({"SHARD1_RANGE": "10", "DATABASE_URL_SHARD1": "sqlite:///a.db"})


def test_load_settings_reads_worker_tuning():
    settings = load_settings({
        "MAX_ACTIVE_JOBS_PER_USER": "5",
        "ML_REPLY_TIMEOUT_SECONDS": "2.5",
        "WORKER_POOL_SIZE": "4",
        "ML_INSTANCE_ID": "api-1",
    })
    assert settings.max_active_jobs_per_user == 5
    assert settings.reply_timeout_seconds == 2.5
    assert settings.worker_pool_size == 4
    assert settings.ml_reply_queue == "predict.replies.api-1"


def test_migration_adds_missing_columns(tmp_path):
    shard = Shard(ShardConfig("old", f"sqlite:///{tmp_path / 'old.db'}", 1, 10))
    with shard.engine.connect() as conn:
        conn.execute(text(
            "CREATE TABLE prediction_jobs (id VARCHAR(36) PRIMARY KEY, user_id INTEGER NOT NULL, "
            "is_what_if BOOLEAN NOT NULL, status VARCHAR(20) NOT NULL, prediction_id INTEGER, "
            "error_message TEXT, created_at TIMESTAMP, updated_at TIMESTAMP)"
        ))
        conn.commit()

    init_shard(shard)
    columns = [c["name"] for c in inspect(shard.engine).get_columns("prediction_jobs")]
    assert "completed_at" in columns
    assert Prediction.__tablename__ in inspect(shard.engine).get_table_names()
    shard.dispose()
