import dataclasses

import pytest
from fastapi.testclient import TestClient

from diabetify.api.auth import create_access_token
from diabetify.config import Settings, ShardConfig
from diabetify.database.database import Shard, ShardRouter
from diabetify.database.migration import init_shards
from diabetify.main import create_app
from diabetify.tests.support import FakeTransport


@pytest.fixture
def shard_configs(tmp_path):
    return (
        ShardConfig("shard1", f"sqlite:///{tmp_path / 'shard1.db'}", 1, 5000),
        ShardConfig("shard2", f"sqlite:///{tmp_path / 'shard2.db'}", 5001, 10000),
    )


@pytest.fixture
def settings(shard_configs):
    return Settings(
        shards=shard_configs,
        reply_timeout_seconds=0.5,
        stop_grace_seconds=0.5,
        worker_pool_size=2,
        submission_backlog=50,
        job_sweep_interval_minutes=0,
        ml_instance_id="test",
        jwt_secret_key="test-secret",
    )


@pytest.fixture
def router(settings):
    shard_router = ShardRouter([Shard(cfg) for cfg in settings.shards])
    init_shards(shard_router)
    yield shard_router
    shard_router.dispose()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def app_factory(settings, router, transport):
    def build(**overrides):
        app_settings = dataclasses.replace(settings, **overrides) if overrides else settings
        return TestClient(create_app(app_settings, router=router, transport=transport))
    return build


@pytest.fixture
def client(app_factory):
    with app_factory() as test_client:
        yield test_client


@pytest.fixture
def auth_headers(settings):
    def headers(user_id):
        return {"Authorization": f"Bearer {create_access_token(settings, user_id)}"}
    return headers
