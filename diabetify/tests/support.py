"""Test doubles and seeding helpers shared by the suite."""

import asyncio
import threading
import time
from datetime import date

from diabetify.database.models import User, UserProfile
from diabetify.errors import BusUnavailable, Transient
from diabetify.services.ml_transport import FeatureAttribution, Reply, encode_request

DEFAULT_PROFILE = dict(
    height=170.0,
    weight=72.25,
    bmi=25.0,
    hypertension=False,
    cholesterol=False,
    bloodline=False,
    macrosomic_baby=0,
    smoking_status=0,
    years_of_smoking=0,
    avg_smoke_count=0,
    physical_activity_frequency=3,
)


class FakeTransport:
    """In-memory stand-in for the RabbitMQ transport."""

    def __init__(self, responder=None):
        self.connected = True
        self.responder = responder
        self.published = []
        self.publish_errors = []
        self._replies = None
        self._loop = None

    @property
    def is_connected(self):
        return self.connected

    async def start(self):
        self._loop = asyncio.get_running_loop()
        self._replies = asyncio.Queue()

    async def close(self):
        self.connected = False

    async def publish(self, correlation_id, features, explain=True):
        if self.publish_errors:
            raise self.publish_errors.pop(0)
        if not self.connected:
            raise Transient("message bus is not connected")
        encode_request(correlation_id, features, explain)
        self.published.append((correlation_id, list(features), explain))
        if self.responder is not None:
            replies = self.responder(correlation_id, features)
            if isinstance(replies, Reply):
                replies = [replies]
            for reply in replies or ():
                self._replies.put_nowait(reply)

    def push(self, reply):
        """Delivers a reply from any thread."""
        self._loop.call_soon_threadsafe(self._replies.put_nowait, reply)

    async def replies(self):
        while True:
            yield await self._replies.get()

    async def health_check(self):
        if not self.connected:
            raise BusUnavailable("message bus is not connected")


def ok_reply(correlation_id, score, elapsed_ms=12.0):
    return Reply(
        correlation_id=correlation_id,
        ok=True,
        score=score,
        per_feature=[FeatureAttribution(0.01 * i, 0.1 * i, 1.0) for i in range(9)],
        elapsed_ms=elapsed_ms,
    )


def replying(score):
    return lambda correlation_id, features: ok_reply(correlation_id, score)


def seed_user(router, user_id, email=None, dob=date(2000, 1, 1), with_profile=True, **profile):
    def work(db):
        db.add(User(
            id=user_id,
            email=email or f"user{user_id}@example.com",
            password_hash="x",
            name=f"User {user_id}",
            date_of_birth=dob,
            verified=True,
        ))
        if with_profile:
            db.add(UserProfile(user_id=user_id, **dict(DEFAULT_PROFILE, **profile)))

    router.on_user_shard(user_id, work)


def wait_until(predicate, timeout=5.0, interval=0.02):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        result = predicate()
        if result:
            return result
        time.sleep(interval)
    raise AssertionError("condition not met in time")


class GatedAssembler:
    """Lets the submit-time check through, then holds executor calls until released."""

    def __init__(self, inner):
        self.inner = inner
        self.calls = 0
        self.entered = threading.Event()
        self.release = threading.Event()

    def assemble(self, user_id, overrides=None):
        self.calls += 1
        if self.calls > 1:
            self.entered.set()
            self.release.wait(5)
        return self.inner.assemble(user_id, overrides)
