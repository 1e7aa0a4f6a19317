"""
ML Transport.

Request/reply client for the remote risk model over RabbitMQ (aio-pika).
Requests go to a durable work queue with reply_to set to this instance's
reply queue; replies are decoded and handed out through replies(), an
endless stream the worker's dispatcher drains.

The connection is supervised by a reconnect loop with capped exponential
backoff. While it is down, publish() fails Transient straight away and the
reply stream simply waits.
"""

import asyncio
import json
import math
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import AsyncIterator, Callable, List, Optional, Sequence

import aio_pika
from aio_pika.exceptions import AMQPException

from diabetify.config import Settings
from diabetify.errors import BusUnavailable, Permanent, Transient
from diabetify.services.features import FEATURE_COUNT, FEATURE_NAMES
from diabetify.utils.logger import get_logger

logger = get_logger(__name__)

BACKOFF_BASE_SECONDS = 1.0
BACKOFF_CAP_SECONDS = 30.0

# Attribution keys used by the existing model worker's reply format
LEGACY_FEATURE_KEYS = {
    "age": "age",
    "BMI": "bmi",
    "bmi": "bmi",
    "brinkman_index": "brinkman_score",
    "brinkman_score": "brinkman_score",
    "is_hypertension": "is_hypertension",
    "is_cholesterol": "is_cholesterol",
    "is_bloodline": "is_bloodline",
    "is_macrosomic_baby": "is_macrosomic_baby",
    "smoking_status": "smoking_status",
    "moderate_physical_activity_frequency": "physical_activity_frequency",
    "physical_activity_frequency": "physical_activity_frequency",
}


class MalformedReply(ValueError):
    pass


@dataclass
class FeatureAttribution:
    shap: float
    contribution: float
    impact: float

    def to_dict(self):
        return {"shap": self.shap, "contribution": self.contribution, "impact": self.impact}


@dataclass
class Reply:
    correlation_id: str
    ok: bool
    score: Optional[float] = None
    per_feature: Optional[List[FeatureAttribution]] = None
    elapsed_ms: Optional[float] = None
    error_kind: Optional[str] = None
    message: Optional[str] = None


def backoff_delay(attempt: int, base: float = BACKOFF_BASE_SECONDS, cap: float = BACKOFF_CAP_SECONDS,
                  rand: Callable[[], float] = random.random) -> float:
    """Delay before reconnect attempt `attempt` (0-based): doubling from base, capped, with jitter."""
    delay = min(cap, base * (2 ** min(attempt, 16)))
    # Jitter shaves up to 20% so a fleet of instances does not reconnect in step
    return delay * (0.8 + 0.2 * rand())


# --- wire format ---

def validate_features(features: Sequence[float]):
    """Range checks on the canonical vector; failures can never succeed on retry."""
    if len(features) != FEATURE_COUNT:
        raise Permanent(f"incorrect number of features: expected {FEATURE_COUNT}, got {len(features)}")
    values = dict(zip(FEATURE_NAMES, features))
    for name, value in values.items():
        if not isinstance(value, (int, float)) or isinstance(value, bool) or not math.isfinite(value):
            raise Permanent(f"{name} must be a finite number")
    if values["age"] <= 0:
        raise Permanent("age must be positive")
    if not 10 <= values["bmi"] <= 60:
        raise Permanent("BMI out of typical range (10-60)")
    if not 0 <= values["brinkman_score"] <= 3:
        raise Permanent("brinkman index must be between 0 and 3")
    for name in ("is_hypertension", "is_cholesterol", "is_bloodline"):
        if values[name] not in (0, 1):
            raise Permanent(f"{name} must be 0 or 1")
    if values["is_macrosomic_baby"] not in (0, 1, 2):
        raise Permanent("macrosomic baby must be 0, 1, or 2")
    if values["smoking_status"] not in (0, 1, 2):
        raise Permanent("smoking status must be 0, 1, or 2")
    if values["physical_activity_frequency"] < 0:
        raise Permanent("physical activity frequency cannot be negative")


def encode_request(correlation_id: str, features: Sequence[float], explain: bool = True,
                   now: datetime = None) -> bytes:
    validate_features(features)
    payload = {
        "correlation_id": correlation_id,
        "features": [float(v) for v in features],
        "explain": bool(explain),
        "timestamp": (now or datetime.now(timezone.utc)).isoformat(),
    }
    try:
        return json.dumps(payload, allow_nan=False).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise Permanent(f"could not encode request: {e}") from e


def _number(value, what: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise MalformedReply(f"{what} must be a number")
    return float(value)


def _attribution(item, what: str) -> FeatureAttribution:
    if not isinstance(item, dict):
        raise MalformedReply(f"{what} must be an object")
    try:
        return FeatureAttribution(
            shap=_number(item["shap"], f"{what}.shap"),
            contribution=_number(item["contribution"], f"{what}.contribution"),
            impact=_number(item["impact"], f"{what}.impact"),
        )
    except KeyError as e:
        raise MalformedReply(f"{what} is missing {e.args[0]}")


def _score(value) -> float:
    score = _number(value, "score")
    if not 0.0 <= score <= 1.0:
        raise MalformedReply(f"score {score} outside [0, 1]")
    return score


def _decode_canonical(correlation_id: str, data: dict) -> Reply:
    per_feature = None
    raw = data.get("per_feature", data.get("perFeature"))
    if raw is not None:
        if not isinstance(raw, list) or len(raw) != FEATURE_COUNT:
            raise MalformedReply(f"per_feature must list {FEATURE_COUNT} attributions")
        per_feature = [_attribution(item, f"per_feature[{i}]") for i, item in enumerate(raw)]
    elapsed = data.get("elapsed_ms", data.get("elapsedMs"))
    return Reply(
        correlation_id=correlation_id,
        ok=True,
        score=_score(data.get("score")),
        per_feature=per_feature,
        elapsed_ms=_number(elapsed, "elapsed_ms") if elapsed is not None else None,
    )


def _decode_legacy(correlation_id: str, data: dict) -> Reply:
    per_feature = None
    explanation = data.get("explanation")
    if explanation:
        if not isinstance(explanation, dict):
            raise MalformedReply("explanation must be an object")
        by_name = {}
        for key, item in explanation.items():
            name = LEGACY_FEATURE_KEYS.get(key)
            if name is not None:
                by_name[name] = _attribution(item, f"explanation.{key}")
        missing = [name for name in FEATURE_NAMES if name not in by_name]
        if missing:
            raise MalformedReply(f"explanation is missing {', '.join(missing)}")
        per_feature = [by_name[name] for name in FEATURE_NAMES]
    elapsed = data.get("elapsed_time")
    return Reply(
        correlation_id=correlation_id,
        ok=True,
        score=_score(data.get("prediction")),
        per_feature=per_feature,
        elapsed_ms=_number(elapsed, "elapsed_time") * 1000.0 if elapsed is not None else None,
    )


def decode_reply(body: bytes, correlation_id: str = None) -> Reply:
    """
    Parses a reply body. The token in the body wins over the AMQP property.
    Raises MalformedReply for anything that is not a well-formed reply.
    """
    try:
        data = json.loads(body)
    except (TypeError, ValueError) as e:
        raise MalformedReply(f"reply is not JSON: {e}") from e
    if not isinstance(data, dict):
        raise MalformedReply("reply must be a JSON object")

    token = data.get("correlation_id") or correlation_id
    if not token or not isinstance(token, str):
        raise MalformedReply("reply has no correlation token")

    error = data.get("error")
    if error:
        message = data.get("message") or (error if isinstance(error, str) else "model error")
        return Reply(correlation_id=token, ok=False, error_kind=data.get("kind") or "ModelError",
                     message=str(message))
    if "prediction" in data:
        return _decode_legacy(token, data)
    if data.get("ok") is not True:
        raise MalformedReply("reply is neither ok nor an error")
    return _decode_canonical(token, data)


# --- RabbitMQ client ---

class AmqpTransport:
    def __init__(self, url: str, request_queue: str, reply_queue: str,
                 exclusive_reply_queue: bool = False, reply_buffer: int = 256):
        self.url = url
        self.request_queue = request_queue
        self.reply_queue = reply_queue
        self.exclusive_reply_queue = exclusive_reply_queue

        self._connection = None
        self._channel = None
        self._connected = asyncio.Event()
        self._lost = asyncio.Event()
        self._closing = False
        self._supervisor = None
        self._publish_lock = asyncio.Lock()
        self._replies = asyncio.Queue(maxsize=reply_buffer)

    @classmethod
    def from_settings(cls, settings: Settings) -> "AmqpTransport":
        return cls(
            settings.rabbitmq_url,
            settings.ml_request_queue,
            settings.ml_reply_queue,
            exclusive_reply_queue=settings.ml_reply_queue_exclusive,
        )

    @property
    def is_connected(self) -> bool:
        return self._connected.is_set()

    async def start(self, wait: float = 5.0):
        """Starts the connection supervisor and waits up to `wait` seconds for a first connect."""
        if self._supervisor is None:
            self._closing = False
            self._supervisor = asyncio.create_task(self._supervise(), name="ml-transport-supervisor")
        try:
            await asyncio.wait_for(self._connected.wait(), timeout=wait)
        except asyncio.TimeoutError:
            logger.warning(f"Message bus not reachable after {wait}s; reconnecting in background")

    async def close(self):
        self._closing = True
        if self._supervisor is not None:
            self._supervisor.cancel()
            try:
                await self._supervisor
            except asyncio.CancelledError:
                pass
            self._supervisor = None
        await self._teardown()
        logger.info("ML transport closed")

    async def _supervise(self):
        attempt = 0
        while not self._closing:
            try:
                await self._open()
                attempt = 0
                await self._lost.wait()
                logger.warning("Message bus connection lost")
            except (AMQPException, ConnectionError, OSError) as e:
                logger.warning(f"Message bus connect failed: {e}")
            await self._teardown()
            if self._closing:
                break
            delay = backoff_delay(attempt)
            attempt += 1
            logger.info(f"Reconnecting to message bus in {delay:.1f}s (attempt {attempt})")
            await asyncio.sleep(delay)

    async def _open(self):
        self._lost.clear()
        connection = await aio_pika.connect(self.url)
        try:
            channel = await connection.channel()
            await channel.set_qos(prefetch_count=self._replies.maxsize)

            await channel.declare_queue(self.request_queue, durable=True)
            if self.exclusive_reply_queue:
                queue = await channel.declare_queue(self.reply_queue, exclusive=True, auto_delete=True)
            else:
                queue = await channel.declare_queue(self.reply_queue, durable=True)
            await queue.consume(self._on_message)
        except BaseException:
            await self._close_quietly(connection)
            raise

        self._connection = connection
        self._channel = channel
        # Losing either link stops reply consumption
        connection.close_callbacks.add(self._on_link_closed)
        channel.close_callbacks.add(self._on_link_closed)
        self._connected.set()
        logger.info(f"Connected to message bus; consuming replies from {self.reply_queue}")

    def _on_link_closed(self, sender, *args):
        # Close events from links replaced by a reconnect are ignored
        if sender is not self._connection and sender is not self._channel:
            return
        logger.warning(f"Message bus link closed: {sender!r}")
        self._mark_lost()

    def _mark_lost(self):
        self._connected.clear()
        self._lost.set()

    async def _close_quietly(self, connection):
        if connection.is_closed:
            return
        try:
            await connection.close()
        except (AMQPException, ConnectionError, OSError) as e:
            logger.debug(f"Ignoring error while closing bus connection: {e}")

    async def _teardown(self):
        self._connected.clear()
        connection, self._connection, self._channel = self._connection, None, None
        if connection is not None:
            await self._close_quietly(connection)

    async def _on_message(self, message: aio_pika.abc.AbstractIncomingMessage):
        async with message.process():
            try:
                reply = decode_reply(message.body, message.correlation_id)
            except MalformedReply as e:
                logger.error(f"Discarding malformed reply (correlation_id={message.correlation_id}): {e}")
                return
            # Blocks the consumer while the dispatcher is behind
            await self._replies.put(reply)

    async def publish(self, correlation_id: str, features: Sequence[float], explain: bool = True):
        body = encode_request(correlation_id, features, explain)
        if not self.is_connected or self._channel is None:
            raise Transient("message bus is not connected")
        message = aio_pika.Message(
            body,
            content_type="application/json",
            correlation_id=correlation_id,
            reply_to=self.reply_queue,
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
        )
        async with self._publish_lock:
            try:
                await self._channel.default_exchange.publish(message, routing_key=self.request_queue)
            except (AMQPException, ConnectionError, OSError, RuntimeError) as e:
                self._mark_lost()
                raise Transient(f"publish failed: {e}") from e
        logger.debug(f"Published request {correlation_id} to {self.request_queue}")

    async def replies(self) -> AsyncIterator[Reply]:
        while True:
            yield await self._replies.get()

    async def health_check(self):
        """
        Passive declare of the reply queue on a throwaway channel. A failed
        declare closes the channel it ran on, so it must not be the consumer's.
        """
        connection = self._connection
        if not self.is_connected or connection is None:
            raise BusUnavailable("message bus is not connected")
        try:
            check_channel = await connection.channel()
        except (AMQPException, ConnectionError, OSError, RuntimeError) as e:
            raise BusUnavailable(f"could not open a channel: {e}") from e
        try:
            await check_channel.declare_queue(self.reply_queue, passive=True)
        except (AMQPException, ConnectionError, OSError) as e:
            raise BusUnavailable(f"reply queue {self.reply_queue} is not consumable: {e}") from e
        finally:
            if not check_channel.is_closed:
                await check_channel.close()
