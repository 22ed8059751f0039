"""Durable moderation queue on top of Redis streams.

The stream is the broadcast point and a consumer group on it is the durable
work queue: every group sees every entry, and inside a group each entry is
handed to a single consumer. Entries stay in the group's pending list until
acknowledged, which gives at-least-once delivery across worker crashes.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError
from redis.exceptions import TimeoutError as RedisTimeoutError

from dancefeedback.infra.redis import ClientFactory
from dancefeedback.moderation.domain.errors import QueueUnavailable
from dancefeedback.moderation.domain.models import QueueMessage
from dancefeedback.obs import metrics

logger = logging.getLogger(__name__)

BODY_FIELD = "body"
_TRANSPORT_ERRORS = (RedisConnectionError, RedisTimeoutError, OSError)
_BROKER_ERRORS = _TRANSPORT_ERRORS + (ResponseError,)

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class Delivery:
    """A message handed to this consumer; it stays pending until acked."""

    entry_id: str
    body: Optional[str]
    delivery_count: int = 1


class QueueConnection:
    """Owns the broker client and whether topology has been declared on it.

    :meth:`ensure_ready` is idempotent: it returns immediately while the
    connection is healthy and otherwise reconnects and redeclares, retrying
    with backoff until it succeeds or the calling task is cancelled.
    """

    def __init__(
        self,
        client_factory: ClientFactory,
        *,
        stream: str,
        group: str,
        reconnect_delay: float = 1.0,
        reconnect_max_delay: float = 30.0,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.stream = stream
        self.group = group
        self._factory = client_factory
        self._reconnect_delay = reconnect_delay
        self._reconnect_max_delay = reconnect_max_delay
        self._sleep = sleep
        self._client: Optional[redis.Redis] = None
        self._ready = False

    @property
    def is_ready(self) -> bool:
        return self._ready

    async def ensure_ready(self, *, retry: bool = True) -> redis.Redis:
        """Return a ready client.

        With ``retry`` disabled a single failed attempt raises
        :class:`QueueUnavailable` instead of backing off, for callers that
        must answer promptly.
        """
        delay = self._reconnect_delay
        while True:
            if self._ready and self._client is not None:
                return self._client
            try:
                client = self._client or self._factory()
                self._client = client
                await client.ping()
                await self.declare_topology(client)
            except _BROKER_ERRORS as exc:
                await self._drop_client()
                if not retry:
                    raise QueueUnavailable(str(exc)) from exc
                logger.warning(
                    "moderation queue unavailable, retrying",
                    extra={"stream": self.stream, "error": str(exc), "retry_in": delay},
                )
                await self._sleep(delay)
                delay = min(delay * 2, self._reconnect_max_delay)
                continue
            self._ready = True
            metrics.MOD_QUEUE_RECONNECTS_TOTAL.inc()
            logger.info("moderation queue connected", extra={"stream": self.stream, "group": self.group})
            return client

    async def declare_topology(self, client: redis.Redis) -> None:
        """Create the stream and its consumer group; safe to repeat."""
        try:
            await client.xgroup_create(self.stream, self.group, id="0", mkstream=True)
        except ResponseError as exc:
            if "BUSYGROUP" not in str(exc):
                raise

    def mark_broken(self) -> None:
        """Force the next :meth:`ensure_ready` to reconnect and redeclare."""
        self._ready = False

    async def close(self) -> None:
        self._ready = False
        await self._drop_client()

    async def _drop_client(self) -> None:
        client, self._client = self._client, None
        self._ready = False
        if client is None:
            return
        try:
            await client.aclose()
        except _TRANSPORT_ERRORS:
            logger.debug("ignoring error while closing broken redis client")


class RedisStreamQueue:
    """Publish, poll, ack and nack moderation messages."""

    def __init__(
        self,
        connection: QueueConnection,
        *,
        consumer: str,
        claim_idle_ms: int = 60000,
        dead_letter_stream: Optional[str] = None,
    ) -> None:
        self.connection = connection
        self.consumer = consumer
        self.claim_idle_ms = claim_idle_ms
        self.dead_letter_stream = dead_letter_stream

    @property
    def stream(self) -> str:
        return self.connection.stream

    @property
    def group(self) -> str:
        return self.connection.group

    async def connect(self) -> None:
        await self.connection.ensure_ready()

    async def publish(self, message: QueueMessage) -> str:
        """Append a message; fails fast with :class:`QueueUnavailable` while the broker is down."""
        async with self._client(retry=False) as client:
            return await client.xadd(self.stream, {BODY_FIELD: message.to_wire()})

    async def consume_one(self, timeout: float = 0.0) -> Optional[Delivery]:
        """Return the next delivery or ``None``.

        Redeliveries come first: this consumer's own pending entries (nacked or
        left over from a crash), then entries stuck on other consumers for
        longer than ``claim_idle_ms``, and only then new entries.
        """
        async with self._client() as client:
            delivery = await self._read_own_pending(client)
            if delivery is None and self.claim_idle_ms > 0:
                delivery = await self._claim_stale(client)
            if delivery is None:
                block = int(timeout * 1000) if timeout > 0 else None
                response = await client.xreadgroup(
                    self.group, self.consumer, {self.stream: ">"}, count=1, block=block
                )
                entry = _first_entry(response)
                if entry is not None:
                    delivery = Delivery(entry_id=entry[0], body=_body(entry[1]), delivery_count=1)
            return delivery

    async def ack(self, delivery: Delivery) -> None:
        async with self._client() as client:
            await client.xack(self.stream, self.group, delivery.entry_id)

    async def nack(self, delivery: Delivery, *, requeue: bool = True) -> None:
        """Reject a delivery.

        With ``requeue`` the entry is left pending so the next poll hands it
        out again. Without it the entry is acknowledged and, when configured,
        copied to the dead-letter stream.
        """
        if requeue:
            return
        async with self._client() as client:
            if self.dead_letter_stream:
                await client.xadd(
                    self.dead_letter_stream,
                    {BODY_FIELD: delivery.body or "", "entry_id": delivery.entry_id, "group": self.group},
                )
            await client.xack(self.stream, self.group, delivery.entry_id)

    async def close(self) -> None:
        await self.connection.close()

    async def _read_own_pending(self, client: redis.Redis) -> Optional[Delivery]:
        while True:
            response = await client.xreadgroup(self.group, self.consumer, {self.stream: "0"}, count=1)
            entry = _first_entry(response)
            if entry is None:
                return None
            entry_id, fields = entry
            if not fields:
                # trimmed or deleted while pending; nothing left to deliver
                await client.xack(self.stream, self.group, entry_id)
                continue
            return Delivery(entry_id=entry_id, body=_body(fields), delivery_count=await self._times_delivered(client, entry_id))

    async def _claim_stale(self, client: redis.Redis) -> Optional[Delivery]:
        response = await client.xautoclaim(
            self.stream, self.group, self.consumer, min_idle_time=self.claim_idle_ms, start_id="0-0", count=1
        )
        claimed = response[1] if isinstance(response, (list, tuple)) and len(response) > 1 else []
        for entry_id, fields in claimed:
            if not fields:
                await client.xack(self.stream, self.group, entry_id)
                continue
            logger.info("reclaimed stale moderation entry", extra={"entry_id": entry_id})
            return Delivery(entry_id=entry_id, body=_body(fields), delivery_count=await self._times_delivered(client, entry_id))
        return None

    async def _times_delivered(self, client: redis.Redis, entry_id: str) -> int:
        rows = await client.xpending_range(self.stream, self.group, min=entry_id, max=entry_id, count=1)
        if not rows:
            return 1
        return int(rows[0].get("times_delivered", 1))

    @asynccontextmanager
    async def _client(self, *, retry: bool = True) -> AsyncIterator[redis.Redis]:
        client = await self.connection.ensure_ready(retry=retry)
        try:
            yield client
        except _BROKER_ERRORS as exc:
            # covers NOGROUP after a flush and READONLY after a failover: reconnect and redeclare on next use
            self.connection.mark_broken()
            raise QueueUnavailable(str(exc)) from exc


def _first_entry(response: Any) -> Optional[tuple[str, Any]]:
    if not response:
        return None
    streams = response.values() if isinstance(response, dict) else (item[1] for item in response)
    for entries in streams:
        for entry_id, fields in entries:
            return str(entry_id), fields
    return None


def _body(fields: Any) -> Optional[str]:
    if not isinstance(fields, dict):
        return None
    value = fields.get(BODY_FIELD)
    if value is None:
        value = fields.get(BODY_FIELD.encode())
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value
