"""
Redis Streams event bus for the Fiction Weaver.
Phase-progress events are appended to a per-plan stream and a global stream
so consumers can replay them (at-least-once delivery).
"""

import json
import logging
from typing import Any, Dict, List, Optional

import redis.asyncio as redis

from models import PhaseProgressEvent

logger = logging.getLogger("weaver.events")


class RedisStreamsService:
    """Publishes ``PhaseProgressEvent`` messages to Redis Streams."""

    STREAM_PLAN = "weaver:plan:{plan_id}:events"
    STREAM_GLOBAL = "weaver:events:global"

    EVENT_TYPE = "fiction.phase.progressed"

    def __init__(self, redis_url: str = "redis://localhost:6379", maxlen: int = 1000):
        self.redis_url = redis_url
        self.maxlen = maxlen
        self._client: Optional[redis.Redis] = None

    async def connect(self) -> None:
        """Establish connection to Redis."""
        self._client = redis.from_url(self.redis_url, decode_responses=True)
        await self._client.ping()

    async def disconnect(self) -> None:
        """Close Redis connection."""
        if self._client:
            await self._client.close()

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            raise RuntimeError("Redis client not connected. Call connect() first.")
        return self._client

    def _get_stream_key(self, plan_id: str) -> str:
        return self.STREAM_PLAN.format(plan_id=plan_id)

    async def publish_phase_progress(self, event: PhaseProgressEvent) -> str:
        """
        Publish a phase-progress event.

        Args:
            event: Progress event built by the phase engine

        Returns:
            The entry ID on the per-plan stream
        """
        fields = {
            "type": self.EVENT_TYPE,
            "plan_id": event.plan_id,
            "phase": event.phase,
            "status": event.status,
            "timestamp": event.timestamp.isoformat(),
            "data": event.model_dump_json(),
        }

        entry_id = await self.client.xadd(
            self._get_stream_key(event.plan_id),
            fields,
            maxlen=self.maxlen,
        )

        # Global stream keeps a longer tail for monitoring
        await self.client.xadd(
            self.STREAM_GLOBAL,
            fields,
            maxlen=self.maxlen * 10,
        )

        logger.debug(f"Published {event.phase}/{event.status} for plan {event.plan_id} as {entry_id}")
        return entry_id

    async def get_events(
        self,
        plan_id: str,
        start_id: str = "0",
        count: int = 100,
    ) -> List[Dict[str, Any]]:
        """
        Read progress events for a plan.

        Args:
            plan_id: Plan identifier
            start_id: Read entries after this ID (exclusive)
            count: Maximum number of events to return

        Returns:
            List of decoded events with their stream IDs
        """
        try:
            entries = await self.client.xrange(
                self._get_stream_key(plan_id),
                min=f"({start_id}" if start_id != "0" else "-",
                max="+",
                count=count,
            )
        except redis.ResponseError:
            return []

        events = []
        for entry_id, fields in entries:
            events.append({
                "id": entry_id,
                "type": fields.get("type"),
                "status": fields.get("status"),
                "data": json.loads(fields.get("data", "{}")),
            })
        return events
