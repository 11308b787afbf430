"""
Realtime push of plan progress to conversation-scoped Redis channels.
Best-effort: failures are logged and never reach the caller.
"""

import json
import logging
from typing import Any, Dict, Optional

import redis.asyncio as redis

logger = logging.getLogger("weaver.notifier")


class RealtimeNotifier:
    """Publishes progress payloads on ``weaver:conversations:{conversation_id}``."""

    CHANNEL_CONVERSATION = "weaver:conversations:{conversation_id}"

    def __init__(self, redis_url: str = "redis://localhost:6379", client: Optional[redis.Redis] = None):
        self.redis_url = redis_url
        self._client = client

    async def connect(self) -> None:
        if self._client is None:
            self._client = redis.from_url(self.redis_url, decode_responses=True)
        await self._client.ping()

    async def disconnect(self) -> None:
        if self._client:
            await self._client.close()

    async def notify_plan_progress(self, conversation_id: Optional[str], payload: Dict[str, Any]) -> None:
        if not conversation_id or self._client is None:
            return
        channel = self.CHANNEL_CONVERSATION.format(conversation_id=conversation_id)
        try:
            await self._client.publish(
                channel,
                json.dumps({"type": "fiction.plan.progress", "payload": payload}, default=str),
            )
        except Exception as e:
            logger.warning(f"Realtime notification to {channel} failed: {e}")
