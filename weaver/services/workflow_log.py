"""
Append-only workflow/audit log.

Writes are fire-and-forget relative to orchestration: a failing write is
logged and dropped.
"""

import logging
from typing import Any, Dict, Optional

from models import WorkflowEvent

from .repository import WeaverRepository

logger = logging.getLogger("weaver.workflow")


class WorkflowEventLogger:
    """Records workflow events through the repository."""

    def __init__(self, repository: WeaverRepository, enabled: bool = True):
        self.repository = repository
        self.enabled = enabled

    async def log(self, conversation_id: Optional[str], kind: str, payload: Dict[str, Any]) -> None:
        if not self.enabled:
            return
        event = WorkflowEvent(conversation_id=conversation_id, kind=kind, payload=payload)
        try:
            await self.repository.append_workflow_event(event)
        except Exception as e:
            logger.warning(f"Failed to write workflow event {kind}: {e}")
