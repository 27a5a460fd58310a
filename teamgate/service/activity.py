from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Protocol

from teamgate.logging import get_logger
from teamgate.storage.models import ActivityEntry, utcnow


class ActivityStore(Protocol):
    def record_activity(self, entry: ActivityEntry) -> ActivityEntry: ...


class ActivityRecorder:
    """Fire-and-forget audit trail; failures never reach the caller."""

    def __init__(
        self,
        store: ActivityStore,
        *,
        clock: Callable[[], datetime] = utcnow,
        logger=None,
    ) -> None:
        self.store = store
        self._clock = clock
        self.logger = logger or get_logger(__name__)

    def record(
        self,
        action: str,
        description: str,
        *,
        user_id: Optional[str] = None,
        team_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[ActivityEntry]:
        entry = ActivityEntry(
            id=str(uuid.uuid4()),
            action=action,
            description=description,
            user_id=user_id,
            team_id=team_id,
            metadata=metadata,
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=self._clock(),
        )
        try:
            self.store.record_activity(entry)
        except Exception as exc:
            self.logger.warning(
                "activity_record_failed", action=action, error=str(exc)
            )
            return None
        self.logger.info(
            "activity_recorded", action=action, user_id=user_id, team_id=team_id
        )
        return entry


__all__ = ["ActivityRecorder", "ActivityStore"]
