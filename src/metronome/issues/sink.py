"""Issue sink: stamps issues and forwards them to the issue store."""

import uuid
from dataclasses import replace
from datetime import datetime
from typing import List, Optional, Sequence

from ..core.utils import utc_now
from ..logging import get_logger
from ..monitoring.models import Issue
from .stores import IssueStore


class IssueSink:
    """Records issues in the order analyzers produced them.

    Each :meth:`record` call forwards one analyzer batch with a single
    ``add_many``. Issues are never deduplicated. The issues recorded since
    the last :meth:`begin_cycle` are available as :attr:`recorded`.

    Args:
        store: Destination issue store
    """

    def __init__(self, store: IssueStore) -> None:
        self.store = store
        self.logger = get_logger("metronome.issues.sink")
        self._recorded: List[Issue] = []

    def begin_cycle(self) -> None:
        """Start a new per-cycle record."""
        self._recorded = []

    @property
    def recorded(self) -> List[Issue]:
        return list(self._recorded)

    @staticmethod
    def stamp(issue: Issue, now: Optional[datetime] = None) -> Issue:
        """Assign an id and detection time where missing."""
        changes = {}
        if not issue.id:
            changes["id"] = uuid.uuid4().hex
        if issue.detection_time is None:
            changes["detection_time"] = now or utc_now()
        return replace(issue, **changes) if changes else issue

    async def record(self, issues: Sequence[Issue]) -> List[Issue]:
        """Stamp and store one batch of issues.

        Returns:
            The stamped issues, in input order

        Raises:
            StoreError: If the store rejects the batch
        """
        if not issues:
            return []

        now = utc_now()
        stamped = [self.stamp(issue, now) for issue in issues]
        await self.store.add_many(stamped)
        self._recorded.extend(stamped)
        self.logger.debug("Issues recorded", issue_count=len(stamped))
        return stamped
