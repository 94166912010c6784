"""Age-based forgetting of memories per memory type."""

import logging

from .interfaces import HistoryStore, VectorStore
from .models import HistoryAction, MemoryRecord, RetentionResult, RetentionRules
from .utils import Clock, age_in_days, utc_now

logger = logging.getLogger(__name__)

PAGE_SIZE = 500


class RetentionScanner:
    """Finds, and optionally deletes, latest memories older than their rule.

    A memory's age is measured from its event date, or its creation time
    when it has none. It expires only when its type's rule is positive and
    the age is strictly greater than the rule.
    """

    def __init__(
        self,
        store: VectorStore,
        history: HistoryStore,
        rules: RetentionRules,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.history = history
        self.rules = rules
        self._clock = clock

    def is_expired(self, record: MemoryRecord) -> bool:
        days = self.rules.days_for(record.memory_type)
        if days <= 0:
            return False
        age = age_in_days(record.reference_date, self._clock())
        return age is not None and age > days

    def find_expired(self, user_id: str) -> list[MemoryRecord]:
        """Every expired latest memory of a user, across all pages."""
        expired = []
        offset = 0
        while True:
            page, total = self.store.list(
                {"user_id": user_id, "is_latest": True}, limit=PAGE_SIZE, offset=offset
            )
            for result in page:
                record = MemoryRecord.from_payload(result.id, result.payload)
                if self.is_expired(record):
                    expired.append(record)
            offset += len(page)
            if not page or offset >= total:
                break
        return expired

    def scan(self, user_id: str, auto_delete: bool = False) -> RetentionResult:
        """Report expired memories; delete them when auto_delete is set.

        Deletion writes a history entry for every expired record before any
        record is removed. A failed delete is logged and not counted.
        """
        result = RetentionResult(expired=self.find_expired(user_id))
        if not auto_delete or not result.expired:
            return result

        for record in result.expired:
            self.history.add(record.id, HistoryAction.DELETE, record.memory, None, user_id)

        for record in result.expired:
            try:
                if self.store.delete(record.id):
                    result.deleted += 1
            except Exception:
                logger.exception("Retention delete failed for %s", record.id)
        logger.info(
            "Retention for %s: %d expired, %d deleted",
            user_id, len(result.expired), result.deleted,
        )
        return result
