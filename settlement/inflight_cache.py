# settlement/inflight_cache.py

import threading
from typing import List, Set

from sqlalchemy.orm import sessionmaker

from settlement.entities import TERMINAL_STATUSES
from settlement.intent_repository import IntentRepository


class InFlightIntents:
    """
    Process-local set of intent ids currently being driven by this worker.

    - No TTL.
    - Ids are removed when the task finishes, or by sweep_finished() once the
      intent is terminal in the DB.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ids: Set[str] = set()

    def try_add(self, intent_id: str) -> bool:
        """Register `intent_id`; False if it is already in flight here."""
        if not intent_id:
            return False
        with self._lock:
            if str(intent_id) in self._ids:
                return False
            self._ids.add(str(intent_id))
            return True

    def remove(self, intent_id: str) -> None:
        if not intent_id:
            return
        with self._lock:
            self._ids.discard(str(intent_id))

    def snapshot(self) -> List[str]:
        with self._lock:
            return list(self._ids)

    def sweep_finished(self, session_factory: sessionmaker) -> int:
        """
        Look up tracked ids in the DB and drop those that are SETTLED/FAILED.
        Returns how many ids were removed.
        """
        ids = self.snapshot()
        if not ids:
            return 0

        statuses = IntentRepository(session_factory).statuses(ids)
        to_remove = [i for (i, status) in statuses.items() if status in TERMINAL_STATUSES]
        if not to_remove:
            return 0

        removed = 0
        with self._lock:
            for i in to_remove:
                if i in self._ids:
                    self._ids.remove(i)
                    removed += 1

        return removed


# Global, process-local singleton
IN_FLIGHT_INTENTS = InFlightIntents()
