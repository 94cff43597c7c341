import asyncio
import logging
from collections import defaultdict
from typing import DefaultDict, Dict, Optional

from classtrack.enrollment import EnrollmentRun
from classtrack.models import Snapshot
from classtrack.oracle import VerificationOracle
from classtrack.store import SnapshotStore, seed_snapshot

logger = logging.getLogger("classtrack")


class ServiceState:
    """Everything the API keeps between requests."""

    def __init__(self):
        self.snapshot: Snapshot = seed_snapshot()
        self.store: Optional[SnapshotStore] = None
        self.oracle: Optional[VerificationOracle] = None
        # student_id -> in-progress enrollment run
        self.enrollment_runs: Dict[str, EnrollmentRun] = {}
        # Serialises "select pending student + decide + append" per class
        self.class_locks: DefaultDict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def commit(self, snapshot: Snapshot) -> Snapshot:
        """Install a new snapshot and hand it to the store."""
        self.snapshot = snapshot
        if self.store is None:
            return snapshot
        try:
            self.store.save(snapshot)
        except Exception as e:
            logger.error(f"Failed to persist snapshot: {e}")
        return snapshot

    def reset(self):
        self.__init__()


service = ServiceState()
