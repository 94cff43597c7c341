import json
import logging
import os
from typing import Protocol

from pydantic import ValidationError

from classtrack.config import settings
from classtrack.errors import InvalidSnapshot
from classtrack.models import ClassSession, Snapshot, User, UserRole

logger = logging.getLogger(__name__)


class SnapshotStore(Protocol):
    def load(self) -> Snapshot:
        ...

    def save(self, snapshot: Snapshot) -> None:
        ...


def seed_snapshot() -> Snapshot:
    """Demo data used when nothing has been saved yet."""
    return Snapshot(
        users=[
            User(id="1", name="Dr. Sarah Connor", email="admin@school.com", role=UserRole.ADMIN,
                 avatar="https://picsum.photos/seed/admin/200"),
            User(id="2", name="John Doe", email="teacher@school.com", role=UserRole.TEACHER,
                 avatar="https://picsum.photos/seed/teacher/200"),
            User(id="3", name="Alice Smith", email="student@school.com", role=UserRole.STUDENT,
                 avatar="https://picsum.photos/seed/student1/200"),
            User(id="4", name="Bob Wilson", email="student2@school.com", role=UserRole.STUDENT,
                 avatar="https://picsum.photos/seed/student2/200"),
        ],
        classes=[
            ClassSession(id="c1", name="CS101: Intro to AI", teacher_id="2",
                         start_time="09:00", end_time="10:30", roster=["3", "4"]),
            ClassSession(id="c2", name="CS202: Data Structures", teacher_id="2",
                         start_time="11:00", end_time="12:30", roster=["3"]),
        ],
        attendance=[],
    )


class JsonSnapshotStore:
    """Keeps the whole snapshot in one JSON file."""

    def __init__(self, path: str):
        self.path = path

    def load(self) -> Snapshot:
        if not os.path.exists(self.path):
            logger.info(f"No saved data at {self.path}, using seed data")
            return seed_snapshot()

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to read snapshot from {self.path}: {e}")
            return seed_snapshot()

        try:
            snapshot = Snapshot.model_validate(data)
        except ValidationError as e:
            # Parsed but invalid: the file must stay untouched
            logger.error(f"Snapshot at {self.path} failed validation: {e}")
            raise InvalidSnapshot(f"{self.path} holds invalid records") from e

        # Ensure we have users even if the file is corrupted
        if not snapshot.users:
            logger.warning(f"Snapshot at {self.path} has no users, using seed data")
            return seed_snapshot()

        logger.info(
            f"Loaded {len(snapshot.users)} users, {len(snapshot.classes)} classes, "
            f"{len(snapshot.attendance)} attendance records"
        )
        return snapshot

    def save(self, snapshot: Snapshot) -> None:
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(snapshot.model_dump(mode="json"), f, indent=2)
        os.replace(tmp_path, self.path)
        logger.debug(f"Saved snapshot to {self.path}")


def build_store(config=settings) -> SnapshotStore:
    """Instantiate the store selected by ``STORE_BACKEND``."""
    backend = config.STORE_BACKEND.lower()
    if backend == "json":
        return JsonSnapshotStore(config.DATA_FILE)
    if backend == "firestore":
        from classtrack.firebase_service import FirestoreSnapshotStore

        return FirestoreSnapshotStore()
    raise ValueError(f"Unknown STORE_BACKEND '{config.STORE_BACKEND}'")
