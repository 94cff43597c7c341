import firebase_admin
from firebase_admin import credentials, firestore
from typing import Dict, List, Set, Type
import logging
from pydantic import BaseModel, ValidationError
from classtrack.config import settings
from classtrack.models import AttendanceRecord, ClassSession, Snapshot, User

logger = logging.getLogger(__name__)

USERS_COLLECTION = 'users'
CLASSES_COLLECTION = 'classes'
ATTENDANCE_COLLECTION = 'attendance'

# Firestore refuses batches larger than this
BATCH_LIMIT = 500


class FirestoreSnapshotStore:
    def __init__(self, db=None):
        """Initialize Firebase Admin SDK unless a client is supplied."""
        self.db = db
        # collection -> ids of documents that failed validation on load
        self.skipped: Dict[str, Set[str]] = {}
        if self.db is None:
            self.initialize_firebase()

    def initialize_firebase(self):
        """Initialize Firebase connection."""
        try:
            if not firebase_admin._apps:
                if settings.FIREBASE_CREDENTIALS_PATH:
                    cred = credentials.Certificate(settings.FIREBASE_CREDENTIALS_PATH)
                    firebase_admin.initialize_app(cred)
                else:
                    # Use default credentials (for deployment environments)
                    firebase_admin.initialize_app()

                logger.info("Firebase Admin SDK initialized successfully")

            self.db = firestore.client()

        except Exception as e:
            logger.error(f"Failed to initialize Firebase: {e}")
            raise

    def _read_collection(self, name: str, model: Type[BaseModel]) -> List:
        items = []
        skipped = set()
        for doc in self.db.collection(name).stream():
            data = doc.to_dict() or {}
            data['id'] = doc.id
            try:
                items.append(model.model_validate(data))
            except ValidationError as e:
                logger.warning(f"Skipping malformed document {name}/{doc.id}: {e}")
                skipped.add(doc.id)
        self.skipped[name] = skipped
        return items

    def load(self) -> Snapshot:
        """Fetch users, classes and attendance records from Firestore."""
        snapshot = Snapshot(
            users=self._read_collection(USERS_COLLECTION, User),
            classes=self._read_collection(CLASSES_COLLECTION, ClassSession),
            attendance=self._read_collection(ATTENDANCE_COLLECTION, AttendanceRecord),
        )
        logger.info(
            f"Retrieved {len(snapshot.users)} users, {len(snapshot.classes)} classes and "
            f"{len(snapshot.attendance)} attendance records from Firestore"
        )
        return snapshot

    def _sync_collection(self, name: str, items: List[BaseModel]):
        collection = self.db.collection(name)
        wanted: Dict[str, dict] = {
            item.id: item.model_dump(mode='json', exclude={'id'}) for item in items
        }
        # Documents we could not read are left alone
        keep = self.skipped.get(name, set())
        stale = [doc.id for doc in collection.stream() if doc.id not in wanted and doc.id not in keep]

        operations = [('set', doc_id, data) for doc_id, data in wanted.items()]
        operations += [('delete', doc_id, None) for doc_id in stale]

        for start in range(0, len(operations), BATCH_LIMIT):
            batch = self.db.batch()
            for op, doc_id, data in operations[start:start + BATCH_LIMIT]:
                ref = collection.document(doc_id)
                if op == 'set':
                    batch.set(ref, data)
                else:
                    batch.delete(ref)
            batch.commit()

        if stale:
            logger.info(f"Removed {len(stale)} stale documents from '{name}'")

    def save(self, snapshot: Snapshot) -> None:
        """Write the full snapshot back, removing documents that no longer exist."""
        try:
            self._sync_collection(USERS_COLLECTION, snapshot.users)
            self._sync_collection(CLASSES_COLLECTION, snapshot.classes)
            self._sync_collection(ATTENDANCE_COLLECTION, snapshot.attendance)
            logger.info("✓ Snapshot saved to Firestore")
        except Exception as e:
            logger.error(f"✗ Error saving snapshot to Firestore: {e}")
            raise
