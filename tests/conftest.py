import random

import pytest

from classtrack.models import OracleVerdict, Snapshot
from classtrack.store import seed_snapshot

FRONT = "data:image/jpeg;base64,RlJPTlQ="
LEFT = "data:image/jpeg;base64,TEVGVA=="
RIGHT = "data:image/jpeg;base64,UklHSFQ="
CAPTURE = "data:image/jpeg;base64,Q0FQVFVSRQ=="

ALICE = "3"
BOB = "4"


class StubOracle:
    """Replays scripted verdicts (or raises scripted exceptions) and records every call."""

    def __init__(self, *script):
        self.script = list(script) or [OracleVerdict(match=True, confidence=0.92)]
        self.calls = []
        self.cleared = 0

    def compare(self, captured_image, reference_image):
        self.calls.append((captured_image, reference_image))
        item = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(item, Exception):
            raise item
        return item

    def clear_cache(self):
        self.cleared += 1


class FixedRandom(random.Random):
    def __init__(self, value):
        super().__init__(0)
        self.value = value

    def random(self):
        return self.value


def enroll(snapshot: Snapshot, student_id: str, references=(FRONT, LEFT, RIGHT)) -> Snapshot:
    student = snapshot.get_user(student_id)
    return snapshot.with_user(student.model_copy(update={"enrolled_references": list(references)}))


@pytest.fixture
def seed():
    return seed_snapshot()


@pytest.fixture
def enrolled(seed):
    """Seed data with Alice and Bob fully enrolled."""
    return enroll(enroll(seed, ALICE), BOB)
