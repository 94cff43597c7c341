"""
Enrollment sequencer.

Collects the three reference angles (front, left, right) for one student and
installs them in a single step once the last one is captured. Until then the
images only live in the run's pending buffer, so an abandoned run never leaves
a partially enrolled student behind.
"""
import logging
from enum import Enum
from typing import Callable, List, NamedTuple, Optional, Tuple

from pydantic import BaseModel, Field

from classtrack.errors import InvalidCapture, InvalidTransition, PermissionDenied, UnknownEntity
from classtrack.models import Snapshot, UserRole

logger = logging.getLogger(__name__)


class EnrollmentState(str, Enum):
    AWAITING_FRONT = "AWAITING_FRONT"
    AWAITING_LEFT = "AWAITING_LEFT"
    AWAITING_RIGHT = "AWAITING_RIGHT"
    COMPLETE = "COMPLETE"
    CANCELLED = "CANCELLED"


class EnrollmentStep(NamedTuple):
    state: EnrollmentState
    angle: str
    title: str
    instruction: str


STEPS = (
    EnrollmentStep(
        EnrollmentState.AWAITING_FRONT,
        "front",
        "Front View",
        "Position your face in the center and look at the camera.",
    ),
    EnrollmentStep(
        EnrollmentState.AWAITING_LEFT,
        "left",
        "Left Profile",
        "Slowly turn your head to the left side.",
    ),
    EnrollmentStep(
        EnrollmentState.AWAITING_RIGHT,
        "right",
        "Right Profile",
        "Slowly turn your head to the right side.",
    ),
)

TERMINAL_STATES = (EnrollmentState.COMPLETE, EnrollmentState.CANCELLED)


def no_delay(seconds: float) -> None:
    return None


class EnrollmentRun(BaseModel):
    student_id: str
    state: EnrollmentState = EnrollmentState.AWAITING_FRONT
    pending: List[str] = Field(default_factory=list)

    @property
    def current_step(self) -> Optional[EnrollmentStep]:
        return next((step for step in STEPS if step.state == self.state), None)


class EnrollmentProgress(BaseModel):
    student_id: str
    state: EnrollmentState
    captured: int
    total: int = len(STEPS)
    title: Optional[str] = None
    instruction: Optional[str] = None
    complete: bool = False
    persist: bool = Field(default=False, description="Caller must persist the updated snapshot")
    references: List[str] = Field(default_factory=list)


def describe(run: EnrollmentRun) -> EnrollmentProgress:
    step = run.current_step
    complete = run.state == EnrollmentState.COMPLETE
    return EnrollmentProgress(
        student_id=run.student_id,
        state=run.state,
        captured=len(run.pending),
        title=step.title if step else None,
        instruction=step.instruction if step else None,
        complete=complete,
        persist=complete,
        references=list(run.pending) if complete else [],
    )


def start_enrollment(snapshot: Snapshot, student_id: str) -> EnrollmentRun:
    """
    Open a new run for ``student_id``.

    A student without a complete reference set can always enroll. Restarting
    over a complete set needs the re-enrollment grant, otherwise
    PermissionDenied is raised and nothing changes.
    """
    student = snapshot.get_user(student_id)
    if student is None or student.role != UserRole.STUDENT:
        raise UnknownEntity(f"No student with id {student_id}")

    if student.is_enrolled and not student.reenroll_allowed:
        logger.warning(f"Re-enrollment refused for {student_id}: biometrics are locked")
        raise PermissionDenied(f"Student {student_id} is not allowed to re-enroll")

    logger.info(f"Starting enrollment for {student.name} ({student_id})")
    return EnrollmentRun(student_id=student_id)


def submit_capture(
    snapshot: Snapshot,
    run: EnrollmentRun,
    image: str,
    pacer: Callable[[float], None] = no_delay,
    delay: float = 0.0,
) -> Tuple[Snapshot, EnrollmentRun, EnrollmentProgress]:
    """Feed one capture into the run and advance it by one step."""
    if run.state in TERMINAL_STATES:
        raise InvalidTransition(f"Enrollment for {run.student_id} is already {run.state.value}")
    if not image or not image.strip():
        raise InvalidCapture("Capture is empty")

    # Stands in for feature extraction; purely pacing.
    pacer(delay)

    index = [step.state for step in STEPS].index(run.state)
    pending = [*run.pending, image]
    next_state = STEPS[index + 1].state if index + 1 < len(STEPS) else EnrollmentState.COMPLETE
    advanced = run.model_copy(update={"state": next_state, "pending": pending})
    logger.info(f"Enrollment {run.student_id}: captured {STEPS[index].title} ({len(pending)}/{len(STEPS)})")

    if next_state == EnrollmentState.COMPLETE:
        student = snapshot.get_user(run.student_id)
        if student is None:
            raise UnknownEntity(f"Student {run.student_id} was removed during enrollment")
        snapshot = snapshot.with_user(student.model_copy(update={"enrolled_references": list(pending)}))
        logger.info(f"Enrollment complete for {student.name} ({student.id})")

    return snapshot, advanced, describe(advanced)


def cancel_enrollment(run: EnrollmentRun) -> EnrollmentRun:
    """Abandon a run. The pending buffer is dropped and the snapshot is never touched."""
    if run.state == EnrollmentState.COMPLETE:
        raise InvalidTransition(f"Enrollment for {run.student_id} already completed")
    logger.info(f"Enrollment for {run.student_id} cancelled after {len(run.pending)} capture(s)")
    return run.model_copy(update={"state": EnrollmentState.CANCELLED, "pending": []})
