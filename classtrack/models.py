import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

REFERENCE_ANGLES = ("front", "left", "right")


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class UserRole(str, Enum):
    ADMIN = "ADMIN"
    TEACHER = "TEACHER"
    STUDENT = "STUDENT"


class AttendanceStatus(str, Enum):
    PRESENT = "PRESENT"
    LATE = "LATE"
    ABSENT = "ABSENT"


# Snapshot models
class User(BaseModel):
    id: str = Field(..., description="User ID")
    name: str = Field(..., description="Display name")
    email: str = ""
    role: UserRole = UserRole.STUDENT
    avatar: Optional[str] = None
    enrolled_references: List[str] = Field(
        default_factory=list,
        description="Base64 reference images in front, left, right order",
    )
    reenroll_allowed: bool = Field(default=False, description="Granted by an administrator")

    @field_validator("enrolled_references")
    @classmethod
    def _complete_or_empty(cls, value: List[str]) -> List[str]:
        if len(value) not in (0, len(REFERENCE_ANGLES)):
            raise ValueError(
                f"a user holds either 0 or {len(REFERENCE_ANGLES)} references, got {len(value)}"
            )
        return value

    @property
    def is_enrolled(self) -> bool:
        return len(self.enrolled_references) == len(REFERENCE_ANGLES)


class ClassSession(BaseModel):
    id: str = Field(..., description="Class ID")
    name: str = ""
    teacher_id: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    roster: List[str] = Field(default_factory=list, description="Student IDs in insertion order")


class AttendanceRecord(BaseModel):
    id: str = Field(default_factory=lambda: f"att_{uuid.uuid4().hex}")
    student_id: str
    class_id: str
    timestamp: str = Field(default_factory=utc_now)
    status: AttendanceStatus = AttendanceStatus.PRESENT
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    degraded: bool = Field(default=False, description="Produced from a fallback verdict")


class Snapshot(BaseModel):
    users: List[User] = Field(default_factory=list)
    classes: List[ClassSession] = Field(default_factory=list)
    attendance: List[AttendanceRecord] = Field(default_factory=list)

    def get_user(self, user_id: str) -> Optional[User]:
        return next((u for u in self.users if u.id == user_id), None)

    def get_class(self, class_id: str) -> Optional[ClassSession]:
        return next((c for c in self.classes if c.id == class_id), None)

    def with_user(self, user: User) -> "Snapshot":
        """Return a copy with ``user`` replacing the entry of the same id (or appended)."""
        users = [user if u.id == user.id else u for u in self.users]
        if self.get_user(user.id) is None:
            users.append(user)
        return self.model_copy(update={"users": users})

    def without_user(self, user_id: str) -> "Snapshot":
        return self.model_copy(update={"users": [u for u in self.users if u.id != user_id]})


# Verification models
class VerdictSource(str, Enum):
    ORACLE = "oracle"
    FALLBACK = "fallback"


class OracleVerdict(BaseModel):
    match: bool = False
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    observations: str = ""
    source: VerdictSource = VerdictSource.ORACLE


class ScanOutcome(str, Enum):
    PRESENT = "present"
    ALREADY_PRESENT = "already_present"
    NOT_MATCHED = "not_matched"
    NO_ELIGIBLE_SUBJECT = "no_eligible_subject"


class ScanResult(BaseModel):
    outcome: ScanOutcome
    success: bool
    class_id: str
    student_id: Optional[str] = None
    student_name: Optional[str] = None
    confidence: float = 0.0
    degraded: bool = Field(default=False, description="Decision came from the fallback verdict")
    source: Optional[VerdictSource] = None
    observations: str = ""
    record_id: Optional[str] = None
    message: str
    timestamp: str = Field(default_factory=utc_now)


# Request models
class SignUpRequest(BaseModel):
    name: str = Field(..., min_length=1)
    email: str = ""
    role: UserRole = UserRole.STUDENT


class ReenrollGrantRequest(BaseModel):
    allowed: bool = True


class CaptureRequest(BaseModel):
    image: str = Field(..., description="Base64 encoded image")


class ScanStartRequest(BaseModel):
    class_id: str = Field(..., description="Class to take attendance for")


class MarkAttendanceRequest(BaseModel):
    image: str = Field(..., description="Base64 encoded image of student")
    class_id: str = Field(..., description="Class to take attendance for")
    scan_token: Optional[str] = Field(default=None, description="Scan session whose watchers get the result")


# Response models
class UserInfo(BaseModel):
    id: str
    name: str
    email: str
    role: UserRole
    avatar: Optional[str] = None
    enrolled: bool
    reenroll_allowed: bool

    @classmethod
    def from_user(cls, user: User) -> "UserInfo":
        return cls(
            id=user.id,
            name=user.name,
            email=user.email,
            role=user.role,
            avatar=user.avatar,
            enrolled=user.is_enrolled,
            reenroll_allowed=user.reenroll_allowed,
        )
