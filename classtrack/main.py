from fastapi import FastAPI, HTTPException, status
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from classtrack import enrollment, ledger, matcher
from classtrack.capture import router as capture_router, get_scan_session, is_scan_token_active, notify_scan_watchers
from classtrack.config import settings
from classtrack.enrollment import EnrollmentProgress
from classtrack.errors import (
    ClassTrackError,
    DuplicateRecord,
    InvalidCapture,
    InvalidTransition,
    PermissionDenied,
    UnknownEntity,
)
from classtrack.models import (
    AttendanceRecord,
    CaptureRequest,
    ClassSession,
    MarkAttendanceRequest,
    ReenrollGrantRequest,
    ScanOutcome,
    ScanResult,
    SignUpRequest,
    User,
    UserInfo,
    UserRole,
)
from classtrack.oracle import build_oracle
from classtrack.state import service
from classtrack.store import build_store
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import List

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("classtrack")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load the snapshot and set up the verification oracle."""
    if service.store is None:
        try:
            service.store = build_store()
        except Exception as e:
            logger.error(f"Failed to initialize snapshot store: {e}")
            logger.warning("Changes will not be persisted")

    if service.store is not None:
        try:
            service.snapshot = service.store.load()
        except Exception as e:
            logger.error(f"Failed to load snapshot: {e}")
            logger.warning("Starting with seed data; changes will not be persisted")
            service.store = None

    if service.oracle is None:
        try:
            service.oracle = build_oracle()
        except Exception as e:
            logger.error(f"Failed to initialize verification oracle: {e}")
            logger.warning("Attendance scanning will not be available")
    yield


app = FastAPI(
    title=settings.APP_NAME,
    openapi_url=f"{settings.API_V1_STR}/openapi.json",
    lifespan=lifespan,
)

# CORS config
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(capture_router, tags=["Scan"])

ERROR_STATUS = {
    PermissionDenied: status.HTTP_403_FORBIDDEN,
    UnknownEntity: status.HTTP_404_NOT_FOUND,
    InvalidTransition: status.HTTP_409_CONFLICT,
    InvalidCapture: 422,
}


def _http_error(exc: ClassTrackError) -> HTTPException:
    code = next(
        (code for kind, code in ERROR_STATUS.items() if isinstance(exc, kind)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    return HTTPException(status_code=code, detail=str(exc))


@app.get("/", tags=["Health"])
async def health_check():
    return {
        "status": "ok",
        "service": settings.APP_NAME,
        "oracle": settings.ORACLE_BACKEND if service.oracle is not None else None,
    }


# Users
@app.post("/users", response_model=UserInfo, status_code=status.HTTP_201_CREATED, tags=["Users"])
async def sign_up(request: SignUpRequest):
    """Create an account. Students start without references and enroll afterwards."""
    user = User(
        id=f"u_{uuid.uuid4().hex[:12]}",
        name=request.name,
        email=request.email,
        role=request.role,
        avatar=f"https://picsum.photos/seed/{request.name}/200",
        reenroll_allowed=False,  # Initially locked
    )
    service.commit(service.snapshot.with_user(user))
    logger.info(f"Signed up {user.role.value.lower()} {user.name} ({user.id})")
    return UserInfo.from_user(user)


@app.get("/users/{user_id}", response_model=UserInfo, tags=["Users"])
async def get_user(user_id: str):
    user = service.snapshot.get_user(user_id)
    if user is None:
        raise HTTPException(status_code=404, detail=f"User '{user_id}' not found")
    return UserInfo.from_user(user)


@app.delete("/users/{user_id}", tags=["Users"])
async def delete_user(user_id: str):
    if service.snapshot.get_user(user_id) is None:
        raise HTTPException(status_code=404, detail=f"User '{user_id}' not found")

    service.enrollment_runs.pop(user_id, None)
    service.commit(service.snapshot.without_user(user_id))
    logger.info(f"Deleted user {user_id}")
    return {"status": "deleted"}


@app.post("/users/{user_id}/reenroll", response_model=UserInfo, tags=["Users"])
async def set_reenroll_permission(user_id: str, request: ReenrollGrantRequest):
    """Grant or revoke a student's permission to redo biometric enrollment."""
    user = service.snapshot.get_user(user_id)
    if user is None or user.role != UserRole.STUDENT:
        raise HTTPException(status_code=404, detail=f"Student '{user_id}' not found")

    user = user.model_copy(update={"reenroll_allowed": request.allowed})
    service.commit(service.snapshot.with_user(user))
    logger.info(f"Re-enrollment {'granted to' if request.allowed else 'revoked for'} {user_id}")
    return UserInfo.from_user(user)


# Enrollment
@app.post("/enrollment/{student_id}/start", response_model=EnrollmentProgress, tags=["Enrollment"])
async def start_enrollment(student_id: str):
    try:
        run = enrollment.start_enrollment(service.snapshot, student_id)
    except ClassTrackError as e:
        raise _http_error(e)

    service.enrollment_runs[student_id] = run
    return enrollment.describe(run)


@app.get("/enrollment/{student_id}", response_model=EnrollmentProgress, tags=["Enrollment"])
async def get_enrollment(student_id: str):
    run = service.enrollment_runs.get(student_id)
    if run is None:
        raise HTTPException(status_code=404, detail="No enrollment in progress")
    return enrollment.describe(run)


@app.post("/enrollment/{student_id}/capture", response_model=EnrollmentProgress, tags=["Enrollment"])
async def enrollment_capture(student_id: str, request: CaptureRequest):
    current = service.enrollment_runs.get(student_id)
    if current is None:
        raise HTTPException(status_code=404, detail="No enrollment in progress")

    try:
        _, run, progress = await run_in_threadpool(
            enrollment.submit_capture,
            service.snapshot,
            current,
            request.image,
            time.sleep,
            settings.ENROLLMENT_PACING_SECONDS,
        )
    except ClassTrackError as e:
        raise _http_error(e)

    if service.enrollment_runs.get(student_id) is not current:
        # Cancelled or account removed while the capture was being processed
        raise HTTPException(status_code=409, detail="Enrollment was cancelled")

    if progress.persist:
        service.enrollment_runs.pop(student_id, None)
        student = service.snapshot.get_user(student_id)
        service.commit(service.snapshot.with_user(
            student.model_copy(update={"enrolled_references": progress.references})
        ))
    else:
        service.enrollment_runs[student_id] = run
    return progress


@app.delete("/enrollment/{student_id}", response_model=EnrollmentProgress, tags=["Enrollment"])
async def cancel_enrollment(student_id: str):
    run = service.enrollment_runs.pop(student_id, None)
    if run is None:
        raise HTTPException(status_code=404, detail="No enrollment in progress")
    return enrollment.describe(enrollment.cancel_enrollment(run))


# Classes and attendance
@app.get("/classes", response_model=List[ClassSession], tags=["Classes"])
async def list_classes(teacher_id: str = None):
    classes = service.snapshot.classes
    if teacher_id:
        classes = [c for c in classes if c.teacher_id == teacher_id]
    return classes


@app.get("/classes/{class_id}/attendance", response_model=List[AttendanceRecord], tags=["Attendance"])
async def class_attendance(class_id: str):
    if service.snapshot.get_class(class_id) is None:
        raise HTTPException(status_code=404, detail=f"Class '{class_id}' not found")
    return ledger.list_by_class(service.snapshot, class_id)


@app.get("/students/{student_id}/attendance", response_model=List[AttendanceRecord], tags=["Attendance"])
async def student_attendance(student_id: str):
    return ledger.list_by_student(service.snapshot, student_id)


@app.get("/stats", tags=["Admin"])
async def stats():
    users = service.snapshot.users
    return {
        "students": sum(1 for u in users if u.role == UserRole.STUDENT),
        "teachers": sum(1 for u in users if u.role == UserRole.TEACHER),
        "admins": sum(1 for u in users if u.role == UserRole.ADMIN),
        "classes": len(service.snapshot.classes),
        "records": len(service.snapshot.attendance),
    }


async def _send_scan_update(token: str, result: ScanResult) -> None:
    if not token:
        return
    try:
        await notify_scan_watchers(token, {"type": "attendance_result", "result": result.model_dump(mode="json")})
    except ValueError:
        logger.warning("Scan token %s is no longer active", token)


@app.post("/attendance/mark", response_model=ScanResult, tags=["Attendance"])
async def mark_attendance(request: MarkAttendanceRequest):
    """
    Verify a capture against the next pending student of a class.

    Workflow:
    1. Pick the first roster member not yet marked present
    2. Compare the capture with their front-view reference
    3. Record them as present if the oracle match passes the threshold
    """
    if service.oracle is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Verification oracle not available"
        )
    if service.snapshot.get_class(request.class_id) is None:
        # Locks are only created for classes that exist
        raise HTTPException(status_code=404, detail=f"Class '{request.class_id}' not found")

    token = request.scan_token
    scan = None
    if token:
        scan = get_scan_session(token)
        if scan is None:
            raise HTTPException(status_code=404, detail="Scan session expired or invalid")
        if scan["class_id"] != request.class_id:
            raise HTTPException(status_code=400, detail="Scan session belongs to another class")
        if scan["busy"]:
            raise HTTPException(status_code=409, detail="A capture is already being verified")
        scan["busy"] = True

    logger.info(f"Processing capture for class {request.class_id}")
    try:
        async with service.class_locks[request.class_id]:
            try:
                decided, result = await run_in_threadpool(
                    matcher.process_capture,
                    service.snapshot,
                    request.class_id,
                    request.image,
                    service.oracle,
                )
            except ClassTrackError as e:
                raise _http_error(e)

            if token and not is_scan_token_active(token):
                logger.info(f"Scan session {token} ended while verifying; discarding result for {result.student_id}")
                raise HTTPException(status_code=status.HTTP_410_GONE, detail="Scan session ended; result discarded")

            if result.outcome == ScanOutcome.PRESENT:
                record = ledger.find_record(decided, request.class_id, result.student_id)
                try:
                    snapshot, _ = ledger.append(service.snapshot, record)
                    service.commit(snapshot)
                except DuplicateRecord:
                    existing = ledger.find_record(service.snapshot, request.class_id, result.student_id)
                    result = result.model_copy(update={
                        "outcome": ScanOutcome.ALREADY_PRESENT,
                        "record_id": existing.id,
                        "message": f"{result.student_name} is already marked present"
                        + (" [fallback decision]" if result.degraded else ""),
                    })
    finally:
        if scan is not None:
            scan["busy"] = False

    await _send_scan_update(token, result)
    return result
