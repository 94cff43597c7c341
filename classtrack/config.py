import os
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    # App Settings
    APP_NAME: str = "Class-Track Attendance Service"
    API_V1_STR: str = "/api/v1"

    # Verification Oracle Settings
    ORACLE_BACKEND: str = "deepface"  # deepface or remote
    ORACLE_URL: str = os.getenv("ORACLE_URL", "")
    ORACLE_API_KEY: str = os.getenv("ORACLE_API_KEY", "")
    ORACLE_TIMEOUT_SECONDS: float = 30.0
    # Degraded-mode verdict used when the oracle cannot be reached
    FALLBACK_MATCH_PROBABILITY: float = 0.7
    FALLBACK_CONFIDENCE: float = 0.85

    # Face Recognition Settings (deepface backend)
    RECOGNITION_THRESHOLD: float = 0.45  # Tuned for Cosine distance
    MODEL_NAME: str = "VGG-Face"
    DETECTOR_BACKEND: str = "opencv"

    # Storage Settings
    STORE_BACKEND: str = "json"  # json or firestore
    DATA_FILE: str = os.path.join(os.path.dirname(os.path.dirname(__file__)), "data", "class_track_data.json")

    # Firebase Settings
    FIREBASE_CREDENTIALS_PATH: str = os.getenv("FIREBASE_CREDENTIALS_PATH", "")

    # Session Settings
    ENROLLMENT_PACING_SECONDS: float = 0.8
    SCAN_SESSION_TTL: int = 3600  # 1 hour default

    class Config:
        case_sensitive = True

settings = Settings()
