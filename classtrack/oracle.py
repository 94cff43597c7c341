import json
import logging
import random
from typing import Any, Optional, Protocol

import requests

from classtrack.config import settings
from classtrack.errors import OracleUnavailable
from classtrack.models import OracleVerdict, VerdictSource

logger = logging.getLogger(__name__)

COMPARE_PROMPT = (
    'Compare the face in the "Captured Image" and "Enrolled Image". '
    "Determine if they belong to the same person. "
    'Return only a JSON object with: "match" (boolean), '
    '"confidence" (number from 0 to 1) and "observations" (string).'
)


class VerificationOracle(Protocol):
    def compare(self, captured_image: str, reference_image: str) -> OracleVerdict:
        """Judge whether two images show the same person. Raises OracleUnavailable."""


def strip_data_url(image: str) -> str:
    """Drop a ``data:image/...;base64,`` prefix if present."""
    if "," in image:
        return image.split(",", 1)[1]
    return image


def _as_confidence(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return 0.0
    if confidence != confidence:  # NaN
        return 0.0
    return min(1.0, max(0.0, confidence))


def parse_verdict(payload: Any) -> OracleVerdict:
    """
    Build a verdict from whatever the oracle sent back.

    Accepts a dict or JSON text. Anything malformed, partial or of the wrong
    type degrades to match=False / confidence=0 instead of raising, so a bad
    payload reads as an ordinary non-match.
    """
    if isinstance(payload, (str, bytes)):
        try:
            payload = json.loads(payload or "{}")
        except ValueError:
            logger.warning("Oracle returned non-JSON payload, treating as no match")
            return OracleVerdict(observations="Malformed oracle response")

    if not isinstance(payload, dict):
        logger.warning(f"Oracle returned unexpected payload type {type(payload).__name__}")
        return OracleVerdict(observations="Malformed oracle response")

    match = payload.get("match")
    observations = payload.get("observations")
    return OracleVerdict(
        match=match if isinstance(match, bool) else False,
        confidence=_as_confidence(payload.get("confidence")),
        observations=observations if isinstance(observations, str) else "",
    )


def fallback_verdict(rng: Optional[random.Random] = None) -> OracleVerdict:
    """
    Degraded-mode stand-in used when the oracle could not be reached.

    A biased coin with a fixed confidence, flagged as FALLBACK so it can never be
    mistaken for a genuine comparison.
    """
    rng = rng or random.Random()
    return OracleVerdict(
        match=rng.random() < settings.FALLBACK_MATCH_PROBABILITY,
        confidence=settings.FALLBACK_CONFIDENCE,
        observations="Verification oracle unavailable; fallback decision",
        source=VerdictSource.FALLBACK,
    )


class RemoteOracle:
    """Verification oracle reached over HTTP."""

    def __init__(self, url: str, api_key: str = "", timeout: float = 30.0, session: Optional[requests.Session] = None):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()

    def compare(self, captured_image: str, reference_image: str) -> OracleVerdict:
        if not self.url:
            raise OracleUnavailable("No oracle URL configured")

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        body = {
            "prompt": COMPARE_PROMPT,
            "captured_image": strip_data_url(captured_image),
            "enrolled_image": strip_data_url(reference_image),
            "mime_type": "image/jpeg",
        }

        try:
            response = self.session.post(self.url, json=body, headers=headers, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error(f"Oracle request failed: {e}")
            raise OracleUnavailable(str(e)) from e

        verdict = parse_verdict(response.text)
        logger.info(f"Oracle verdict: match={verdict.match} confidence={verdict.confidence:.2f}")
        return verdict


def build_oracle(config=settings) -> VerificationOracle:
    """Instantiate the oracle backend selected by ``ORACLE_BACKEND``."""
    backend = config.ORACLE_BACKEND.lower()
    if backend == "remote":
        logger.info(f"Using remote verification oracle at {config.ORACLE_URL or '<unset>'}")
        return RemoteOracle(config.ORACLE_URL, config.ORACLE_API_KEY, config.ORACLE_TIMEOUT_SECONDS)
    if backend == "deepface":
        from classtrack.face_oracle import DeepFaceOracle

        logger.info(f"Using DeepFace verification oracle ({config.MODEL_NAME})")
        return DeepFaceOracle()
    raise ValueError(f"Unknown ORACLE_BACKEND '{config.ORACLE_BACKEND}'")
