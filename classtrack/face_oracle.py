import base64
import binascii
import hashlib
import logging
from io import BytesIO
from typing import Dict, List

import numpy as np
from deepface import DeepFace
from PIL import Image, UnidentifiedImageError

from classtrack.config import settings
from classtrack.errors import OracleUnavailable
from classtrack.models import OracleVerdict
from classtrack.oracle import strip_data_url

# Configure logging
logger = logging.getLogger(__name__)


class FaceNotFound(Exception):
    pass


class DeepFaceOracle:
    """
    Local verification oracle built on DeepFace embeddings.

    Reference embeddings are cached by image digest, since the same front-view
    reference is compared against every capture of a student.
    """

    def __init__(self, model_name: str = None, detector_backend: str = None, threshold: float = None):
        self.model_name = model_name or settings.MODEL_NAME
        self.detector_backend = detector_backend or settings.DETECTOR_BACKEND
        self.threshold = settings.RECOGNITION_THRESHOLD if threshold is None else threshold
        self.reference_cache: Dict[str, List[float]] = {}

    @staticmethod
    def _base64_to_image(base64_string: str) -> np.ndarray:
        """Convert base64 string to numpy array (opencv format)."""
        image_data = base64.b64decode(strip_data_url(base64_string))
        image = Image.open(BytesIO(image_data))

        # Convert to RGB (DeepFace expects RGB/BGR)
        if image.mode != "RGB":
            image = image.convert("RGB")

        return np.array(image)

    @staticmethod
    def compute_cosine_distance(embedding1: List[float], embedding2: List[float]) -> float:
        """Calculate cosine distance between two embeddings."""
        a = np.array(embedding1)
        b = np.array(embedding2)
        return float(1 - (np.dot(a, b) / (np.linalg.norm(a) * np.linalg.norm(b))))

    def extract_embedding(self, image_input) -> List[float]:
        """Extract face embedding using DeepFace."""
        try:
            embedding_objs = DeepFace.represent(
                img_path=image_input,
                model_name=self.model_name,
                enforce_detection=True,
                detector_backend=self.detector_backend,
            )
        except ValueError as e:
            # Face could not be detected
            raise FaceNotFound(str(e)) from e

        if not embedding_objs:
            raise FaceNotFound("No face detected")

        # Retrieve the most prominent face (usually the first/largest one returned)
        return embedding_objs[0]["embedding"]

    def _reference_embedding(self, reference_image: str) -> List[float]:
        digest = hashlib.sha1(reference_image.encode("utf-8")).hexdigest()
        if digest in self.reference_cache:
            logger.debug(f"Using cached reference embedding {digest[:8]}")
            return self.reference_cache[digest]

        embedding = self.extract_embedding(self._base64_to_image(reference_image))
        self.reference_cache[digest] = embedding
        return embedding

    def clear_cache(self):
        self.reference_cache.clear()

    def compare(self, captured_image: str, reference_image: str) -> OracleVerdict:
        try:
            captured = self._base64_to_image(captured_image)
            captured_embedding = self.extract_embedding(captured)
            reference_embedding = self._reference_embedding(reference_image)
        except (binascii.Error, UnidentifiedImageError) as e:
            logger.warning(f"Unreadable image: {e}")
            return OracleVerdict(observations="Unreadable image")
        except FaceNotFound as e:
            logger.warning(f"Face detection failed: {e}")
            return OracleVerdict(observations="No face detected")
        except Exception as e:
            logger.error(f"Error extracting embedding: {e}")
            raise OracleUnavailable(str(e)) from e

        distance = self.compute_cosine_distance(captured_embedding, reference_embedding)
        confidence = min(1.0, max(0.0, 1 - distance))
        match = distance <= self.threshold

        if match:
            logger.info(f"✓ Faces match with confidence {confidence:.2%}")
        else:
            logger.info(f"✗ No match. Distance: {distance:.4f} (threshold: {self.threshold})")

        return OracleVerdict(
            match=match,
            confidence=confidence,
            observations=f"{self.model_name} cosine distance {distance:.4f}",
        )
