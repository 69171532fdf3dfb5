from typing import Sequence
import numpy as np

from ..models.pipeline_models import MatchScore


class MatchError(ValueError):
    """Raised when two descriptors cannot be compared."""
    pass


def _as_unit_vector(values: Sequence[float], name: str) -> np.ndarray:
    vector = np.asarray(values, dtype=np.float64)
    if vector.ndim != 1 or vector.size == 0:
        raise MatchError(f"{name} must be a non-empty 1-D vector.")
    if not np.all(np.isfinite(vector)):
        raise MatchError(f"{name} contains non-finite values.")
    norm = np.linalg.norm(vector)
    if norm == 0:
        raise MatchError(f"{name} is a zero vector.")
    return vector / norm


def distance_to_confidence(distance: float) -> float:
    """
    Maps a Euclidean distance between unit vectors (0..2) onto a confidence in [0, 1].
    Strictly decreasing in distance; identical descriptors give 1.0, opposite ones 0.0.
    """
    return float(np.clip(1.0 - distance / 2.0, 0.0, 1.0))


def score(live_descriptor: Sequence[float], template_descriptor: Sequence[float], liveness_score: float) -> MatchScore:
    """
    Compares a live descriptor against a stored template.

    Both descriptors are L2-normalised first, so the result depends only on
    their direction. The liveness score comes from the extractor and is passed
    through unchanged once it is known to be a valid probability.
    """
    live = _as_unit_vector(live_descriptor, "live descriptor")
    template = _as_unit_vector(template_descriptor, "template descriptor")
    if live.shape != template.shape:
        raise MatchError(f"Descriptor length mismatch: live={live.size}, template={template.size}.")
    if not 0.0 <= liveness_score <= 1.0:
        raise MatchError(f"Liveness score {liveness_score} is outside [0, 1].")

    distance = float(np.linalg.norm(live - template))
    return MatchScore(
        confidence=distance_to_confidence(distance),
        liveness_score=float(liveness_score),
        distance=distance,
    )
