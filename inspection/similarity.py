# =============================================================================
# Zero-Shot Inspection - Similarity Engine
# =============================================================================
# Pure zero-shot classification of one image embedding against a matrix of
# pre-normalized label embeddings:
#
#   1. L2-normalize the image embedding (zero norm -> DegenerateEmbedding)
#   2. Cosine similarity = dot product against every label row
#   3. Multiply by CLIP's temperature (logit scale, ~100)
#   4. Numerically stable softmax -> probabilities summing to 1
#   5. Target (row 0) is detected only when it clears the threshold AND
#      strictly out-ranks every negative label
#
# No side effects; identical inputs give identical outputs.
# =============================================================================

from dataclasses import dataclass
from typing import List, NamedTuple, Optional, Sequence, Tuple

import numpy as np

from inspection.embeddings import LabelVector
from inspection.errors import DegenerateEmbedding, FrameError, SetupError

# CLIP's learned logit scale, exp(4.6052) ~= 100
DEFAULT_LOGIT_SCALE = 100.0
DEFAULT_TOP_K = 5


class RankedScore(NamedTuple):
    label: str
    score: float


@dataclass(frozen=True)
class DetectionScore:
    """
    Per-frame detection outcome.  Ephemeral, never persisted.

    Attributes:
        target_label:  Label at row 0 of the matrix.
        target_score:  Softmax probability of the target, in [0, 1].
        is_detected:   Target >= threshold and strictly top-ranked.
        ranked_scores: Labels sorted by descending probability (top-k).
    """

    target_label: str
    target_score: float
    is_detected: bool
    ranked_scores: Tuple[RankedScore, ...]


@dataclass(frozen=True)
class DetectionConfig:
    """
    Per-step detection settings, owned by the caller.

    Attributes:
        target:            The label the user must show.
        negatives:         Distractor labels the target must out-rank.
        threshold:         Minimum target probability, in [0, 1].
        sustained_ms:      How long detection must hold before the countdown.
        countdown_seconds: Countdown length before capture (0 captures at once).
    """

    target: LabelVector
    negatives: Tuple[LabelVector, ...] = ()
    threshold: float = 0.5
    sustained_ms: int = 1000
    countdown_seconds: int = 3

    def __post_init__(self):
        if not 0.0 <= self.threshold <= 1.0:
            raise SetupError(f"Threshold must be within [0, 1], got {self.threshold}")
        if self.sustained_ms <= 0:
            raise SetupError(f"sustained_ms must be positive, got {self.sustained_ms}")
        if self.countdown_seconds < 0:
            raise SetupError(f"countdown_seconds must be >= 0, got {self.countdown_seconds}")
        object.__setattr__(self, "negatives", tuple(self.negatives))

    @property
    def target_label(self) -> str:
        return self.target.label

    def to_matrix(self) -> "EmbeddingMatrix":
        return EmbeddingMatrix.for_target(self.target, self.negatives)


class EmbeddingMatrix:
    """
    Read-only (N, D) float32 matrix of unit-norm label embeddings.

    In single-target mode row 0 is the target and the negatives follow, so
    ``N == 1 + len(negatives)``.  A matrix is never mutated: changing the
    label set means building a new one.

    Args:
        labels:     Row labels, in order.
        rows:       Array of shape (N, D).
        has_target: Whether row 0 is a detection target.
    """

    def __init__(self, labels: Sequence[str], rows: np.ndarray, has_target: bool = False):
        if len(labels) == 0:
            raise SetupError("Embedding matrix needs at least one label")
        rows = np.array(rows, dtype=np.float32, copy=True)
        if rows.ndim != 2 or rows.shape[0] != len(labels):
            raise SetupError(
                f"Embedding matrix shape {rows.shape} does not match {len(labels)} labels"
            )
        rows.setflags(write=False)
        self._labels = tuple(labels)
        self._rows = rows
        self._has_target = has_target

    @classmethod
    def for_target(
        cls, target: LabelVector, negatives: Sequence[LabelVector] = ()
    ) -> "EmbeddingMatrix":
        """Build a single-target matrix: target at row 0, negatives after."""
        vectors = [target, *negatives]
        _check_same_dimension(vectors)
        return cls(
            [v.label for v in vectors],
            np.stack([v.vector for v in vectors]),
            has_target=True,
        )

    @classmethod
    def from_vectors(cls, vectors: Sequence[LabelVector]) -> "EmbeddingMatrix":
        """Build a generic (no target) matrix for top-k classification."""
        if not vectors:
            raise SetupError("Embedding matrix needs at least one label")
        _check_same_dimension(vectors)
        return cls([v.label for v in vectors], np.stack([v.vector for v in vectors]))

    @property
    def labels(self) -> Tuple[str, ...]:
        return self._labels

    @property
    def rows(self) -> np.ndarray:
        return self._rows

    @property
    def has_target(self) -> bool:
        return self._has_target

    @property
    def dimension(self) -> int:
        return int(self._rows.shape[1])

    def __len__(self) -> int:
        return len(self._labels)


def _check_same_dimension(vectors: Sequence[LabelVector]) -> None:
    dims = {v.dimension for v in vectors}
    if len(dims) > 1:
        raise SetupError(f"Label embeddings have mixed dimensions: {sorted(dims)}")
    for v in vectors:
        if not v.normalized:
            raise SetupError(f"Label embedding '{v.label}' is not normalized")


def label_probabilities(
    image_vector: np.ndarray,
    matrix: EmbeddingMatrix,
    logit_scale: float = DEFAULT_LOGIT_SCALE,
) -> np.ndarray:
    """
    Softmax probabilities of every matrix row for one image embedding.

    Args:
        image_vector: Raw (not necessarily unit-norm) embedding of shape (D,).
        matrix:       Label embedding matrix with dimension D.
        logit_scale:  Temperature applied to the cosine similarities.

    Returns:
        float64 array of shape (N,) summing to 1.

    Raises:
        SetupError:          If the dimensions do not match.
        DegenerateEmbedding: If the image embedding has zero norm.
        FrameError:          If the image embedding is not finite.
    """
    vector = np.asarray(image_vector, dtype=np.float64).reshape(-1)
    if vector.shape[0] != matrix.dimension:
        raise SetupError(
            f"Image embedding has dimension {vector.shape[0]}, "
            f"label matrix expects {matrix.dimension}"
        )
    if not np.all(np.isfinite(vector)):
        raise FrameError("Image embedding contains non-finite values")

    norm = float(np.linalg.norm(vector))
    if norm == 0.0:
        raise DegenerateEmbedding("Image embedding norm is zero")
    vector = vector / norm

    similarities = matrix.rows.astype(np.float64) @ vector
    scaled = similarities * logit_scale

    # Subtract the max for numerical stability
    exp_scores = np.exp(scaled - np.max(scaled))
    return exp_scores / np.sum(exp_scores)


def _rank(labels: Sequence[str], probabilities: np.ndarray, top_k: int) -> Tuple[RankedScore, ...]:
    # Stable sort keeps row order among equal probabilities
    order = np.argsort(-probabilities, kind="stable")[:top_k]
    return tuple(RankedScore(labels[i], float(probabilities[i])) for i in order)


def rank_labels(
    image_vector: np.ndarray,
    matrix: EmbeddingMatrix,
    logit_scale: float = DEFAULT_LOGIT_SCALE,
    top_k: int = DEFAULT_TOP_K,
) -> List[RankedScore]:
    """Generic zero-shot classification: the top-k labels by probability."""
    probabilities = label_probabilities(image_vector, matrix, logit_scale)
    return list(_rank(matrix.labels, probabilities, top_k))


def classify(
    image_vector: np.ndarray,
    matrix: EmbeddingMatrix,
    threshold: float,
    logit_scale: float = DEFAULT_LOGIT_SCALE,
    top_k: int = DEFAULT_TOP_K,
) -> DetectionScore:
    """
    Score the target (row 0) of ``matrix`` against one image embedding.

    The target is detected when its probability is at least ``threshold``
    and strictly greater than every other label's.  A tie with a negative is
    not a detection.  With no negatives this reduces to the threshold test.

    Args:
        image_vector: Raw image embedding of shape (D,).
        matrix:       Single-target matrix (target at row 0).
        threshold:    Minimum target probability, in [0, 1].
        logit_scale:  Temperature applied before softmax.
        top_k:        Number of ranked labels to return.

    Returns:
        DetectionScore for the frame.
    """
    if not 0.0 <= threshold <= 1.0:
        raise SetupError(f"Threshold must be within [0, 1], got {threshold}")

    probabilities = label_probabilities(image_vector, matrix, logit_scale)
    target_score = float(probabilities[0])

    best_negative: Optional[float] = None
    if len(probabilities) > 1:
        best_negative = float(np.max(probabilities[1:]))
    top_ranked = best_negative is None or target_score > best_negative

    return DetectionScore(
        target_label=matrix.labels[0],
        target_score=target_score,
        is_detected=bool(target_score >= threshold and top_ranked),
        ranked_scores=_rank(matrix.labels, probabilities, top_k),
    )
