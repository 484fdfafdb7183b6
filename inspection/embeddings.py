# =============================================================================
# Zero-Shot Inspection - Label Embedding Store
# =============================================================================
# Immutable mapping from label text to a unit-norm float32 text embedding.
# Vectors are normalized exactly once, when the store is built, and are never
# renormalized by consumers.  The JSON file is produced at build time by
# scripts/generate_embeddings.py.
# =============================================================================

import json
import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Sequence

import numpy as np

from inspection.errors import SetupError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LabelVector:
    """
    A label and its text embedding.

    Attributes:
        label:      Exact label text.
        vector:     float32 array of shape (D,), read-only.
        normalized: True once the vector has unit L2 norm.
    """

    label: str
    vector: np.ndarray
    normalized: bool = True

    @property
    def dimension(self) -> int:
        return int(self.vector.shape[0])


def normalize_label_vector(label: str, values: Sequence[float]) -> LabelVector:
    """
    Build a read-only, unit-norm LabelVector from raw values.

    Raises:
        SetupError: If the vector is empty, not 1-D, or has zero norm.
    """
    vector = np.asarray(values, dtype=np.float32)
    if vector.ndim != 1 or vector.size == 0:
        raise SetupError(f"Embedding for label '{label}' must be a non-empty 1-D vector")

    norm = float(np.linalg.norm(vector))
    if norm == 0.0 or not np.isfinite(norm):
        raise SetupError(f"Embedding for label '{label}' has zero or invalid norm")

    vector = vector / norm
    vector.setflags(write=False)
    return LabelVector(label=label, vector=vector, normalized=True)


class EmbeddingStore:
    """
    Read-only label -> LabelVector mapping with a single shared dimension.

    Args:
        embeddings: Mapping of label text to raw embedding values.
        model_id:   Identifier of the text model the embeddings came from.

    Raises:
        SetupError: If the mapping is empty or the dimensions disagree.
    """

    def __init__(self, embeddings: Mapping[str, Sequence[float]], model_id: str = ""):
        if not embeddings:
            raise SetupError("Embedding store needs at least one label")

        vectors: Dict[str, LabelVector] = {}
        dimension = None
        for label, values in embeddings.items():
            label_vector = normalize_label_vector(label, values)
            if dimension is None:
                dimension = label_vector.dimension
            elif label_vector.dimension != dimension:
                raise SetupError(
                    f"Embedding for '{label}' has dimension {label_vector.dimension}, "
                    f"expected {dimension}"
                )
            vectors[label] = label_vector

        self._vectors = MappingProxyType(vectors)
        self._dimension = dimension
        self._model_id = model_id

        logger.info(
            "Embedding store ready: %d labels, dim=%d, model=%s",
            len(vectors), dimension, model_id or "unknown",
        )

    @classmethod
    def load(cls, path: str) -> "EmbeddingStore":
        """
        Load a store from the JSON file written by generate_embeddings.py.

        Expected layout::

            {"modelId": "...", "generatedAt": "...",
             "embeddingDimension": 512, "labels": {"a radiator": [...], ...}}

        Raises:
            SetupError: If the file is missing, malformed, or inconsistent.
        """
        logger.info("Loading label embeddings: %s", path)
        try:
            with open(path, "r") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            raise SetupError(f"Cannot read label embeddings from {path}: {exc}") from exc

        labels = data.get("labels") if isinstance(data, dict) else None
        if not isinstance(labels, dict):
            raise SetupError(f"{path} has no 'labels' mapping")

        store = cls(labels, model_id=data.get("modelId", ""))

        declared = data.get("embeddingDimension")
        if declared is not None and int(declared) != store.dimension:
            raise SetupError(
                f"{path} declares dimension {declared} but vectors have {store.dimension}"
            )
        return store

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def model_id(self) -> str:
        return self._model_id

    @property
    def labels(self) -> List[str]:
        return list(self._vectors.keys())

    def __contains__(self, label: object) -> bool:
        return label in self._vectors

    def __len__(self) -> int:
        return len(self._vectors)

    def get(self, label: str) -> LabelVector:
        """
        Look up a label by its exact text.

        Raises:
            SetupError: If the label has no precomputed embedding.
        """
        try:
            return self._vectors[label]
        except KeyError:
            raise SetupError(f"No precomputed embedding for label: '{label}'") from None

    def subset(self, labels: Iterable[str]) -> Dict[str, List[float]]:
        """
        Return plain-list embeddings for the labels that exist.

        Missing labels are skipped with a warning, which suits the generic
        classifier where a partial label set is still usable.
        """
        result: Dict[str, List[float]] = {}
        for label in labels:
            if label in self._vectors:
                result[label] = self._vectors[label].vector.tolist()
            else:
                logger.warning("No precomputed embedding for label: '%s'", label)
        return result
