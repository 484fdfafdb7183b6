"""
Shared fixtures for the detector tests.

Nothing here downloads a model, opens a camera or touches the network:
- FakeEncoderFactory stands in for the CLIP loader inside the worker
- FakeClock and FakeTimerFactory drive the state machine deterministically
"""

import io
import threading
from typing import Dict, List, Optional, Tuple

import numpy as np
import pytest
from PIL import Image

from inspection.embeddings import normalize_label_vector
from inspection.similarity import DetectionConfig, DetectionScore, RankedScore

DIM = 4

RED = (255, 0, 0)
GREEN = (0, 255, 0)
BLUE = (0, 0, 255)
BLACK = (0, 0, 0)


def unit(index: int, dim: int = DIM) -> List[float]:
    vector = [0.0] * dim
    vector[index] = 1.0
    return vector


def png_bytes(color: Tuple[int, int, int] = RED, size: Tuple[int, int] = (8, 8)) -> bytes:
    """Lossless encoded frame of a single color."""
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


def make_score(value: float, threshold: float = 0.5, label: str = "a radiator") -> DetectionScore:
    return DetectionScore(
        target_label=label,
        target_score=value,
        is_detected=value >= threshold,
        ranked_scores=(RankedScore(label, value),),
    )


def make_config(
    target: str = "a radiator",
    negatives=("a person", "a wall"),
    threshold: float = 0.5,
    sustained_ms: int = 1000,
    countdown_seconds: int = 3,
) -> DetectionConfig:
    return DetectionConfig(
        target=normalize_label_vector(target, unit(0)),
        negatives=tuple(
            normalize_label_vector(label, unit(i + 1)) for i, label in enumerate(negatives)
        ),
        threshold=threshold,
        sustained_ms=sustained_ms,
        countdown_seconds=countdown_seconds,
    )


# ─── Fake encoder ────────────────────────────────────────────────


class FakeEncoder:
    def __init__(self, factory: "FakeEncoderFactory"):
        self._factory = factory
        self.dimension = factory.dimension

    def encode(self, image: Image.Image) -> np.ndarray:
        if self._factory.encode_gate is not None:
            self._factory.encode_gate.wait(timeout=5)
        color = image.getpixel((0, 0))
        vector = self._factory.colors.get(color, self._factory.default)
        return np.asarray(vector, dtype=np.float32)


class FakeEncoderFactory:
    """
    Callable with the load_vision_encoder signature.

    Maps the top-left pixel color of each frame to an embedding.  Counts
    loads, can fail, and can block loading or encoding on an Event.
    """

    def __init__(
        self,
        dimension: int = DIM,
        colors: Optional[Dict[Tuple[int, int, int], List[float]]] = None,
        fail: bool = False,
    ):
        self.dimension = dimension
        self.colors = colors if colors is not None else {
            RED: unit(0, dimension),
            GREEN: unit(1, dimension),
            BLUE: unit(2, dimension),
            BLACK: [0.0] * dimension,
        }
        self.default = unit(dimension - 1, dimension)
        self.fail = fail
        self.calls = 0
        self.load_gate: Optional[threading.Event] = None
        self.encode_gate: Optional[threading.Event] = None
        self._lock = threading.Lock()

    def __call__(self, model_id, device, dtype="float32", progress_callback=None):
        with self._lock:
            self.calls += 1
        if self.load_gate is not None:
            self.load_gate.wait(timeout=5)
        if progress_callback is not None:
            progress_callback(
                status="download", file="model.safetensors",
                progress=50.0, loaded=512, total=1024,
            )
            progress_callback(status="done", file="model.safetensors", progress=100.0)
        if self.fail:
            raise RuntimeError("weights are corrupt")
        return FakeEncoder(self)


@pytest.fixture
def encoder_factory():
    return FakeEncoderFactory()


@pytest.fixture
def label_embeddings():
    return {
        "a radiator": unit(0),
        "a person": unit(1),
        "a wall": unit(2),
        "a floor": unit(3),
    }


# ─── Fake clock and timers ───────────────────────────────────────


class FakeClock:
    """Milliseconds clock advanced by hand."""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


class FakeTimer:
    def __init__(self, delay, callback):
        self.delay = delay
        self.callback = callback
        self.started = False
        self.cancelled = False
        self.fired = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    @property
    def active(self) -> bool:
        return self.started and not self.cancelled and not self.fired


class FakeTimerFactory:
    def __init__(self):
        self.timers: List[FakeTimer] = []

    def __call__(self, delay, callback) -> FakeTimer:
        timer = FakeTimer(delay, callback)
        self.timers.append(timer)
        return timer

    @property
    def active(self) -> List[FakeTimer]:
        return [t for t in self.timers if t.active]

    def fire(self) -> FakeTimer:
        """Fire the single active timer."""
        active = self.active
        assert len(active) == 1, f"expected one active timer, found {len(active)}"
        timer = active[0]
        timer.fired = True
        timer.callback()
        return timer


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def timers():
    return FakeTimerFactory()
