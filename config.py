# =============================================================================
# Zero-Shot Inspection - Centralized Configuration
# =============================================================================
# Provides a single Config dataclass containing all tunable parameters for
# the on-device detector: vision model, worker isolation, classification,
# camera, detection timing, and the session server. Parameters are
# overridable via environment variables with the INSPECT_ prefix
# (e.g., INSPECT_SUSTAINED_MS=1500).
# =============================================================================

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import torch

# Project root directory (where this file lives)
_PROJECT_ROOT = str(Path(__file__).parent.resolve())


def _detect_device() -> str:
    """
    Auto-detect the best available compute device.

    Returns:
        str: "mps" on Apple Silicon, "cuda" on NVIDIA GPUs, "cpu" as fallback.
    """
    if torch.backends.mps.is_available():
        return "mps"
    elif torch.cuda.is_available():
        return "cuda"
    return "cpu"


def resolve_dtype(dtype_str: str) -> torch.dtype:
    """
    Convert a string dtype name to a torch.dtype.

    Args:
        dtype_str: One of "float16", "float32", "bfloat16".

    Returns:
        The corresponding torch.dtype.
    """
    dtype_map = {
        "float16": torch.float16,
        "float32": torch.float32,
        "bfloat16": torch.bfloat16,
    }
    return dtype_map.get(dtype_str, torch.float32)


@dataclass
class Config:
    """
    Centralized configuration for the Zero-Shot Inspection detector.

    All fields can be overridden via environment variables prefixed with INSPECT_.
    """

    # -- Vision Model (CLIP, image tower only) --
    vision_model_id: str = "openai/clip-vit-base-patch32"

    # -- Compute --
    device: str = field(default_factory=_detect_device)
    torch_dtype_str: str = "float32"

    # -- Worker isolation ("process" or "thread") --
    isolation: str = "process"

    # -- Label Embeddings (generated by scripts/generate_embeddings.py) --
    embeddings_path: str = field(
        default_factory=lambda: os.path.join(_PROJECT_ROOT, "data", "label_embeddings.json")
    )

    # -- Classification --
    logit_scale: float = 100.0  # CLIP's exp(logit_scale)
    top_k: int = 5

    # -- Camera --
    camera_index: int = 0
    frame_interval_seconds: float = 0.5
    frame_max_width: int = 320
    frame_min_size: int = 64
    capture_quality: float = 0.92

    # -- Detection Timing --
    sustained_ms: int = 1000
    countdown_seconds: int = 3
    default_threshold: float = 0.5

    # -- Session Server --
    server_host: str = "127.0.0.1"
    server_port: int = 8000
    request_timeout_seconds: float = 30.0
    upload_max_retries: int = 3

    # -- Derived (computed post-init) --
    server_url: str = field(init=False)
    torch_dtype: torch.dtype = field(init=False)

    def __post_init__(self):
        """Apply environment variable overrides and compute derived fields."""
        self._apply_env_overrides()
        self.server_url = f"http://{self.server_host}:{self.server_port}"
        self.torch_dtype = resolve_dtype(self.torch_dtype_str)

    def _apply_env_overrides(self):
        """
        Override config fields from environment variables.

        Looks for INSPECT_<FIELD_NAME_UPPERCASE> environment variables and
        applies them with appropriate type conversion.
        """
        field_types = {
            "vision_model_id": str,
            "device": str,
            "torch_dtype_str": str,
            "isolation": str,
            "embeddings_path": str,
            "logit_scale": float,
            "top_k": int,
            "camera_index": int,
            "frame_interval_seconds": float,
            "frame_max_width": int,
            "frame_min_size": int,
            "capture_quality": float,
            "sustained_ms": int,
            "countdown_seconds": int,
            "default_threshold": float,
            "server_host": str,
            "server_port": int,
            "request_timeout_seconds": float,
            "upload_max_retries": int,
        }
        for field_name, field_type in field_types.items():
            env_key = f"INSPECT_{field_name.upper()}"
            env_value = os.environ.get(env_key)
            if env_value is not None:
                setattr(self, field_name, field_type(env_value))


# ---------------------------------------------------------------------------
# Singleton accessor
# ---------------------------------------------------------------------------
_config_instance: Optional[Config] = None


def get_config() -> Config:
    """
    Return the singleton Config instance, creating it on first call.

    Returns:
        Config: The global configuration object.
    """
    global _config_instance
    if _config_instance is None:
        _config_instance = Config()
    return _config_instance
