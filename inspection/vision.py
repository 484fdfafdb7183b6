# =============================================================================
# Zero-Shot Inspection - Vision Encoder
# =============================================================================
# Provides the VisionEncoder class that loads the CLIP vision tower with its
# projection head and image processor from HuggingFace, and turns a PIL frame
# into a single projected image embedding living in the same space as the
# precomputed text embeddings.  Only the image tower is loaded at runtime;
# label text embeddings are generated ahead of time.
# =============================================================================

import logging
from typing import Callable, Optional

import numpy as np
import torch
from PIL import Image
from transformers import CLIPImageProcessor, CLIPVisionModelWithProjection

from config import resolve_dtype

logger = logging.getLogger(__name__)

ProgressCallback = Callable[..., None]


class VisionEncoder:
    """
    CLIP image tower producing one embedding per frame.

    Loads a CLIPVisionModelWithProjection and CLIPImageProcessor and returns
    the projected ``image_embeds`` vector, which is comparable by cosine
    similarity with CLIP text embeddings from the same checkpoint.

    Args:
        model_id: HuggingFace model identifier (e.g., "openai/clip-vit-base-patch32").
        device: Compute device string ("mps", "cuda", or "cpu").
        dtype: Torch dtype for model weights (e.g., torch.float32).
        progress_callback: Optional callable receiving load status keyword
            arguments (status, file).  Observational only.
    """

    def __init__(
        self,
        model_id: str,
        device: str,
        dtype: torch.dtype = torch.float32,
        progress_callback: Optional[ProgressCallback] = None,
    ):
        self._device = device
        self._dtype = dtype
        report = progress_callback or (lambda **_: None)

        logger.info("Loading vision processor: %s", model_id)
        report(status="initiate", file="preprocessor_config.json")
        # CLIPImageProcessor handles resizing, center crop, and normalization
        self._processor = CLIPImageProcessor.from_pretrained(model_id)
        report(status="done", file="preprocessor_config.json")

        logger.info("Loading vision model: %s (device=%s, dtype=%s)", model_id, device, dtype)
        report(status="download", file="model weights")
        self._model = CLIPVisionModelWithProjection.from_pretrained(
            model_id, torch_dtype=dtype
        ).to(device)
        self._model.eval()
        report(status="done", file="model weights")

        self._dimension = int(self._model.config.projection_dim)
        logger.info("Vision encoder ready (embedding dim=%d).", self._dimension)

    @property
    def dimension(self) -> int:
        return self._dimension

    @torch.no_grad()
    def encode(self, image: Image.Image) -> np.ndarray:
        """
        Encode a PIL image into its projected CLIP image embedding.

        Pipeline:
            1. Preprocess image via CLIPImageProcessor -> pixel_values (1, 3, 224, 224)
            2. Forward through CLIPVisionModelWithProjection
            3. Take image_embeds (1, D) and squeeze the batch dim -> (D,)
            4. Convert to numpy float32 (not normalized; the similarity
               engine normalizes)

        Args:
            image: A PIL RGB Image (any resolution; processor handles resizing).

        Returns:
            numpy.ndarray of shape (D,) with dtype float32.
        """
        inputs = self._processor(images=image, return_tensors="pt")
        pixel_values = inputs["pixel_values"].to(self._device, dtype=self._dtype)

        outputs = self._model(pixel_values=pixel_values)
        embedding = outputs.image_embeds.squeeze(0).float().cpu().numpy()

        logger.debug("Encoded frame -> embedding shape=%s", embedding.shape)
        return embedding


def load_vision_encoder(
    model_id: str,
    device: str,
    dtype: str = "float32",
    progress_callback: Optional[ProgressCallback] = None,
) -> VisionEncoder:
    """
    Default encoder factory used by the inference worker.

    Kept at module level so it can be handed to a child process.
    """
    return VisionEncoder(
        model_id=model_id,
        device=device,
        dtype=resolve_dtype(dtype),
        progress_callback=progress_callback,
    )
