# =============================================================================
# Zero-Shot Inspection - Label Embedding Generation Script
# =============================================================================
# Build-time utility that encodes every inspection label with the CLIP text
# tower and writes the normalized vectors to JSON.  At runtime only the image
# tower is loaded; the text tower never ships with the detector.
#
# Each label is encoded with the prompt template "a photo of {label}" and
# L2-normalized before it is written.
#
# Usage:
#   python3 scripts/generate_embeddings.py [--model-id ID] [--output PATH]
#
# Output:
#   data/label_embeddings.json  {modelId, generatedAt, embeddingDimension, labels}
# =============================================================================

import argparse
import json
import os
import time
from datetime import datetime, timezone
from typing import Dict, List, Sequence

import torch

DEFAULT_MODEL_ID = "openai/clip-vit-base-patch32"
PROMPT_TEMPLATE = "a photo of {label}"

# Every label used by any inspection step.  Re-run the script after editing.
ALL_LABELS = [
    # Heating
    "a radiator",
    "a wall-mounted radiator",
    "a floor-mounted radiator",
    "a towel radiator",
    "underfloor heating",
    # Meters and utilities
    "an electricity meter",
    "a smart meter",
    "a gas meter",
    "a meter box",
    "an electrical panel",
    "a fuse box",
    "a circuit breaker panel",
    # Water heating
    "a boiler",
    "a combi boiler",
    "a water heater",
    "a hot water cylinder",
    "a heat pump",
    # Insulation
    "wall insulation",
    "loft insulation",
    "cavity wall",
    "solid wall",
    # Windows and doors
    "a window",
    "a double glazed window",
    "a single glazed window",
    "a door",
    "a front door",
    # General
    "a person",
    "a room",
    "a ceiling",
    "a wall",
    "a floor",
]


def build_payload(model_id: str, embeddings: Dict[str, List[float]]) -> dict:
    """
    Assemble the JSON document read by EmbeddingStore.load().

    Raises:
        ValueError: If there are no embeddings or their sizes differ.
    """
    if not embeddings:
        raise ValueError("No embeddings to write")
    dims = {len(v) for v in embeddings.values()}
    if len(dims) != 1:
        raise ValueError(f"Embeddings have mixed dimensions: {sorted(dims)}")
    return {
        "modelId": model_id,
        "generatedAt": datetime.now(timezone.utc).isoformat(),
        "embeddingDimension": dims.pop(),
        "labels": embeddings,
    }


@torch.no_grad()
def generate_embeddings(
    labels: Sequence[str] = ALL_LABELS,
    model_id: str = DEFAULT_MODEL_ID,
    output_path: str = os.path.join("data", "label_embeddings.json"),
) -> dict:
    """
    Encode ``labels`` with the CLIP text tower and save them as JSON.

    Args:
        labels:      Label texts to encode.
        model_id:    HuggingFace CLIP checkpoint (must match the vision model).
        output_path: Destination JSON file.

    Returns:
        The written payload.
    """
    print(f"Loading tokenizer and text model: {model_id}...")
    t0 = time.time()

    # Import here to avoid slow import when only --help is requested
    from transformers import CLIPTextModelWithProjection, CLIPTokenizer

    tokenizer = CLIPTokenizer.from_pretrained(model_id)
    model = CLIPTextModelWithProjection.from_pretrained(model_id)
    model.eval()
    print(f"Model loaded in {time.time() - t0:.1f}s")

    print(f"Generating embeddings for {len(labels)} labels...")
    embeddings: Dict[str, List[float]] = {}
    for label in labels:
        inputs = tokenizer(
            PROMPT_TEMPLATE.format(label=label),
            padding=True, truncation=True, return_tensors="pt",
        )
        text_embeds = model(**inputs).text_embeds[0].float()
        # CLIP text embeddings must be unit-norm for cosine similarity
        text_embeds = text_embeds / text_embeds.norm(p=2)
        embeddings[label] = text_embeds.tolist()
        print(f"  + {label}")

    payload = build_payload(model_id, embeddings)

    os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)
    with open(output_path, "w") as f:
        json.dump(payload, f)
    print(
        f"Saved {len(embeddings)} embeddings (dim={payload['embeddingDimension']}): "
        f"{output_path} ({os.path.getsize(output_path) / 1024:.1f} KB)"
    )
    return payload


def main():
    parser = argparse.ArgumentParser(description="Generate CLIP label embeddings")
    parser.add_argument("--model-id", default=DEFAULT_MODEL_ID)
    parser.add_argument("--output", default=os.path.join("data", "label_embeddings.json"))
    args = parser.parse_args()
    generate_embeddings(model_id=args.model_id, output_path=args.output)


if __name__ == "__main__":
    main()
