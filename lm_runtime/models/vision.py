"""
Vision preprocessing for the multimodal model

Responsibilities:
- Decode image attachments (bytes, data URL / base64, path, PIL image)
- Choose a tile grid from the aspect ratio and cut normalized 512px tiles
- Expand the image placeholder token into start marker + one slot per patch + end marker
- Overwrite placeholder embedding rows with image embedding rows
"""

import base64
import binascii
import io
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Sequence

import numpy as np
from PIL import Image, UnidentifiedImageError

from lm_runtime.errors import ImageProcessingError

TILE_SIZE = 512
IMAGE_MEAN = np.array([0.485, 0.456, 0.406], dtype=np.float32)
IMAGE_STD = np.array([0.229, 0.224, 0.225], dtype=np.float32)

WIDE_ASPECT = 1.5
TALL_ASPECT = 0.67


@dataclass(frozen=True)
class TileGrid:
    rows: int
    cols: int

    @property
    def count(self) -> int:
        return self.rows * self.cols

    @property
    def width(self) -> int:
        return self.cols * TILE_SIZE

    @property
    def height(self) -> int:
        return self.rows * TILE_SIZE


def compute_grid(width: int, height: int) -> TileGrid:
    """
    Pick the tile grid for an image

    Small images use one tile; strongly wide images two side by side, strongly
    tall images two stacked, anything else 2x2.
    """
    if width <= TILE_SIZE and height <= TILE_SIZE:
        return TileGrid(1, 1)
    aspect = width / height
    if aspect > WIDE_ASPECT:
        return TileGrid(1, 2)
    if aspect < TALL_ASPECT:
        return TileGrid(2, 1)
    return TileGrid(2, 2)


def _decode_source(source: Any) -> bytes:
    if isinstance(source, (bytes, bytearray)):
        return bytes(source)
    if isinstance(source, Path):
        return source.read_bytes()
    if isinstance(source, str):
        if source.startswith("data:"):
            _, _, payload = source.partition(",")
            return base64.b64decode(payload, validate=True)
        if len(source) < 4096 and os.path.isfile(source):
            return Path(source).read_bytes()
        return base64.b64decode(source, validate=True)
    raise TypeError(f"unsupported image source {type(source).__name__}")


def load_image(source: Any) -> Image.Image:
    """
    Decode an attachment into an RGB PIL image

    Raises:
        ImageProcessingError: If the attachment cannot be decoded
    """
    if isinstance(source, Image.Image):
        return source.convert("RGB")
    try:
        data = _decode_source(source)
        image = Image.open(io.BytesIO(data))
        image.load()
    except (OSError, ValueError, TypeError, binascii.Error, UnidentifiedImageError) as exc:
        raise ImageProcessingError(None, f"could not decode image: {exc}") from exc
    return image.convert("RGB")


@dataclass
class ImageInputs:
    pixel_values: np.ndarray
    pixel_attention_mask: np.ndarray
    spatial_shapes: np.ndarray
    grid: TileGrid

    def feeds(self, input_names: Sequence[str]) -> Dict[str, np.ndarray]:
        """Tensors for the image embedder, restricted to the inputs it declares"""
        available = {
            "pixel_values": self.pixel_values,
            "pixel_attention_mask": self.pixel_attention_mask,
            "spatial_shapes": self.spatial_shapes,
        }
        return {name: value for name, value in available.items() if name in input_names}


def preprocess_image(image: Image.Image) -> ImageInputs:
    grid = compute_grid(*image.size)
    resized = image.resize((grid.width, grid.height), Image.Resampling.BICUBIC)
    pixels = np.asarray(resized, dtype=np.float32) / 255.0
    pixels = (pixels - IMAGE_MEAN) / IMAGE_STD

    tiles = []
    for row in range(grid.rows):
        for col in range(grid.cols):
            tile = pixels[row * TILE_SIZE:(row + 1) * TILE_SIZE, col * TILE_SIZE:(col + 1) * TILE_SIZE]
            tiles.append(tile.transpose(2, 0, 1))

    pixel_values = np.stack(tiles)[np.newaxis].astype(np.float32)
    return ImageInputs(
        pixel_values=pixel_values,
        pixel_attention_mask=np.ones((1, grid.count, TILE_SIZE, TILE_SIZE), dtype=np.int64),
        spatial_shapes=np.array([[grid.rows, grid.cols]], dtype=np.int64),
        grid=grid,
    )


def expand_image_placeholders(
    ids: Sequence[int],
    image_token_id: int,
    start_token_id: int,
    end_token_id: int,
    patch_counts: Sequence[int],
) -> List[int]:
    """
    Replace the n-th image placeholder with start, ``patch_counts[n]`` placeholders, end

    Placeholders beyond ``len(patch_counts)`` are left untouched.
    """
    expanded: List[int] = []
    image_index = 0
    for token in ids:
        if token == image_token_id and image_index < len(patch_counts):
            expanded.append(start_token_id)
            expanded.extend([image_token_id] * patch_counts[image_index])
            expanded.append(end_token_id)
            image_index += 1
        else:
            expanded.append(token)
    return expanded


def placeholder_positions(ids: Sequence[int], image_token_id: int) -> List[int]:
    return [i for i, token in enumerate(ids) if token == image_token_id]


def merge_image_embeddings(
    token_embeddings: np.ndarray, image_embeddings: np.ndarray, positions: Sequence[int]
) -> np.ndarray:
    """
    Overwrite the rows of ``token_embeddings`` ([1, seq, hidden]) at ``positions`` with image rows

    Rows are paired one to one in order; surplus image rows or surplus
    positions are ignored.
    """
    hidden = token_embeddings.shape[-1]
    rows = image_embeddings.reshape(-1, hidden)
    count = min(len(positions), rows.shape[0])
    merged = token_embeddings.copy()
    if count:
        merged[0, list(positions[:count])] = rows[:count].astype(merged.dtype)
    return merged
