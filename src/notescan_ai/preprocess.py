from __future__ import annotations

from pathlib import Path
from typing import Protocol

import numpy as np
import torch
from PIL import Image, ImageOps, UnidentifiedImageError
from torch import Tensor

from .errors import AssetLoadError, PreprocessError
from .inference.types import INPUT_HW, ModelKind


class Preprocessor(Protocol):
    """Turns a page image reference into the input tensor for one model kind."""

    def prepare(self, image_ref: str, kind: ModelKind) -> Tensor: ...


class PilPreprocessor:
    """Grayscale, resize to the model's input, scale to [0, 1], NHWC float32."""

    def prepare(self, image_ref: str, kind: ModelKind) -> Tensor:
        return image_to_tensor(open_image(image_ref), kind)


def open_image(image_ref: str) -> Image.Image:
    path = Path(image_ref)
    if not path.is_file():
        raise AssetLoadError(f"page image not found: {image_ref}")
    try:
        with Image.open(path) as img:
            img.load()
            return img.copy()
    except UnidentifiedImageError as exc:
        raise AssetLoadError(f"not a readable image: {image_ref}") from exc
    except OSError as exc:
        raise AssetLoadError(f"failed to read {image_ref}: {exc}") from exc


def image_to_tensor(img: Image.Image, kind: ModelKind) -> Tensor:
    h, w = INPUT_HW[kind]
    try:
        gray = _load_to_grayscale(img)
        resized = gray.resize((w, h), resample=Image.Resampling.BILINEAR)
        arr = np.asarray(resized, dtype=np.float32) / 255.0
    except (ValueError, OSError, TypeError) as exc:
        raise PreprocessError(str(exc)) from exc
    return torch.from_numpy(arr.copy()).reshape(1, h, w, 1)


def _load_to_grayscale(img: Image.Image) -> Image.Image:
    tmp = ImageOps.exif_transpose(img)
    img2: Image.Image = tmp if tmp is not None else img
    if img2.mode in ("RGBA", "LA", "P"):
        # Transparent regions become white paper
        rgba = img2.convert("RGBA")
        bg = Image.new("RGBA", rgba.size, (255, 255, 255, 255))
        img2 = Image.alpha_composite(bg, rgba).convert("RGB")
    if img2.mode != "L":
        img2 = ImageOps.grayscale(img2)
    return img2
