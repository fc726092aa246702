"""Float32 weight buffers carried as base64 chunks.

Artifacts split each tensor's little-endian float32 buffer into several
base64 strings. Chunks decode independently and concatenate in order.
"""

from __future__ import annotations

import base64
import binascii
import math
from collections.abc import Sequence
from typing import Final

import numpy as np
import torch
from torch import Tensor

from ..errors import Base64DecodeError, DecodeError, ShapeMismatchError

_F32_LE: Final[np.dtype[np.float32]] = np.dtype("<f4")
_F32_SIZE: Final[int] = 4


def decode_float32(chunks: Sequence[str]) -> Tensor:
    """Decode ordered base64 chunks into one flat float32 tensor."""
    if not chunks:
        return torch.empty(0, dtype=torch.float32)
    arrays: list[np.ndarray] = []
    for i, chunk in enumerate(chunks):
        raw = _b64_bytes(chunk, i)
        if len(raw) % _F32_SIZE != 0:
            raise DecodeError(
                f"chunk {i} has {len(raw)} bytes, not a multiple of {_F32_SIZE}"
            )
        arrays.append(np.frombuffer(raw, dtype=_F32_LE))
    merged = np.concatenate(arrays).astype(np.float32, copy=False)
    return torch.from_numpy(merged.copy())


def _b64_bytes(chunk: str, index: int) -> bytes:
    if not isinstance(chunk, str):
        raise Base64DecodeError(f"chunk {index} is not a string")
    # Line breaks and dropped padding are tolerated; other stray characters are not
    text = "".join(chunk.split())
    if len(text) % 4 == 1:
        raise Base64DecodeError(f"chunk {index} has an impossible base64 length {len(text)}")
    text += "=" * (-len(text) % 4)
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise Base64DecodeError(f"chunk {index} is not valid base64: {exc}") from exc


def to_shape(flat: Tensor, shape: Sequence[int]) -> Tensor:
    """Reshape decoded data to the live tensor's shape or raise ShapeMismatchError."""
    dims = tuple(int(d) for d in shape)
    expected = math.prod(dims)
    got = int(flat.numel())
    if got != expected:
        raise ShapeMismatchError(
            f"decoded {got} values but shape {list(dims)} needs {expected}"
        )
    return flat.reshape(dims).clone()


def encode_float32(values: Tensor | Sequence[float], chunk_floats: int = 16384) -> list[str]:
    """Inverse of decode_float32, used to write artifacts."""
    if chunk_floats <= 0:
        raise ValueError("chunk_floats must be positive")
    if isinstance(values, Tensor):
        arr = values.detach().to(dtype=torch.float32).reshape(-1).cpu().numpy()
    else:
        arr = np.asarray(values, dtype=np.float32).reshape(-1)
    buf = arr.astype(_F32_LE).tobytes()
    step = chunk_floats * _F32_SIZE
    return [base64.b64encode(buf[i : i + step]).decode("ascii") for i in range(0, len(buf), step)]
