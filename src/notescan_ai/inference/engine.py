from __future__ import annotations

from collections.abc import Sequence
from typing import Final, Protocol

import torch
from torch import Tensor

from ..errors import InferenceError, ModelNotInitializedError
from .types import ClassScore, PredictionResult, round_tenth

_DEFAULT_TOP_K: Final[int] = 3


class RunnableModel(Protocol):
    @property
    def input_shape(self) -> tuple[int | None, ...]: ...

    def __call__(self, x: Tensor) -> Tensor: ...


class InferenceEngine:
    """Runs one forward pass and reduces the probability vector.

    The caller owns the input tensor; the engine only drops its own
    reference to the output before returning.
    """

    def __init__(self, *, top_k: int = _DEFAULT_TOP_K) -> None:
        if top_k < 1:
            raise ValueError("top_k must be >= 1")
        self._top_k = top_k

    def infer(self, model: RunnableModel | None, tensor: Tensor) -> PredictionResult:
        return reduce_probs(self.probabilities(model, tensor), self._top_k)

    def probabilities(self, model: RunnableModel | None, tensor: Tensor) -> tuple[float, ...]:
        if model is None:
            raise ModelNotInitializedError("model is not initialized")
        _check_input(model.input_shape, tensor)
        try:
            with torch.no_grad():
                out = model(tensor.to(dtype=torch.float32))
            probs = tuple(float(v) for v in out.reshape(-1).tolist())
        except RuntimeError as exc:
            raise InferenceError(f"forward pass failed: {exc}") from exc
        del out
        if not probs:
            raise InferenceError("model produced an empty output")
        return probs


def reduce_probs(probs: Sequence[float], n: int) -> PredictionResult:
    idx = argmax_first(probs)
    return PredictionResult(
        class_index=idx,
        confidence=to_percent(probs[idx]),
        top_k=top_k(probs, n),
    )


def argmax_first(probs: Sequence[float]) -> int:
    if not probs:
        raise ValueError("empty probability vector")
    best_idx = 0
    best = probs[0]
    for i in range(1, len(probs)):
        # Strict comparison keeps the first maximum on ties
        if probs[i] > best:
            best = probs[i]
            best_idx = i
    return best_idx


def top_k(probs: Sequence[float], n: int) -> tuple[ClassScore, ...]:
    # sorted() is stable, so equal probabilities keep index order
    order = sorted(range(len(probs)), key=lambda i: probs[i], reverse=True)
    return tuple(ClassScore(class_index=i, confidence=to_percent(probs[i])) for i in order[:n])


def to_percent(p: float) -> float:
    return round_tenth(float(p) * 100.0)


def _check_input(expected: tuple[int | None, ...], tensor: Tensor) -> None:
    got = tuple(int(d) for d in tensor.shape)
    ok = len(got) == len(expected) and got[0] == 1 and all(
        e is None or e == g for e, g in zip(expected, got, strict=True)
    )
    if not ok:
        exp = ["None" if e is None else str(e) for e in expected]
        raise InferenceError(f"input shape {list(got)} does not match [{', '.join(exp)}]")
