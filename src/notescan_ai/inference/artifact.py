from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType

from ..errors import ArtifactError


@dataclass(frozen=True)
class LayerWeights:
    weights: tuple[str, ...]
    bias: tuple[str, ...]


@dataclass(frozen=True)
class ModelArtifact:
    """Topology plus chunked trainable parameters for one model."""

    architecture: Mapping[str, object]
    trainable_params: Mapping[str, LayerWeights]

    @staticmethod
    def from_path(path: Path) -> ModelArtifact:
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ArtifactError(f"cannot read artifact {path.as_posix()}: {exc}") from exc
        return ModelArtifact.from_json(text)

    @staticmethod
    def from_json(s: str) -> ModelArtifact:
        try:
            obj: object = json.loads(s)
        except json.JSONDecodeError as exc:
            raise ArtifactError(f"artifact is not valid JSON: {exc}") from exc
        if not isinstance(obj, dict):
            raise ArtifactError("artifact must be a JSON object")
        return ModelArtifact.from_dict({str(k): v for k, v in obj.items()})

    @staticmethod
    def from_dict(d: Mapping[str, object]) -> ModelArtifact:
        arch = d.get("architecture")
        if not isinstance(arch, dict):
            raise ArtifactError("artifact is missing an 'architecture' object")
        params_raw = d.get("trainable_params", {})
        if params_raw is None:
            params_raw = {}
        if not isinstance(params_raw, dict):
            raise ArtifactError("'trainable_params' must be an object")
        params: dict[str, LayerWeights] = {}
        for name, entry in params_raw.items():
            if not isinstance(entry, dict):
                raise ArtifactError(f"params for layer {name!r} must be an object")
            params[str(name)] = LayerWeights(
                weights=_chunks(entry.get("weights"), name, "weights"),
                bias=_chunks(entry.get("bias"), name, "bias"),
            )
        return ModelArtifact(
            architecture=MappingProxyType({str(k): v for k, v in arch.items()}),
            trainable_params=MappingProxyType(params),
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "architecture": dict(self.architecture),
            "trainable_params": {
                name: {"weights": list(lw.weights), "bias": list(lw.bias)}
                for name, lw in self.trainable_params.items()
            },
        }


def _chunks(raw: object, layer: object, field: str) -> tuple[str, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list) or not all(isinstance(c, str) for c in raw):
        raise ArtifactError(f"{field} of layer {layer!r} must be a list of strings")
    return tuple(raw)
