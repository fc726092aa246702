from __future__ import annotations

import logging
from dataclasses import dataclass

from torch import Tensor

from ..errors import DecodeError, ShapeMismatchError
from ..logging import get_logger, log_event
from .artifact import LayerWeights, ModelArtifact
from .topology import GraphLayer, KerasGraph, build_graph
from .types import LayerLoadReport, LoadReason, LoadReport
from .weights import decode_float32, to_shape


@dataclass(frozen=True)
class LoadResult:
    model: KerasGraph
    report: LoadReport


class ModelLoader:
    """Builds a KerasGraph from an artifact and injects its decoded weights.

    The live graph is the authority on shapes, the artifact on values. A
    layer is only written when every one of its weights decodes to the exact
    element count of the target; otherwise it keeps its default weights and
    the reason lands in the LoadReport. A buffer that does not decode at all
    raises DecodeError.
    """

    def __init__(self, *, seed: int = 0) -> None:
        self._seed = seed
        self._logger = get_logger()

    def load(self, artifact: ModelArtifact) -> LoadResult:
        model = build_graph(artifact.architecture, seed=self._seed)
        reports: list[LayerLoadReport] = []
        for name, params in artifact.trainable_params.items():
            reason = self._apply_layer(model.get_layer(name), params)
            reports.append(LayerLoadReport(layer=name, applied=reason == "applied", reason=reason))
            if reason != "applied":
                log_event(
                    "layer_weights_skipped",
                    {"graph": model.graph_name, "layer": name, "reason": reason},
                    level=logging.WARNING,
                )
        mentioned = set(artifact.trainable_params)
        for layer in model.layers:
            if not isinstance(layer, GraphLayer) or layer.layer_name in mentioned:
                continue
            if layer.weights:
                reports.append(
                    LayerLoadReport(layer=layer.layer_name, applied=False, reason="not_in_artifact")
                )
        report = LoadReport(layers=tuple(reports))
        log_event(
            "model_loaded",
            {
                "graph": model.graph_name,
                "layers_applied": len(report.applied),
                "skipped": len(report.skipped),
            },
        )
        return LoadResult(model=model, report=report)

    def _apply_layer(self, layer: GraphLayer | None, params: LayerWeights) -> LoadReason:
        if layer is None:
            return "unknown_layer"
        current = layer.weights
        if not current:
            return "no_weights"
        if min(len(current), 2) != len(current):
            # Only kernel and bias are carried; e.g. batch norm exposes four
            return "weight_count_mismatch"
        try:
            new = _new_weights(current, params)
        except ShapeMismatchError as exc:
            self._logger.warning("layer_shape_mismatch layer=%s detail=%s", layer.layer_name, exc)
            return "shape_mismatch"
        except DecodeError as exc:
            # Corrupt buffers fail the whole load
            self._logger.error("layer_decode_failed layer=%s detail=%s", layer.layer_name, exc)
            raise
        layer.set_weights(new)
        return "applied"


def _new_weights(current: list[Tensor], params: LayerWeights) -> list[Tensor]:
    # Decode kernel then bias before any reshape
    flats = [decode_float32(params.weights), decode_float32(params.bias)][: len(current)]
    return [to_shape(flat, cur.shape) for flat, cur in zip(flats, current, strict=True)]
