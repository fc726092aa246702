"""Runnable torch graphs built from Keras-style Sequential topologies.

Tensors flow channels-last (NHWC) between layers and weights are held in the
Keras layout (conv kernels HWIO, dense kernels [in, out]) so decoded artifact
buffers map onto live weights without transposition.
"""

from __future__ import annotations

import math
from collections.abc import Callable, Mapping, Sequence
from typing import Final

import torch
import torch.nn.functional as F
from torch import Tensor, nn

from ..errors import ArtifactError, ModelNotInitializedError, ShapeMismatchError

Shape = tuple[int, ...]
Activation = Callable[[Tensor], Tensor]


def _identity(x: Tensor) -> Tensor:
    return x


def _softmax(x: Tensor) -> Tensor:
    return F.softmax(x, dim=-1)


_ACTIVATIONS: Final[dict[str, Activation]] = {
    "linear": _identity,
    "relu": F.relu,
    "relu6": F.relu6,
    "elu": F.elu,
    "selu": F.selu,
    "softplus": F.softplus,
    "sigmoid": torch.sigmoid,
    "tanh": torch.tanh,
    "softmax": _softmax,
}


class GraphLayer(nn.Module):
    """One named layer; exposes its weights in Keras order."""

    weight_names: tuple[str, ...] = ()

    def __init__(self, layer_name: str, in_shape: Shape) -> None:
        super().__init__()
        self.layer_name = layer_name
        self.in_shape = in_shape
        self.out_shape = in_shape

    @property
    def weights(self) -> list[Tensor]:
        return [getattr(self, n) for n in self.weight_names]

    def set_weights(self, new: Sequence[Tensor]) -> None:
        current = self.weights
        if len(new) != len(current):
            raise ShapeMismatchError(
                f"layer {self.layer_name} has {len(current)} weights, got {len(new)}"
            )
        for cur, t in zip(current, new, strict=True):
            if tuple(cur.shape) != tuple(t.shape):
                raise ShapeMismatchError(
                    f"layer {self.layer_name}: shape {list(t.shape)} != {list(cur.shape)}"
                )
        # Validated above, so every copy succeeds or none runs
        with torch.no_grad():
            for cur, t in zip(current, new, strict=True):
                cur.copy_(t.to(dtype=cur.dtype))

    def _param(self, name: str, data: Tensor) -> None:
        self.register_parameter(name, nn.Parameter(data, requires_grad=False))


class InputLayer(GraphLayer):
    def forward(self, x: Tensor) -> Tensor:
        return x


class Conv2D(GraphLayer):
    def __init__(
        self,
        layer_name: str,
        in_shape: Shape,
        *,
        filters: int,
        kernel_size: tuple[int, int],
        strides: tuple[int, int],
        padding: str,
        activation: Activation,
        use_bias: bool,
        gen: torch.Generator,
    ) -> None:
        super().__init__(layer_name, in_shape)
        if len(in_shape) != 3:
            raise ArtifactError(f"Conv2D {layer_name} needs HWC input, got {list(in_shape)}")
        h, w, cin = in_shape
        kh, kw = kernel_size
        self.strides = strides
        self.activation = activation
        (oh, pad_h), (ow, pad_w) = (
            _window(h, kh, strides[0], padding),
            _window(w, kw, strides[1], padding),
        )
        self.pad = (pad_w[0], pad_w[1], pad_h[0], pad_h[1])
        self.out_shape = (oh, ow, filters)
        fan_in, fan_out = kh * kw * cin, kh * kw * filters
        self._param("kernel", _glorot((kh, kw, cin, filters), fan_in, fan_out, gen))
        names = ["kernel"]
        if use_bias:
            self._param("bias", torch.zeros(filters, dtype=torch.float32))
            names.append("bias")
        self.weight_names = tuple(names)

    def forward(self, x: Tensor) -> Tensor:
        y = x.permute(0, 3, 1, 2)
        if any(self.pad):
            y = F.pad(y, self.pad)
        bias = self.bias if "bias" in self.weight_names else None
        y = F.conv2d(y, self.kernel.permute(3, 2, 0, 1), bias, stride=self.strides)
        return self.activation(y.permute(0, 2, 3, 1))


class Pooling2D(GraphLayer):
    def __init__(
        self,
        layer_name: str,
        in_shape: Shape,
        *,
        mode: str,
        pool_size: tuple[int, int],
        strides: tuple[int, int],
        padding: str,
    ) -> None:
        super().__init__(layer_name, in_shape)
        if len(in_shape) != 3:
            raise ArtifactError(f"pooling {layer_name} needs HWC input, got {list(in_shape)}")
        if mode == "avg" and padding == "same":
            raise ArtifactError(f"AveragePooling2D {layer_name}: 'same' padding is not supported")
        h, w, c = in_shape
        self.mode = mode
        self.pool_size = pool_size
        self.strides = strides
        (oh, pad_h), (ow, pad_w) = (
            _window(h, pool_size[0], strides[0], padding),
            _window(w, pool_size[1], strides[1], padding),
        )
        self.pad = (pad_w[0], pad_w[1], pad_h[0], pad_h[1])
        self.out_shape = (oh, ow, c)

    def forward(self, x: Tensor) -> Tensor:
        y = x.permute(0, 3, 1, 2)
        if self.mode == "max":
            if any(self.pad):
                y = F.pad(y, self.pad, value=float("-inf"))
            y = F.max_pool2d(y, self.pool_size, self.strides)
        else:
            y = F.avg_pool2d(y, self.pool_size, self.strides)
        return y.permute(0, 2, 3, 1)


class Flatten(GraphLayer):
    def __init__(self, layer_name: str, in_shape: Shape) -> None:
        super().__init__(layer_name, in_shape)
        self.out_shape = (math.prod(in_shape),)

    def forward(self, x: Tensor) -> Tensor:
        # Row-major over NHWC, the order Keras flattens in
        return x.reshape(x.shape[0], -1)


class Dense(GraphLayer):
    def __init__(
        self,
        layer_name: str,
        in_shape: Shape,
        *,
        units: int,
        activation: Activation,
        use_bias: bool,
        gen: torch.Generator,
    ) -> None:
        super().__init__(layer_name, in_shape)
        fan_in = in_shape[-1]
        self.activation = activation
        self.out_shape = (*in_shape[:-1], units)
        self._param("kernel", _glorot((fan_in, units), fan_in, units, gen))
        names = ["kernel"]
        if use_bias:
            self._param("bias", torch.zeros(units, dtype=torch.float32))
            names.append("bias")
        self.weight_names = tuple(names)

    def forward(self, x: Tensor) -> Tensor:
        y = x @ self.kernel
        if "bias" in self.weight_names:
            y = y + self.bias
        return self.activation(y)


class Dropout(GraphLayer):
    def __init__(self, layer_name: str, in_shape: Shape, *, rate: float) -> None:
        super().__init__(layer_name, in_shape)
        self.rate = rate

    def forward(self, x: Tensor) -> Tensor:
        # Inference only
        return x


class ActivationLayer(GraphLayer):
    def __init__(self, layer_name: str, in_shape: Shape, *, activation: Activation) -> None:
        super().__init__(layer_name, in_shape)
        self.activation = activation

    def forward(self, x: Tensor) -> Tensor:
        return self.activation(x)


class BatchNormalization(GraphLayer):
    def __init__(
        self, layer_name: str, in_shape: Shape, *, epsilon: float, center: bool, scale: bool
    ) -> None:
        super().__init__(layer_name, in_shape)
        n = in_shape[-1]
        self.epsilon = epsilon
        names: list[str] = []
        if scale:
            self._param("gamma", torch.ones(n, dtype=torch.float32))
            names.append("gamma")
        if center:
            self._param("beta", torch.zeros(n, dtype=torch.float32))
            names.append("beta")
        self._param("moving_mean", torch.zeros(n, dtype=torch.float32))
        self._param("moving_variance", torch.ones(n, dtype=torch.float32))
        names += ["moving_mean", "moving_variance"]
        self.weight_names = tuple(names)

    def forward(self, x: Tensor) -> Tensor:
        y = (x - self.moving_mean) / torch.sqrt(self.moving_variance + self.epsilon)
        if "gamma" in self.weight_names:
            y = y * self.gamma
        if "beta" in self.weight_names:
            y = y + self.beta
        return y


class KerasGraph(nn.Module):
    """Sequential graph with a name -> layer mapping validated at build time."""

    def __init__(self, name: str, input_shape: Shape, layers: Sequence[GraphLayer]) -> None:
        super().__init__()
        self.graph_name = name
        self._input_shape = input_shape
        self.layers = nn.ModuleList(layers)
        by_name: dict[str, GraphLayer] = {}
        for layer in layers:
            if layer.layer_name in by_name:
                raise ArtifactError(f"duplicate layer name {layer.layer_name!r}")
            by_name[layer.layer_name] = layer
        self._by_name = by_name
        self._disposed = False
        self.eval()

    @property
    def input_shape(self) -> tuple[int | None, ...]:
        return (None, *self._input_shape)

    @property
    def output_shape(self) -> tuple[int | None, ...]:
        last = self.layers[-1].out_shape if len(self.layers) else self._input_shape
        return (None, *last)

    @property
    def disposed(self) -> bool:
        return self._disposed

    @property
    def layer_names(self) -> tuple[str, ...]:
        return tuple(self._by_name)

    def get_layer(self, name: str) -> GraphLayer | None:
        return self._by_name.get(name)

    def forward(self, x: Tensor) -> Tensor:
        if self._disposed:
            raise ModelNotInitializedError(f"{self.graph_name} model was disposed")
        for layer in self.layers:
            x = layer(x)
        return x

    def dispose(self) -> None:
        self.layers = nn.ModuleList()
        self._by_name = {}
        self._disposed = True


def build_graph(topology: Mapping[str, object], *, seed: int = 0) -> KerasGraph:
    """Build a KerasGraph from a Sequential topology description.

    Accepts the plain `{"class_name": "Sequential", "config": ...}` form, the
    same wrapped in `model_config`, and the legacy list-of-layers config.
    Default weights come from a generator seeded with `seed`, so two builds
    of one topology are identical.
    """
    name, specs, declared_input = _sequential_specs(topology)
    gen = torch.Generator().manual_seed(seed)
    shape = declared_input or _input_shape_from(specs)
    layers: list[GraphLayer] = []
    for i, spec in enumerate(specs):
        layer = _build_layer(spec, i, shape, gen)
        layers.append(layer)
        shape = layer.out_shape
    return KerasGraph(name, layers[0].in_shape if layers else shape, layers)


def _sequential_specs(
    topology: Mapping[str, object],
) -> tuple[str, list[Mapping[str, object]], Shape | None]:
    topo: object = topology.get("model_config", topology)
    if not isinstance(topo, Mapping):
        raise ArtifactError("model_config must be an object")
    class_name = topo.get("class_name")
    if class_name != "Sequential":
        raise ArtifactError(f"unsupported model class {class_name!r}")
    config = topo.get("config")
    name = "sequential"
    declared: Shape | None = None
    if isinstance(config, Mapping):
        name = str(config.get("name", name))
        build_shape = config.get("build_input_shape")
        if isinstance(build_shape, list) and len(build_shape) > 1:
            declared = _dims(build_shape[1:], "build_input_shape")
        layers_raw = config.get("layers")
    else:
        layers_raw = config
    if not isinstance(layers_raw, list) or not layers_raw:
        raise ArtifactError("Sequential topology has no layers")
    specs: list[Mapping[str, object]] = []
    for raw in layers_raw:
        if not isinstance(raw, Mapping):
            raise ArtifactError("layer entries must be objects")
        specs.append(raw)
    return name, specs, declared


def _input_shape_from(specs: Sequence[Mapping[str, object]]) -> Shape:
    cfg = _cfg(specs[0])
    for key in ("batch_input_shape", "batch_shape"):
        raw = cfg.get(key)
        if isinstance(raw, list) and len(raw) > 1:
            return _dims(raw[1:], key)
    raise ArtifactError("topology does not declare an input shape")


def _build_layer(
    spec: Mapping[str, object], index: int, in_shape: Shape, gen: torch.Generator
) -> GraphLayer:
    class_name = str(spec.get("class_name", ""))
    cfg = _cfg(spec)
    name = str(cfg.get("name") or f"{class_name.lower()}_{index}")
    fmt = cfg.get("data_format")
    if fmt not in (None, "channels_last"):
        raise ArtifactError(f"layer {name}: data_format {fmt!r} is not supported")

    if class_name == "InputLayer":
        return InputLayer(name, in_shape)
    if class_name == "Conv2D":
        if _pair(cfg.get("dilation_rate", 1), "dilation_rate") != (1, 1):
            raise ArtifactError(f"layer {name}: dilated convolutions are not supported")
        return Conv2D(
            name,
            in_shape,
            filters=_positive_int(cfg, "filters", name),
            kernel_size=_pair(cfg.get("kernel_size"), "kernel_size"),
            strides=_pair(cfg.get("strides", 1), "strides"),
            padding=_padding(cfg),
            activation=_activation(cfg, name),
            use_bias=bool(cfg.get("use_bias", True)),
            gen=gen,
        )
    if class_name in ("MaxPooling2D", "AveragePooling2D"):
        pool = _pair(cfg.get("pool_size", 2), "pool_size")
        strides_raw = cfg.get("strides")
        return Pooling2D(
            name,
            in_shape,
            mode="max" if class_name == "MaxPooling2D" else "avg",
            pool_size=pool,
            strides=pool if strides_raw is None else _pair(strides_raw, "strides"),
            padding=_padding(cfg),
        )
    if class_name == "Flatten":
        return Flatten(name, in_shape)
    if class_name == "Dense":
        return Dense(
            name,
            in_shape,
            units=_positive_int(cfg, "units", name),
            activation=_activation(cfg, name),
            use_bias=bool(cfg.get("use_bias", True)),
            gen=gen,
        )
    if class_name == "Dropout":
        return Dropout(name, in_shape, rate=float(str(cfg.get("rate", 0.0))))
    if class_name == "Activation":
        return ActivationLayer(name, in_shape, activation=_activation(cfg, name))
    if class_name == "BatchNormalization":
        axis = cfg.get("axis", -1)
        if axis not in (-1, len(in_shape), [-1], [len(in_shape)]):
            raise ArtifactError(f"layer {name}: only last-axis batch norm is supported")
        return BatchNormalization(
            name,
            in_shape,
            epsilon=float(str(cfg.get("epsilon", 1e-3))),
            center=bool(cfg.get("center", True)),
            scale=bool(cfg.get("scale", True)),
        )
    raise ArtifactError(f"unsupported layer class {class_name!r} ({name})")


def _cfg(spec: Mapping[str, object]) -> Mapping[str, object]:
    cfg = spec.get("config", {})
    if not isinstance(cfg, Mapping):
        raise ArtifactError("layer config must be an object")
    return cfg


def _dims(raw: Sequence[object], what: str) -> Shape:
    out: list[int] = []
    for d in raw:
        if not isinstance(d, int) or isinstance(d, bool) or d <= 0:
            raise ArtifactError(f"{what} must hold positive integers, got {list(raw)}")
        out.append(d)
    return tuple(out)


def _positive_int(cfg: Mapping[str, object], key: str, layer: str) -> int:
    raw = cfg.get(key)
    if not isinstance(raw, int) or isinstance(raw, bool) or raw <= 0:
        raise ArtifactError(f"layer {layer}: {key} must be a positive integer, got {raw!r}")
    return raw


def _pair(raw: object, what: str) -> tuple[int, int]:
    if isinstance(raw, int) and not isinstance(raw, bool):
        return raw, raw
    if isinstance(raw, list | tuple) and len(raw) == 2:
        a, b = _dims(raw, what)
        return a, b
    raise ArtifactError(f"{what} must be an int or a pair, got {raw!r}")


def _padding(cfg: Mapping[str, object]) -> str:
    padding = str(cfg.get("padding", "valid")).lower()
    if padding not in ("valid", "same"):
        raise ArtifactError(f"unsupported padding {padding!r}")
    return padding


def _activation(cfg: Mapping[str, object], layer: str) -> Activation:
    raw = cfg.get("activation") or "linear"
    fn = _ACTIVATIONS.get(str(raw).lower()) if isinstance(raw, str) else None
    if fn is None:
        raise ArtifactError(f"layer {layer}: unsupported activation {raw!r}")
    return fn


def _window(size: int, k: int, s: int, padding: str) -> tuple[int, tuple[int, int]]:
    """Output length and (before, after) padding for one spatial axis, TF rules."""
    if padding == "valid":
        if size < k:
            raise ArtifactError(f"window {k} larger than input {size}")
        return (size - k) // s + 1, (0, 0)
    out = math.ceil(size / s)
    total = max((out - 1) * s + k - size, 0)
    return out, (total // 2, total - total // 2)


def _glorot(shape: Shape, fan_in: int, fan_out: int, gen: torch.Generator) -> Tensor:
    limit = math.sqrt(6.0 / float(fan_in + fan_out))
    return (torch.rand(shape, generator=gen, dtype=torch.float32) * 2.0 - 1.0) * limit
