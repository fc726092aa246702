from __future__ import annotations

import json
from pathlib import Path

import pytest

from notescan_ai.errors import ArtifactError
from notescan_ai.inference.artifact import ModelArtifact


def test_from_json_reads_params_and_defaults_missing_bias() -> None:
    raw = {
        "architecture": {"class_name": "Sequential", "config": {"layers": []}},
        "trainable_params": {"dense": {"weights": ["AAAAAA=="]}},
    }
    art = ModelArtifact.from_json(json.dumps(raw))
    assert art.trainable_params["dense"].weights == ("AAAAAA==",)
    assert art.trainable_params["dense"].bias == ()
    assert art.to_dict()["trainable_params"] == {"dense": {"weights": ["AAAAAA=="], "bias": []}}


def test_missing_trainable_params_is_empty() -> None:
    art = ModelArtifact.from_dict({"architecture": {"class_name": "Sequential"}})
    assert dict(art.trainable_params) == {}


@pytest.mark.parametrize(
    "text",
    [
        "{not json",
        "[1, 2]",
        json.dumps({"trainable_params": {}}),
        json.dumps({"architecture": {}, "trainable_params": []}),
        json.dumps({"architecture": {}, "trainable_params": {"a": 1}}),
        json.dumps({"architecture": {}, "trainable_params": {"a": {"weights": [1]}}}),
    ],
)
def test_malformed_artifacts_raise(text: str) -> None:
    with pytest.raises(ArtifactError):
        ModelArtifact.from_json(text)


def test_from_path_missing_file(tmp_path: Path) -> None:
    with pytest.raises(ArtifactError):
        ModelArtifact.from_path(tmp_path / "absent.json")


def test_from_path_reads_file(tmp_path: Path) -> None:
    p = tmp_path / "ocr_model.json"
    p.write_text(json.dumps({"architecture": {"class_name": "Sequential"}}), encoding="utf-8")
    art = ModelArtifact.from_path(p)
    assert art.architecture["class_name"] == "Sequential"
