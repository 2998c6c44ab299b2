# tests/unit/test_config.py

import pickle
from dataclasses import FrozenInstanceError
from pathlib import Path

import pytest

from forest4d.config import PipelineConfig
from forest4d.exceptions import ConfigError

def test_defaults(tmp_path):
    config = PipelineConfig(output_root=str(tmp_path), year=2021)

    assert config.output_root == tmp_path
    assert config.overwrite is True
    assert config.metric_resolution == 10.0
    assert config.base_resolution == 1.0
    assert config.chunk_size == 0
    assert config.buffer == 20.0
    assert config.workers == 4
    assert config.correction_path is None
    assert not config.any_metric

def test_config_is_immutable_and_picklable(tmp_path):
    config = PipelineConfig(output_root=tmp_path, year=2021)

    with pytest.raises(FrozenInstanceError):
        config.year = 2022

    assert pickle.loads(pickle.dumps(config)) == config

def test_with_options_returns_a_new_config(tmp_path):
    config = PipelineConfig(output_root=tmp_path, year=2021)
    other = config.with_options(overwrite=False)

    assert config.overwrite is True
    assert other.overwrite is False

@pytest.mark.parametrize("bad", [
    {"year": ""},
    {"metric_resolution": 0},
    {"base_resolution": -1},
    {"chunk_size": -10},
    {"buffer": -1},
    {"workers": 0},
    {"max_edge": -3},
])
def test_invalid_values_raise(tmp_path, bad):
    values = {"output_root": tmp_path, "year": 2021}
    values.update(bad)
    with pytest.raises(ConfigError):
        PipelineConfig(**values)

def test_from_mapping_rejects_unknown_keys(tmp_path):
    with pytest.raises(ConfigError, match="compute_everything"):
        PipelineConfig.from_mapping({"output_root": tmp_path, "year": 2021, "compute_everything": True})

def test_from_mapping_requires_output_and_year(tmp_path):
    with pytest.raises(ConfigError, match="year"):
        PipelineConfig.from_mapping({"output_root": tmp_path})

def test_from_yaml_reads_nested_section_and_applies_overrides(tmp_path):
    path = tmp_path / "run.yaml"
    path.write_text(
        "pipeline:\n"
        "  output_root: out\n"
        "  year: 2019\n"
        "  compute_rumple: true\n"
        "  workers: 2\n"
        "  correction_path: geoid/g2018.gtx\n"
    )

    config = PipelineConfig.from_yaml(path, workers=8, year=None)

    assert config.output_root == Path("out")
    assert config.year == 2019
    assert config.compute_rumple is True
    assert config.workers == 8
    assert config.correction_path == Path("geoid/g2018.gtx")

def test_from_yaml_malformed_document(tmp_path):
    path = tmp_path / "broken.yaml"
    path.write_text("pipeline: [unclosed\n")

    with pytest.raises(ConfigError):
        PipelineConfig.from_yaml(path)

def test_from_yaml_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        PipelineConfig.from_yaml(tmp_path / "missing.yaml")
