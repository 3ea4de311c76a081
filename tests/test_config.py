# tests/test_config.py
import pytest
from pydantic import ValidationError

from exprdiag.config import (CONFIG_ENV_VAR, DiagnosticsConfig, SamplingDistribution, SimulationSettings,
                             _find_config_in_argv, find_config_path, load_config, read_config_file)
from exprdiag.errors import ConfigError, UnknownAxisError, format_validation_error


def test_defaults():
    config = DiagnosticsConfig()
    assert config.simulation.sample_count == 10000
    assert config.simulation.confidence_level == 0.95
    assert config.simulation.distribution == SamplingDistribution.Uniform
    assert config.simulation.store_contexts
    assert config.blockers.near_miss_epsilon == 0.05
    assert config.fit.gap_distance_threshold == 0.5
    assert config.sensitivity.steps == 9


def test_read_config_override(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("simulation:\n  sample_count: 500\n  distribution: gaussian\n  seed: 3\n"
                    "blockers:\n  max_blockers: 2\n", encoding="utf-8")
    config = read_config_file(str(path))
    assert config.simulation.sample_count == 500
    assert config.simulation.distribution == SamplingDistribution.Gaussian
    assert config.simulation.seed == 3
    assert config.blockers.max_blockers == 2
    # untouched sections keep their defaults
    assert config.fit.leaderboard_size == 10


def test_empty_config_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("", encoding="utf-8")
    assert read_config_file(str(path)) == DiagnosticsConfig()


def test_missing_config_file(tmp_path):
    with pytest.raises(ConfigError, match="not found"):
        read_config_file(str(tmp_path / "nope.yaml"))


def test_invalid_yaml(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("simulation: [unclosed\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="Invalid YAML"):
        read_config_file(str(path))


def test_non_mapping_root(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("- 1\n- 2\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="mapping"):
        read_config_file(str(path))


def test_validation_error_is_formatted(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("simulation:\n  sample_count: 0\n", encoding="utf-8")
    with pytest.raises(ConfigError) as e:
        read_config_file(str(path))
    msg = str(e.value)
    assert msg.startswith("Configuration validation failed")
    assert "Error in simulation -> sample_count" in msg


def test_format_validation_error():
    with pytest.raises(ValidationError) as e:
        SimulationSettings(sample_count=-1, confidence_level=2)
    lines = format_validation_error(e.value).splitlines()
    assert len(lines) == 2
    assert all(l.startswith("Error in ") for l in lines)


def test_find_config_in_argv():
    assert _find_config_in_argv(["prog", "--exprdiag_config", "a.yaml"]) == "a.yaml"
    assert _find_config_in_argv(["prog", "-exprdiag_config", "b.yaml"]) == "b.yaml"
    assert _find_config_in_argv(["prog", "--exprdiag_config", "--seed"]) is None
    assert _find_config_in_argv(["prog", "--exprdiag_config"]) is None
    assert _find_config_in_argv(["prog"]) is None


def test_find_config_path(monkeypatch, tmp_path):
    monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
    assert find_config_path(["prog"]) == ("config.yaml", False)

    monkeypatch.setenv(CONFIG_ENV_VAR, str(tmp_path / "env.yaml"))
    path, explicit = find_config_path(["prog"])
    assert path.endswith("env.yaml")
    assert explicit

    # argv wins over the environment
    assert find_config_path(["prog", "--exprdiag_config", "cli.yaml"]) == ("cli.yaml", True)


def test_load_config_falls_back_to_defaults(monkeypatch, tmp_path):
    monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
    monkeypatch.chdir(tmp_path)
    assert load_config(argv=["prog"]) == DiagnosticsConfig()


def test_load_config_explicit_missing(monkeypatch, tmp_path):
    monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
    monkeypatch.chdir(tmp_path)
    with pytest.raises(ConfigError, match=CONFIG_ENV_VAR):
        load_config(argv=["prog", "--exprdiag_config", "missing.yaml"])
    monkeypatch.setenv(CONFIG_ENV_VAR, str(tmp_path / "missing.yaml"))
    with pytest.raises(ConfigError):
        load_config(argv=["prog"])


def test_load_config_from_working_directory(monkeypatch, tmp_path):
    monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
    monkeypatch.chdir(tmp_path)
    (tmp_path / "config.yaml").write_text("sensitivity:\n  steps: 3\n", encoding="utf-8")
    assert load_config(argv=["prog"]).sensitivity.steps == 3


def test_unknown_axis_error_message():
    err = UnknownAxisError("zest", "mood regime")
    assert str(err) == "Unknown axis 'zest' (mood regime)"
    assert isinstance(err, KeyError)


def test_simulation_overrides_are_validated():
    config = DiagnosticsConfig()
    updated = config.with_simulation_overrides(sample_count=250, seed=None)
    assert updated.simulation.sample_count == 250
    assert updated.simulation.seed is None
    # the source config is left untouched
    assert config.simulation.sample_count == 10000
    with pytest.raises(ConfigError, match="Error in sample_count"):
        config.with_simulation_overrides(sample_count=0)
