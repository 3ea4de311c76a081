# tests/test_pipeline.py
import json
from pathlib import Path

import pytest

from exprdiag.cli import main
from exprdiag.config import DiagnosticsConfig, SimulationSettings
from exprdiag.errors import ConfigError, UnknownAxisError
from exprdiag.pipeline import DiagnosticsPipeline, DiagnosticsReport, read_document
from exprdiag.report import SECTION_TITLES

from conftest import expression, leaf

EXAMPLES = Path(__file__).resolve().parent.parent / "examples"
EMOTIONS = EXAMPLES / "emotion_prototypes.json"
SEXUAL = EXAMPLES / "sexual_prototypes.yaml"
QUIET_TRIUMPH = EXAMPLES / "expression_quiet_triumph.json"
REGIME = EXAMPLES / "regime_positive.yaml"


def _config(n=800, **kwargs):
    return DiagnosticsConfig(simulation=SimulationSettings(sample_count=n, seed=11, **kwargs))


@pytest.fixture(scope="module")
def pipeline():
    return DiagnosticsPipeline.from_files(EMOTIONS, SEXUAL, config=_config())


@pytest.fixture(scope="module")
def quiet_triumph(pipeline):
    return pipeline.run(pipeline.load_expression(QUIET_TRIUMPH), pipeline.load_regime(REGIME))


def test_read_document(tmp_path):
    assert read_document(REGIME) == {"valence": {"min": 0.2}, "threat": {"max": 0.3}}
    assert read_document(QUIET_TRIUMPH)["id"] == "quiet_triumph"
    with pytest.raises(ConfigError):
        read_document(tmp_path / "absent.json")


def test_missing_prototype_table(tmp_path):
    with pytest.raises(ConfigError):
        DiagnosticsPipeline.from_files(tmp_path / "absent.json")


def test_run_produces_full_report(quiet_triumph):
    assert isinstance(quiet_triumph, DiagnosticsReport)
    lines = quiet_triumph.markdown.splitlines()
    assert lines[0] == "# Expression Diagnostics: quiet_triumph"
    positions = [lines.index(f"## {title}") for title in SECTION_TITLES]
    assert positions == sorted(positions)
    sim = quiet_triumph.simulation
    assert sim.sample_count == 800
    assert 0 <= sim.trigger_rate <= 1
    assert sim.confidence_interval.low <= sim.trigger_rate <= sim.confidence_interval.high


def test_run_covers_every_prototype_leaf(quiet_triumph):
    analysed = {a.prototype_id for a in quiet_triumph.axis_analyses}
    assert analysed == {"pride", "joy", "calm"}
    assert quiet_triumph.fit is not None
    assert quiet_triumph.implied_prototype is not None
    assert quiet_triumph.prototype_gaps is not None
    assert quiet_triumph.facts.sample_count == 800


def test_sensitivity_only_for_top_leaf_blockers(quiet_triumph):
    ids = [b.clause_id for b in quiet_triumph.blockers[:3]]
    for clause_id, grids in quiet_triumph.sensitivity.items():
        assert clause_id in ids
        assert [g.kind for g in grids] == ["clause", "expression"]


def test_run_is_deterministic(pipeline, quiet_triumph):
    again = pipeline.run(pipeline.load_expression(QUIET_TRIUMPH), pipeline.load_regime(REGIME))
    assert again.markdown == quiet_triumph.markdown


def test_run_accepts_raw_definitions(registry):
    pipeline = DiagnosticsPipeline(registry, config=_config(n=400))
    report = pipeline.run(expression(leaf("moodAxes.valence", ">=", 40), leaf("emotions.joy", ">=", 0.6)),
                          regime={"valence": {"min": 0.4}})
    assert report.simulation.regime.bounds["valence"].min == pytest.approx(0.4)
    # without a regime the top-level mood clause implies one
    inferred = pipeline.run(expression(leaf("moodAxes.valence", ">=", 40), leaf("emotions.joy", ">=", 0.6)))
    assert inferred.simulation.regime.bounds["valence"].min == pytest.approx(0.4)


def test_run_without_stored_contexts(registry):
    pipeline = DiagnosticsPipeline(registry, config=_config(n=300, store_contexts=False))
    report = pipeline.run(expression(leaf("emotions.joy", ">=", 0.6)))
    assert report.fit is None
    assert report.sensitivity == {}
    assert "No prototype fit analysis available." in report.markdown


def test_unknown_prototype_reference(registry):
    pipeline = DiagnosticsPipeline(registry, config=_config(n=100))
    with pytest.raises(UnknownAxisError):
        pipeline.run(expression(leaf("emotions.wistful", ">=", 0.5)))


# ---------- cli ----------
@pytest.fixture
def cli_config(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(f"simulation:\n  sample_count: 300\n  seed: 5\n"
                    f"logging:\n  log_dir: {tmp_path.as_posix()}/logs\n  console: false\n", encoding="utf-8")
    return path


def test_cli_writes_report_and_json(tmp_path, cli_config):
    out = tmp_path / "report.md"
    dump = tmp_path / "report.json"
    code = main([str(QUIET_TRIUMPH), "--emotions", str(EMOTIONS), "--sexual", str(SEXUAL), "--regime", str(REGIME),
                 "-n", "200", "-o", str(out), "--json", str(dump), "--exprdiag_config", str(cli_config)])
    assert code == 0
    assert out.read_text(encoding="utf-8").startswith("# Expression Diagnostics: quiet_triumph")
    data = json.loads(dump.read_text(encoding="utf-8"))
    assert data["simulation"]["sample_count"] == 200
    assert "markdown" not in data
    assert "stored_contexts" not in data["simulation"]


def test_cli_prints_to_stdout(capsys, cli_config):
    code = main([str(QUIET_TRIUMPH), "--emotions", str(EMOTIONS), "--exprdiag_config", str(cli_config)])
    assert code == 0
    assert "## Recommendations" in capsys.readouterr().out


def test_cli_bad_expression(tmp_path, cli_config, capsys):
    bad = tmp_path / "bad.json"
    bad.write_text(json.dumps({"id": "bad", "prerequisites": [{"logic": {">=": [{"var": "emotions.joy"}]}}]}),
                   encoding="utf-8")
    assert main([str(bad), "--emotions", str(EMOTIONS), "--exprdiag_config", str(cli_config)]) == 1
    assert capsys.readouterr().err.startswith("error: ")


def test_cli_bad_config(tmp_path, capsys):
    config = tmp_path / "config.yaml"
    config.write_text("simulation:\n  sample_count: -5\n", encoding="utf-8")
    assert main([str(QUIET_TRIUMPH), "--exprdiag_config", str(config)]) == 2
    assert "Configuration validation failed" in capsys.readouterr().err


def test_cli_malformed_expression_file(tmp_path, cli_config, capsys):
    bad = tmp_path / "broken.json"
    bad.write_text('{"id": "broken", "prerequisites": [', encoding="utf-8")
    assert main([str(bad), "--emotions", str(EMOTIONS), "--exprdiag_config", str(cli_config)]) == 2
    assert "Cannot parse" in capsys.readouterr().err


def test_cli_invalid_regime_bound(tmp_path, cli_config, capsys):
    regime = tmp_path / "regime.yaml"
    regime.write_text("valence:\n  min: high\n", encoding="utf-8")
    assert main([str(QUIET_TRIUMPH), "--emotions", str(EMOTIONS), "--regime", str(regime),
                 "--exprdiag_config", str(cli_config)]) == 2
    assert "Invalid regime bound for 'valence'" in capsys.readouterr().err


@pytest.mark.parametrize("flags", [["-n", "0"], ["--samples", "-3"]])
def test_cli_rejects_bad_sample_count(cli_config, capsys, flags):
    assert main([str(QUIET_TRIUMPH), "--emotions", str(EMOTIONS), *flags, "--exprdiag_config", str(cli_config)]) == 2
    assert "Error in sample_count" in capsys.readouterr().err


def test_read_document_parse_errors(tmp_path):
    broken_json = tmp_path / "broken.json"
    broken_json.write_text("{not json", encoding="utf-8")
    with pytest.raises(ConfigError, match="Cannot parse"):
        read_document(broken_json)
    broken_yaml = tmp_path / "broken.yaml"
    broken_yaml.write_text("valence: [unclosed\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="Cannot parse"):
        read_document(broken_yaml)


def test_malformed_prototype_tables(tmp_path):
    broken = tmp_path / "emotions.json"
    broken.write_text('{"entries": {"joy": ', encoding="utf-8")
    with pytest.raises(ConfigError, match="Cannot parse prototype table"):
        DiagnosticsPipeline.from_files(broken)
    bad_weights = tmp_path / "weights.json"
    bad_weights.write_text(json.dumps({"entries": {"joy": {"weights": {"valence": "lots"}}}}), encoding="utf-8")
    with pytest.raises(ConfigError, match="Invalid prototype 'joy'"):
        DiagnosticsPipeline.from_files(bad_weights)
    not_a_mapping = tmp_path / "list.json"
    not_a_mapping.write_text(json.dumps({"entries": {"joy": [1, 2]}}), encoding="utf-8")
    with pytest.raises(ConfigError, match="must be a mapping"):
        DiagnosticsPipeline.from_files(not_a_mapping)
