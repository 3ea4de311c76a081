# tests/test_blockers.py
import pytest

from exprdiag.blockers import BlockerAction, BlockerAnalyzer, BlockerSeverity, Tunability, tunability_for
from exprdiag.config import BlockerSettings
from exprdiag.expression import Expression
from exprdiag.state import MoodRegime

from conftest import expression, leaf


@pytest.fixture(scope="module")
def analyzer(constraint_analyzer, registry):
    return BlockerAnalyzer(constraint_analyzer, registry)


def _run(make_engine, *logic, regime=None, n=2000):
    return make_engine(sample_count=n).run(Expression.from_definition(expression(*logic)), regime=regime)


def test_tunability_bands():
    s = BlockerSettings()
    assert tunability_for(0.2, s) == Tunability.High
    assert tunability_for(0.05, s) == Tunability.Moderate
    assert tunability_for(0.02, s) == Tunability.Moderate
    assert tunability_for(0.01, s) == Tunability.Low
    assert tunability_for(None, s) == Tunability.Unknown


def test_ceiling_blocker(make_engine, analyzer):
    result = _run(make_engine, leaf("emotions.faint", ">=", 0.8))
    [blocker] = analyzer.rank_blockers(result)
    ceiling = blocker.advanced_analysis.ceiling_analysis
    assert ceiling.status == "ceiling_detected"
    assert ceiling.achievable is False
    assert ceiling.achievable_max == pytest.approx(0.5)
    assert "[CEILING]" in blocker.flags
    assert blocker.severity == BlockerSeverity.Critical
    assert blocker.recommended_action == BlockerAction.Redesign
    assert "unreachable" in ceiling.insight


def test_never_failing_clause_is_not_a_blocker(make_engine, analyzer):
    result = _run(make_engine, leaf("moodAxes.valence", ">=", -100), leaf("moodAxes.threat", ">=", 50))
    blockers = analyzer.rank_blockers(result)
    assert [b.clause_id for b in blockers] == ["1"]
    assert blockers[0].rank == 1


def test_ranking_order(make_engine, analyzer):
    result = _run(make_engine, leaf("moodAxes.valence", ">=", -50), leaf("moodAxes.threat", ">=", 60),
                  leaf("moodAxes.arousal", "<=", 0))
    blockers = analyzer.rank_blockers(result)
    assert [b.rank for b in blockers] == list(range(1, len(blockers) + 1))
    rates = [b.failure_rate for b in blockers]
    assert rates == sorted(rates, reverse=True)
    assert blockers[0].clause_id == "1"


def test_max_blockers(make_engine, constraint_analyzer, registry):
    analyzer = BlockerAnalyzer(constraint_analyzer, registry, BlockerSettings(max_blockers=1))
    result = _run(make_engine, leaf("moodAxes.valence", ">=", 50), leaf("moodAxes.threat", ">=", 50))
    assert len(analyzer.rank_blockers(result)) == 1


def test_tunable_single_clause(make_engine, analyzer):
    # failures are valence -100..-81, the values -85..-81 are within 5 raw points
    result = _run(make_engine, leaf("moodAxes.valence", ">=", -80), n=4000)
    [blocker] = analyzer.rank_blockers(result)
    near = blocker.advanced_analysis.near_miss_analysis
    assert near.epsilon == pytest.approx(5.0)
    assert near.tunability == Tunability.High
    assert blocker.flags == ["[DECISIVE]", "[TUNABLE]"]
    assert blocker.severity == BlockerSeverity.High
    assert blocker.recommended_action == BlockerAction.TuneThreshold


def test_upstream_clause(make_engine, analyzer):
    # most failures are gate-clamped zeros, far from 0.9
    result = _run(make_engine, leaf("emotions.joy", ">=", 0.9), n=3000)
    [blocker] = analyzer.rank_blockers(result)
    assert blocker.advanced_analysis.near_miss_analysis.tunability == Tunability.Low
    assert "[UPSTREAM]" in blocker.flags
    assert blocker.recommended_action == BlockerAction.AdjustUpstream
    assert blocker.advanced_analysis.ceiling_analysis.achievable is True


def test_unreachable_inside_regime(make_engine, analyzer, axis_model):
    regime = MoodRegime.from_definition({"valence": {"max": 0.2}}, axis_model)
    result = _run(make_engine, leaf("moodAxes.valence", ">=", 50), regime=regime)
    [blocker] = analyzer.rank_blockers(result)
    ceiling = blocker.advanced_analysis.ceiling_analysis
    assert ceiling.achievable is True
    assert ceiling.achievable_in_regime is False
    assert ceiling.in_regime_max == pytest.approx(20)
    assert "not inside the mood regime" in ceiling.insight


def test_or_alternative_and_last_mile(make_engine, analyzer):
    result = _run(make_engine, leaf("moodAxes.threat", ">=", -80),
                  {"or": [leaf("moodAxes.valence", ">=", 90), leaf("moodAxes.arousal", ">=", 90)]})
    by_id = {b.clause_id: b for b in analyzer.rank_blockers(result)}
    assert by_id["1.0"].advanced_analysis.last_mile_analysis.is_or_alternative
    assert not by_id["0"].advanced_analysis.last_mile_analysis.is_or_alternative
    for b in by_id.values():
        lm = b.advanced_analysis.last_mile_analysis
        assert lm.last_mile_fail_count <= lm.others_passed_count


def test_percentiles(make_engine, analyzer):
    result = _run(make_engine, leaf("moodAxes.valence", ">=", 50))
    [blocker] = analyzer.rank_blockers(result)
    pa = blocker.advanced_analysis.percentile_analysis
    assert sorted(pa.percentiles) == [10, 25, 50, 75, 90]
    assert pa.percentiles[10] <= pa.percentiles[50] <= pa.percentiles[90]
    assert 0.6 < pa.fraction_below_threshold < 0.9
    assert pa.shape == "normal"
    assert "upper tail" in pa.insight


def test_unsupported_clause(make_engine, analyzer):
    result = _run(make_engine, {"some": [1]}, n=100)
    [blocker] = analyzer.rank_blockers(result)
    assert blocker.advanced_analysis.ceiling_analysis.status == "not_applicable"
    assert blocker.advanced_analysis.percentile_analysis.percentiles == {}
