# tests/test_report.py
import pytest

from exprdiag.blockers import BlockerAnalyzer
from exprdiag.expression import Expression
from exprdiag.facts import Invariant, RecommendationFactsBuilder
from exprdiag.fit_ranking import PrototypeFitRankingService
from exprdiag.recommendations import (Confidence, EvidenceItem, Population, Recommendation, RecommendationEngine,
                                      RecommendationType, Severity)
from exprdiag.report import (AXIS_ONLY_BADGE, IN_REGIME_BADGE, SECTION_TITLES, ReportGenerator, clause_anchor,
                             format_count, format_evidence, format_pct, format_pp, rarity)
from exprdiag.state import MoodRegime

from conftest import expression, leaf


def test_formatters():
    assert format_pct(0.1234) == "12.34%"
    assert format_pct(None) == "n/a"
    assert format_pp(0.0625) == "+6.25 pp"
    assert format_pp(0.0) == "+0.00 pp"
    assert format_count(3.0) == "3"
    assert format_count(0.5) == "0.50"
    assert clause_anchor("1.0") == "clause-1-0"


@pytest.mark.parametrize("rate,label", [(0.0, "impossible"), (0.000005, "extremely_rare"), (0.0001, "rare"),
                                        (0.01, "normal"), (0.3, "frequent")])
def test_rarity(rate, label):
    assert rarity(rate) == label


def test_evidence_line():
    item = EvidenceItem(label="Pass | gate", numerator=50, denominator=1000, value=0.05,
                        population=Population(name="gate-pass (mood-regime)", count=1000))
    assert format_evidence(item) == "Pass | gate: 50/1000 (5.00%) | Population: gate-pass (mood-regime) (N=1000)"
    bare = EvidenceItem(label="Clause threshold", numerator=0.9, denominator=1, value=0.9)
    assert format_evidence(bare) == "Clause threshold: 0.90/1 (90.00%)"


def test_card_format():
    rec = Recommendation(id="prototype_mismatch:joy:0", type=RecommendationType.PrototypeMismatch,
                         severity=Severity.High, confidence=Confidence.Medium, title="Prototype structurally mismatched",
                         why="Prototype-linked clause is a top-3 impact choke.",
                         evidence=[EvidenceItem(label="Gate fail rate", numerator=30, denominator=300, value=0.1)],
                         actions=["Lower the prototype threshold or rebalance weights to raise values."],
                         predicted_effect="Reduce mismatch to improve trigger rate and stability.",
                         related_clause_ids=["0"])
    card = ReportGenerator.format_card(rec, 0, {"0": 0.25})
    lines = card.splitlines()
    assert lines[0] == "### Recommendation 1: Prototype structurally mismatched"
    assert "- **Type**: prototype_mismatch" in lines
    assert "- **Severity**: high" in lines
    assert "- **Confidence**: medium" in lines
    assert "- **Impact (full sample)**: +25.00 pp" in lines
    assert "  - Gate fail rate: 30/300 (10.00%)" in lines
    assert "- **Related Clauses**: [0](#clause-0)" in lines


# ---------- full report ----------
@pytest.fixture(scope="module")
def report_inputs(make_engine, axis_model, registry, constraint_analyzer):
    regime = MoodRegime.from_definition({"valence": {"min": 0.4}}, axis_model)
    expr = Expression.from_definition(expression(leaf("emotions.joy", ">=", 0.9), expr_id="joyful_peak"))
    engine = make_engine(sample_count=3000)
    result = engine.run(expr, regime=regime)
    blockers = BlockerAnalyzer(constraint_analyzer, registry).rank_blockers(result)
    fit_service = PrototypeFitRankingService(axis_model, registry, constraint_analyzer)
    fit = fit_service.analyze_all_prototype_fit(result.expression, result.stored_contexts, regime)
    implied = fit_service.compute_implied_prototype(result.expression, result.stored_contexts, regime,
                                                    result.clause_failures)
    gaps = fit_service.detect_prototype_gaps(result.expression, result.stored_contexts, regime,
                                             clause_failures=result.clause_failures)
    joy = registry.get_prototype("joy")
    analysis = constraint_analyzer.analyze(joy, regime, 0.9)
    facts = RecommendationFactsBuilder(axis_model, registry, constraint_analyzer).build(
        expr, result, {joy.key: analysis})
    recommendations = RecommendationEngine().generate(facts)
    sensitivity = {"0": [engine.compute_threshold_sensitivity(result, "0")]}
    return dict(result=result, blockers=blockers, fit=fit, axis_analyses=[analysis], facts=facts,
                recommendations=recommendations, implied=implied, gaps=gaps, sensitivity=sensitivity)


def test_section_order(report_inputs):
    report = ReportGenerator().generate(**report_inputs)
    lines = report.splitlines()
    assert lines[0] == "# Expression Diagnostics: joyful_peak"
    positions = [lines.index(f"## {title}") for title in SECTION_TITLES]
    assert positions == sorted(positions)
    assert sum(1 for l in lines if l.startswith("## ")) == len(SECTION_TITLES)


def test_report_is_deterministic(report_inputs):
    generator = ReportGenerator()
    assert generator.generate(**report_inputs) == generator.generate(**report_inputs)


def test_badges_precede_their_tables(report_inputs):
    section = ReportGenerator().prototype_fit_section(report_inputs["fit"])
    lines = section.splitlines()
    prose = next(i for i, l in enumerate(lines) if l.startswith("Every candidate prototype"))
    axis_badge = next(i for i, l in enumerate(lines) if l.startswith(f"**{AXIS_ONLY_BADGE}**"))
    regime_badge = next(i for i, l in enumerate(lines) if l.startswith(f"**{IN_REGIME_BADGE}**"))
    assert prose < axis_badge < regime_badge
    assert lines[axis_badge + 2].startswith("| Rank | Prototype | Gated Min")
    assert lines[regime_badge + 2].startswith("| Rank | Prototype | Gate Pass")
    assert "Population: " in lines[regime_badge]


def test_axis_constraint_section_is_badged(report_inputs):
    section = ReportGenerator().axis_constraint_section(report_inputs["axis_analyses"])
    assert "### emotion:joy" in section
    assert f"**{AXIS_ONLY_BADGE}**" in section
    assert "| `valence >= 0.4` | [0.40, 1.00] | yes | yes |" in section


def test_blockers_carry_anchor_and_grid(report_inputs):
    section = ReportGenerator().blocker_section(report_inputs["result"], report_inputs["blockers"],
                                                report_inputs["sensitivity"])
    assert '<a id="clause-0"></a>' in section
    assert "### Blocker #1: `emotions.joy >= 0.9`" in section
    assert "#### Clause Pass Rate by Threshold: emotions.joy >= [threshold]" in section
    assert "| **0.90** |" in section


def test_recommendation_cards(report_inputs):
    report = ReportGenerator().generate(**report_inputs)
    rec_section = report.split("## Recommendations", 1)[1]
    assert "### Recommendation 1: Prototype structurally mismatched" in rec_section
    assert "- **Impact (full sample)**: +" in rec_section
    assert "| Population: gate-pass (mood-regime) (N=" in rec_section


def test_suppressed_recommendations(report_inputs):
    facts = report_inputs["facts"].model_copy(deep=True)
    facts.invariants.append(Invariant(id="trigger_rate_bounds", ok=False, message="Overall pass rate 1.5000 must lie in [0, 1]"))
    section = ReportGenerator().recommendation_section(facts, report_inputs["recommendations"])
    assert section.splitlines()[2:] == [
        "> Recommendations suppressed: invariant violations detected",
        "> - trigger_rate_bounds: Overall pass rate 1.5000 must lie in [0, 1]",
    ]


def test_empty_sections(report_inputs):
    generator = ReportGenerator()
    assert "No failing clauses." in generator.blocker_section(report_inputs["result"], [], {})
    assert "No prototype fit analysis available." in generator.prototype_fit_section(None)
    assert "No recommendations." in generator.recommendation_section(None, [])
