# tests/test_expression.py
import pytest

from exprdiag.errors import MalformedExpressionError, UnknownAxisError
from exprdiag.evaluator import ContextBuilder, ExpressionTreeEvaluator
from exprdiag.expression import (Expression, NodeTag, detect_prototype_types, extract_prototype_reference,
                                 infer_regime, parse_logic)
from exprdiag.prototypes import PrototypeType
from exprdiag.state import PsychState

from conftest import expression, leaf


def test_parse_tree_and_ids():
    expr = Expression.from_definition(expression(
        leaf("moodAxes.valence", ">=", 20),
        {"or": [leaf("emotions.joy", ">=", 0.5), {"not": leaf("emotions.fear", ">", 0.3)}]},
    ))
    assert [r.node_id for r in expr.prerequisites] == ["0", "1"]
    or_node = expr.node("1")
    assert or_node.tag == NodeTag.Or
    assert [c.node_id for c in or_node.children] == ["1.0", "1.1"]
    assert expr.node("1.1.0").comparison.var_path == "emotions.fear"
    assert [l.node_id for l in expr.leaves()] == ["0", "1.0", "1.1.0"]


def test_flipped_operands():
    node = parse_logic({"<=": [0.5, {"var": "emotions.joy"}]})
    assert node.comparison.operator == ">="
    assert node.comparison.threshold == 0.5


@pytest.mark.parametrize("logic", [
    {">=": [{"var": "emotions.joy"}]},
    {">=": [{"var": ""}, 0.4]},
    {">=": [{"var": "emotions.joy"}, "high"]},
    {"not": [leaf("emotions.joy", ">=", 0.1), leaf("emotions.joy", "<=", 0.9)]},
    {"and": leaf("emotions.joy", ">=", 0.1)},
    ["emotions.joy"],
])
def test_malformed_nodes(logic):
    with pytest.raises(MalformedExpressionError) as e:
        parse_logic(logic)
    assert e.value.raw is not None


def test_prerequisite_without_logic():
    with pytest.raises(MalformedExpressionError):
        Expression.from_definition({"id": "x", "prerequisites": [{"condition": {}}]})


def test_unsupported_operator_kept_in_tree():
    expr = Expression.from_definition(expression({"in": [{"var": "emotions.joy"}, [1, 2]]}))
    assert expr.prerequisites[0].tag == NodeTag.Unsupported


def test_unsupported_evaluates_false(axis_model, registry):
    builder = ContextBuilder(axis_model, registry)
    expr = builder.prepare(Expression.from_definition(expression(
        {"or": [{"some": [1]}, leaf("moodAxes.valence", ">=", 0)]})))
    ctx = builder.build(PsychState.from_raw(axis_model, mood_axes={"valence": 10}))
    outcome = ExpressionTreeEvaluator().evaluate_expression(expr, ctx)
    assert outcome.passed
    assert outcome.results["0.0"] is False


def test_type_detection_skips_not_and_unsupported():
    expr = Expression.from_definition(expression(
        {"not": leaf("sexualStates.aroused", ">=", 0.3)},
        {"max": [{"var": "sexualStates.aroused"}, 1]},
    ))
    hints = detect_prototype_types(expr)
    assert hints.has_emotions and not hints.has_sexual_states

    expr = Expression.from_definition(expression({"or": [leaf("sexualStates.aroused", ">=", 0.3)]}))
    hints = detect_prototype_types(expr)
    assert hints.has_sexual_states and not hints.has_emotions


def test_equality_never_identifies_prototype():
    expr = Expression.from_definition(expression(
        leaf("emotions.calm", "==", 0),
        leaf("emotions.joy", ">=", 0.6),
    ))
    ref = extract_prototype_reference(expr)
    assert (ref.prototype_id, ref.type, ref.threshold) == ("joy", PrototypeType.Emotion, 0.6)

    only_equality = Expression.from_definition(expression(leaf("emotions.calm", "==", 0)))
    assert extract_prototype_reference(only_equality) is None


def test_var_path_validation(axis_model, registry):
    builder = ContextBuilder(axis_model, registry)
    for path in ("moodAxes.valense", "emotions.nostalgia", "affectTraits.valence", "weather.rain", "valence"):
        with pytest.raises(UnknownAxisError):
            builder.prepare(Expression.from_definition(expression(leaf(path, ">=", 0))))
    prepared = builder.prepare(Expression.from_definition(expression(leaf("mood.valence", ">=", 0),
                                                                     leaf("SA", ">=", 0.2))))
    assert prepared.node("0").comparison.var_path == "mood.valence"


def test_paths_read_raw_and_intensity(axis_model, registry):
    builder = ContextBuilder(axis_model, registry)
    expr = builder.prepare(Expression.from_definition(expression(
        leaf("moodAxes.valence", ">=", 50),
        leaf("emotions.joy", ">=", 0.5),
        leaf("affectTraits.self_control", ">", 60),
        leaf("sexualArousal", ">=", 0.5),
    )))
    state = PsychState.from_raw(axis_model, mood_axes={"valence": 60, "arousal": 40},
                                affect_traits={"self_control": 70},
                                sexual_axes={"sex_excitation": 80, "sex_inhibition": 20, "baseline_libido": 0})
    ctx = builder.build(state, builder.referenced_prototypes(expr))
    outcome = ExpressionTreeEvaluator().evaluate_expression(expr, ctx)
    assert outcome.values["0"] == 60
    assert outcome.values["1"] == pytest.approx(0.5)
    assert outcome.values["3"] == pytest.approx(0.6)
    assert outcome.passed


def test_infer_regime_from_top_level_and(axis_model):
    expr = Expression.from_definition(expression(
        leaf("moodAxes.valence", ">=", 20),
        {"and": [leaf("mood.threat", "<=", 30), leaf("emotions.joy", ">=", 0.4)]},
        {"or": [leaf("moodAxes.arousal", ">=", 50), leaf("emotions.joy", ">=", 0.9)]},
    ))
    regime = infer_regime(expr, axis_model)
    assert regime.definition() == {"valence": {"min": 0.2}, "threat": {"max": 0.3}}
    assert regime.sources["valence"] == ["moodAxes.valence >= 20"]
    assert "arousal" not in regime.bounds


def test_with_threshold_copies():
    expr = Expression.from_definition(expression(leaf("emotions.joy", ">=", 0.5)))
    changed = expr.with_threshold("0", 0.7)
    assert changed.node("0").comparison.threshold == 0.7
    assert expr.node("0").comparison.threshold == 0.5
