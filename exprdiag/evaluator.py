from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Mapping, NamedTuple, Optional, Tuple

from pydantic import BaseModel, Field, computed_field

from exprdiag.axes import AxisKind, AxisModel, SEXUAL_AROUSAL
from exprdiag.errors import UnknownAxisError
from exprdiag.expression import (EMOTION_ROOT, MOOD_ROOTS, SEXUAL_STATE_ROOT, Comparison, Expression, LogicNode,
                                 NodeTag)
from exprdiag.intensity import PrototypeIntensityCalculator, PrototypeSignal
from exprdiag.prototypes import Prototype, PrototypeRegistry, PrototypeType, compare
from exprdiag.state import MoodRegime, PsychState

TRAIT_ROOT = "affectTraits"
SEXUAL_AXES_ROOT = "sexualAxes"
AROUSAL_PATHS = ("sexualArousal", "SA")

_RAW_ROOT_KINDS = {
    TRAIT_ROOT: AxisKind.Trait,
    SEXUAL_AXES_ROOT: AxisKind.Sexual,
}


def _rate(num: int, den: int) -> float:
    return num / den if den > 0 else 0.0


class EvaluationContext:
    """Everything one comparison may read for one sampled state."""
    __slots__ = ("state", "normalized", "signals", "in_regime")

    def __init__(self, state: PsychState, normalized: Dict[str, float],
                 signals: Dict[Tuple[PrototypeType, str], PrototypeSignal], in_regime: bool):
        self.state = state
        self.normalized = normalized
        self.signals = signals
        self.in_regime = in_regime

    def signal(self, comparison: Comparison) -> Optional[PrototypeSignal]:
        ptype = comparison.prototype_type
        if ptype is None:
            return None
        return self.signals.get((ptype, comparison.name))

    def resolve(self, comparison: Comparison) -> float:
        root = comparison.root
        if root in MOOD_ROOTS:
            return self.state.mood_axes[comparison.name]
        if root == TRAIT_ROOT:
            return self.state.affect_traits[comparison.name]
        if root == SEXUAL_AXES_ROOT:
            return self.state.sexual_axes[comparison.name]
        if comparison.var_path in AROUSAL_PATHS:
            return self.state.sexual_arousal
        signal = self.signal(comparison)
        if signal is None:
            raise UnknownAxisError(comparison.var_path, "no value in evaluation context")
        return signal.intensity


class ContextBuilder:
    """
    Builds evaluation contexts and validates var paths. Mood, trait and sexual-axis paths read
    raw values; emotions.* and sexualStates.* read gated intensities in [0, 1].
    """

    def __init__(self, axis_model: AxisModel, registry: PrototypeRegistry,
                 calculator: Optional[PrototypeIntensityCalculator] = None):
        self.axis_model = axis_model
        self.registry = registry
        self.calculator = calculator or PrototypeIntensityCalculator(axis_model)

    def canonical(self, comparison: Comparison) -> Comparison:
        """Validate a comparison's var path and rewrite aliases to canonical names."""
        root = comparison.root
        name = comparison.name
        if comparison.var_path in AROUSAL_PATHS:
            return comparison
        if "." not in comparison.var_path:
            raise UnknownAxisError(comparison.var_path, f"comparison '{comparison.text}'")
        if root in MOOD_ROOTS or root in _RAW_ROOT_KINDS:
            expected = AxisKind.Mood if root in MOOD_ROOTS else _RAW_ROOT_KINDS[root]
            canonical = self.axis_model.resolve_alias(name)
            if not self.axis_model.is_known(canonical) or self.axis_model.kind(canonical) != expected:
                raise UnknownAxisError(comparison.var_path, f"comparison '{comparison.text}'")
            if canonical != name:
                return comparison.model_copy(update={"var_path": f"{root}.{canonical}"})
            return comparison
        if root == SEXUAL_STATE_ROOT and self.axis_model.resolve_alias(name) == SEXUAL_AROUSAL:
            return comparison.model_copy(update={"var_path": "sexualArousal"})
        if root in (EMOTION_ROOT, SEXUAL_STATE_ROOT):
            if self.registry.get_prototype(name, comparison.prototype_type) is None:
                raise UnknownAxisError(comparison.var_path, f"no {comparison.prototype_type} prototype '{name}'")
            return comparison
        raise UnknownAxisError(comparison.var_path, f"comparison '{comparison.text}'")

    def prepare(self, expression: Expression) -> Expression:
        """Validated copy of the expression with canonical var paths on every leaf."""
        def rebuild(node: LogicNode) -> LogicNode:
            if node.tag == NodeTag.Leaf:
                return node.model_copy(update={"comparison": self.canonical(node.comparison)})
            if node.children:
                return node.model_copy(update={"children": tuple(rebuild(c) for c in node.children)})
            return node
        return expression.model_copy(update={"prerequisites": tuple(rebuild(r) for r in expression.prerequisites)})

    def referenced_prototypes(self, expression: Expression) -> List[Prototype]:
        res = {}
        for leaf in expression.leaves():
            if leaf.tag != NodeTag.Leaf:
                continue
            ptype = leaf.comparison.prototype_type
            if ptype is None:
                continue
            p = self.registry.get_prototype(leaf.comparison.name, ptype)
            if p is not None:
                res[p.key] = p
        return list(res.values())

    def value_scale(self, comparison: Comparison) -> float:
        """Raw units per normalized unit for the value a comparison reads."""
        if comparison.root in MOOD_ROOTS or comparison.root in _RAW_ROOT_KINDS:
            return self.axis_model.spec(comparison.name).scale
        return 1.0

    def value_domain(self, comparison: Comparison) -> Tuple[float, float]:
        if comparison.root in MOOD_ROOTS or comparison.root in _RAW_ROOT_KINDS:
            return self.axis_model.raw_domain(comparison.name)
        return 0.0, 1.0

    def build(self, state: PsychState, prototypes: Iterable[Prototype] = (),
              regime: Optional[MoodRegime] = None) -> EvaluationContext:
        normalized = state.normalized(self.axis_model)
        signals = self.calculator.evaluate_all(prototypes, normalized)
        in_regime = True if regime is None else regime.contains_normalized(normalized)
        return EvaluationContext(state, normalized, signals, in_regime)


class NodeOutcome(NamedTuple):
    passed: bool
    results: Dict[str, bool]
    values: Dict[str, Optional[float]]


class ExpressionTreeEvaluator:
    """
    Evaluates and/or/not/leaf trees. The boolean short-circuits logically, but every child is
    still visited so per-node counts stay complete.
    """

    def evaluate(self, node: LogicNode, ctx: EvaluationContext) -> NodeOutcome:
        results: Dict[str, bool] = {}
        values: Dict[str, Optional[float]] = {}
        passed = self._visit(node, ctx, results, values)
        return NodeOutcome(passed, results, values)

    def evaluate_expression(self, expression: Expression, ctx: EvaluationContext) -> NodeOutcome:
        results: Dict[str, bool] = {}
        values: Dict[str, Optional[float]] = {}
        passed = True
        for root in expression.prerequisites:
            if not self._visit(root, ctx, results, values):
                passed = False
        return NodeOutcome(passed, results, values)

    def evaluate_with_breakdown(self, node: LogicNode, ctx: EvaluationContext) -> dict:
        """Single-context evaluation returning {"result": bool, "breakdown": BreakdownNode}."""
        outcome = self.evaluate(node, ctx)
        expression = Expression(id=node.node_id, prerequisites=(node,))
        breakdown = HierarchicalBreakdown(expression)
        breakdown.record(outcome, ctx)
        return {"result": outcome.passed, "breakdown": breakdown.roots[0]}

    def _visit(self, node: LogicNode, ctx: EvaluationContext, results: Dict[str, bool],
               values: Dict[str, Optional[float]]) -> bool:
        match node.tag:
            case NodeTag.Leaf:
                value = ctx.resolve(node.comparison)
                values[node.node_id] = value
                passed = compare(value, node.comparison.operator, node.comparison.threshold)
            case NodeTag.And:
                child_results = [self._visit(c, ctx, results, values) for c in node.children]
                passed = all(child_results)
            case NodeTag.Or:
                child_results = [self._visit(c, ctx, results, values) for c in node.children]
                passed = any(child_results)
            case NodeTag.Not:
                passed = not self._visit(node.children[0], ctx, results, values)
            case NodeTag.Unsupported:
                values[node.node_id] = None
                passed = False
        results[node.node_id] = passed
        return passed

    @staticmethod
    def passes_with_forced(node: LogicNode, results: Mapping[str, bool], forced_id: str) -> bool:
        """Re-derive the node's result from recorded leaf results with one node forced to pass."""
        if node.node_id == forced_id:
            return True
        match node.tag:
            case NodeTag.Leaf | NodeTag.Unsupported:
                return results[node.node_id]
            case NodeTag.And:
                return all(ExpressionTreeEvaluator.passes_with_forced(c, results, forced_id) for c in node.children)
            case NodeTag.Or:
                return any(ExpressionTreeEvaluator.passes_with_forced(c, results, forced_id) for c in node.children)
            case NodeTag.Not:
                return not ExpressionTreeEvaluator.passes_with_forced(node.children[0], results, forced_id)


class BreakdownNode(BaseModel):
    """
    Per-node pass/fail accounting mirroring the expression tree. Counts are kept for the full
    sample and for the in-regime subpopulation; OR nodes count their own union result.
    """
    node_id: str
    tag: NodeTag
    description: str
    var_path: Optional[str] = None
    operator: Optional[str] = None
    threshold: Optional[float] = None
    prototype_id: Optional[str] = None
    prototype_type: Optional[PrototypeType] = None
    children: List["BreakdownNode"] = Field(default_factory=list)

    evaluation_count: int = 0
    failure_count: int = 0
    in_regime_evaluation_count: int = 0
    in_regime_failure_count: int = 0

    # leaf observations
    observed_min: Optional[float] = None
    observed_max: Optional[float] = None
    observed_values: List[float] = Field(default_factory=list, repr=False, exclude=True)
    near_miss_count: int = 0
    near_miss_epsilon: float = 0.0
    violation_sum: float = 0.0

    # conditioning on siblings (AND parent) and on the rest of the expression
    siblings_passed_count: int = 0
    sibling_conditioned_fail_count: int = 0
    others_passed_count: int = 0
    last_mile_fail_count: int = 0
    or_contribution_count: int = 0
    exclusive_pass_count: int = 0

    # prototype leaves, in-regime population
    gate_pass_in_regime_count: int = 0
    gate_fail_in_regime_count: int = 0
    gate_pass_and_clause_pass_in_regime_count: int = 0
    raw_pass_in_regime_count: int = 0
    lost_pass_in_regime_count: int = 0
    value_sum_given_gate_in_regime: float = 0.0
    failed_gate_counts: Dict[str, int] = Field(default_factory=dict)

    @computed_field
    @property
    def pass_count(self) -> int:
        return self.evaluation_count - self.failure_count

    @computed_field
    @property
    def failure_rate(self) -> float:
        return _rate(self.failure_count, self.evaluation_count)

    @computed_field
    @property
    def in_regime_pass_count(self) -> int:
        return self.in_regime_evaluation_count - self.in_regime_failure_count

    @computed_field
    @property
    def in_regime_failure_rate(self) -> float:
        return _rate(self.in_regime_failure_count, self.in_regime_evaluation_count)

    @property
    def is_leaf(self) -> bool:
        return self.tag in (NodeTag.Leaf, NodeTag.Unsupported)

    @property
    def near_miss_rate(self) -> float:
        return _rate(self.near_miss_count, self.failure_count)

    @property
    def average_violation(self) -> float:
        return self.violation_sum / self.failure_count if self.failure_count else 0.0

    @property
    def sibling_conditioned_fail_rate(self) -> Optional[float]:
        return self.sibling_conditioned_fail_count / self.siblings_passed_count if self.siblings_passed_count else None

    @property
    def last_mile_fail_rate(self) -> Optional[float]:
        return self.last_mile_fail_count / self.others_passed_count if self.others_passed_count else None

    @property
    def lost_pass_rate_in_regime(self) -> Optional[float]:
        if not self.raw_pass_in_regime_count:
            return None
        return self.lost_pass_in_regime_count / self.raw_pass_in_regime_count

    @property
    def gate_clamp_rate_in_regime(self) -> Optional[float]:
        if not self.in_regime_evaluation_count or self.prototype_id is None:
            return None
        return self.gate_fail_in_regime_count / self.in_regime_evaluation_count

    @property
    def ceiling_gap(self) -> Optional[float]:
        if self.observed_max is None or self.threshold is None or self.operator not in (">=", ">"):
            return None
        return self.threshold - self.observed_max

    def walk(self):
        yield self
        for c in self.children:
            yield from c.walk()


BreakdownNode.model_rebuild()


class HierarchicalBreakdown:
    """Accumulates NodeOutcomes of one expression into BreakdownNode trees, one per prerequisite."""

    def __init__(self, expression: Expression, near_miss_epsilon: float = 0.05,
                 value_scale=None):
        self.expression = expression
        self.by_id: Dict[str, BreakdownNode] = {}
        self._parents: Dict[str, Optional[LogicNode]] = {}
        self._nodes: Dict[str, LogicNode] = {}
        self.roots: List[BreakdownNode] = [self._build(r, None, near_miss_epsilon, value_scale)
                                           for r in expression.prerequisites]

    def _build(self, node: LogicNode, parent: Optional[LogicNode], epsilon: float, value_scale) -> BreakdownNode:
        cmp = node.comparison
        bd = BreakdownNode(node_id=node.node_id, tag=node.tag, description=node.description)
        if cmp is not None:
            scale = value_scale(cmp) if value_scale is not None else 1.0
            bd.var_path = cmp.var_path
            bd.operator = cmp.operator
            bd.threshold = cmp.threshold
            bd.near_miss_epsilon = epsilon * scale
            if cmp.prototype_type is not None:
                bd.prototype_id = cmp.name
                bd.prototype_type = cmp.prototype_type
        self.by_id[node.node_id] = bd
        self._nodes[node.node_id] = node
        self._parents[node.node_id] = parent
        bd.children = [self._build(c, node, epsilon, value_scale) for c in node.children]
        return bd

    def _siblings(self, node_id: str) -> Tuple[Optional[NodeTag], List[str]]:
        parent = self._parents[node_id]
        if parent is None:
            return NodeTag.And, [r.node_id for r in self.expression.prerequisites]
        return parent.tag, [c.node_id for c in parent.children]

    def record(self, outcome: NodeOutcome, ctx: EvaluationContext) -> None:
        results = outcome.results
        in_regime = ctx.in_regime
        expression_passed = all(results[r.node_id] for r in self.expression.prerequisites)

        for node_id, bd in self.by_id.items():
            passed = results[node_id]
            bd.evaluation_count += 1
            if not passed:
                bd.failure_count += 1
            if in_regime:
                bd.in_regime_evaluation_count += 1
                if not passed:
                    bd.in_regime_failure_count += 1

            node = self._nodes[node_id]
            if node.tag == NodeTag.Leaf:
                self._record_leaf(bd, node, passed, outcome.values.get(node_id), ctx)

            parent_tag, siblings = self._siblings(node_id)
            if parent_tag == NodeTag.And:
                if all(results[s] for s in siblings if s != node_id):
                    bd.siblings_passed_count += 1
                    if not passed:
                        bd.sibling_conditioned_fail_count += 1
            elif parent_tag == NodeTag.Or and passed:
                passing = [s for s in siblings if results[s]]
                if passing[0] == node_id:
                    bd.or_contribution_count += 1
                if len(passing) == 1:
                    bd.exclusive_pass_count += 1

            if expression_passed:
                bd.others_passed_count += 1
            elif not passed and all(ExpressionTreeEvaluator.passes_with_forced(r, results, node_id)
                                    for r in self.expression.prerequisites):
                bd.others_passed_count += 1
                bd.last_mile_fail_count += 1

    def _record_leaf(self, bd: BreakdownNode, node: LogicNode, passed: bool, value: Optional[float],
                     ctx: EvaluationContext) -> None:
        cmp = node.comparison
        if value is not None:
            bd.observed_values.append(value)
            if bd.observed_min is None or value < bd.observed_min:
                bd.observed_min = value
            if bd.observed_max is None or value > bd.observed_max:
                bd.observed_max = value
            if not passed:
                bd.violation_sum += abs(cmp.threshold - value)
                if abs(cmp.threshold - value) <= bd.near_miss_epsilon:
                    bd.near_miss_count += 1

        if not ctx.in_regime:
            return
        signal = ctx.signal(cmp)
        if signal is None:
            return
        if signal.gate_pass:
            bd.gate_pass_in_regime_count += 1
            bd.value_sum_given_gate_in_regime += signal.raw
            if passed:
                bd.gate_pass_and_clause_pass_in_regime_count += 1
        else:
            bd.gate_fail_in_regime_count += 1
            for gate in signal.failed_gates:
                bd.failed_gate_counts[gate] = bd.failed_gate_counts.get(gate, 0) + 1
        if compare(signal.raw, cmp.operator, cmp.threshold):
            bd.raw_pass_in_regime_count += 1
            if not signal.gate_pass:
                bd.lost_pass_in_regime_count += 1

    def leaves(self) -> List[BreakdownNode]:
        return [bd for bd in self.by_id.values() if bd.is_leaf]

    def root_for(self, node_id: str) -> BreakdownNode:
        return self.roots[int(node_id.split(".", 1)[0])]
