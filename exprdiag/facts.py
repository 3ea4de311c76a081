from __future__ import annotations

import logging
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from pydantic import BaseModel, Field

from exprdiag.axes import AxisModel
from exprdiag.constraints import AxisConstraintAnalysis, AxisConstraintAnalyzer
from exprdiag.evaluator import BreakdownNode
from exprdiag.expression import Expression, NodeTag
from exprdiag.prototypes import GatePredicate, Prototype, PrototypeRegistry, PrototypeType, compare
from exprdiag.simulation import SimulationResult
from exprdiag.state import MoodRegime


class GatePredicateFact(BaseModel):
    axis: str
    operator: str
    threshold_normalized: float
    threshold_raw: float
    implied_by_regime: bool
    regime_min: Optional[float] = None
    regime_max: Optional[float] = None


class CountRate(BaseModel):
    count: int
    denominator: int
    rate: Optional[float] = None


class GateAxisEvidence(BaseModel):
    axis: str
    operator: str
    threshold_raw: float
    fraction_below: CountRate
    fraction_above: CountRate


class GateClampCandidate(BaseModel):
    id: str
    kind: str = "hard"
    axes: List[GatePredicateFact]
    keep_count: int
    keep_denominator: int
    keep_ratio: Optional[float] = None
    pred_sample_count: int = 0
    pred_pass_rate: Optional[float] = None
    pred_clamp_rate: Optional[float] = None


class GateClampFacts(BaseModel):
    mood_regime_count: int
    gate_pass_in_regime_count: int
    gate_fail_in_regime_count: int
    gate_clamp_rate_in_regime: Optional[float] = None
    gate_predicates: List[GatePredicateFact]
    axis_evidence: List[GateAxisEvidence] = Field(default_factory=list)
    all_gates_implied: bool
    candidates: List[GateClampCandidate] = Field(default_factory=list)


class ClauseFacts(BaseModel):
    clause_id: str
    clause_label: str
    clause_type: str
    prototype_id: Optional[str] = None
    prototype_type: Optional[PrototypeType] = None
    impact: float = 0.0
    fail_rate_in_mood: Optional[float] = None
    avg_violation_in_mood: float = 0.0
    operator: Optional[str] = None
    threshold_value: Optional[float] = None
    conditional_fail_rate: Optional[float] = None
    near_miss_rate: Optional[float] = None
    raw_pass_in_regime_count: Optional[int] = None
    lost_pass_in_regime_count: Optional[int] = None
    lost_pass_rate_in_regime: Optional[float] = None
    gate_clamp_regime_permissive: Optional[GateClampFacts] = None


class FailedGateCount(BaseModel):
    gate_id: str
    count: int


class AxisConflictFact(BaseModel):
    axis: str
    weight: float
    constraint_min: float
    constraint_max: float
    conflict_type: str
    contribution_delta: float
    lost_raw_sum: Optional[float] = None
    lost_intensity: Optional[float] = None
    sources: List[str] = Field(default_factory=list)


class PrototypeFacts(BaseModel):
    prototype_id: str
    prototype_type: PrototypeType
    mood_sample_count: int
    gate_fail_count: int
    gate_pass_count: int
    threshold_pass_count: int
    gate_fail_rate: float
    gate_pass_rate: float
    p_thresh_given_gate: Optional[float] = None
    p_thresh_effective: float
    mean_value_given_gate: float
    failed_gate_counts: List[FailedGateCount] = Field(default_factory=list)
    compatibility_score: int = 0
    axis_conflicts: List[AxisConflictFact] = Field(default_factory=list)


class Invariant(BaseModel):
    id: str
    ok: bool
    message: str


class MoodRegimeFacts(BaseModel):
    definition: Optional[Dict[str, Dict[str, float]]] = None
    sample_count: int


class DiagnosticFacts(BaseModel):
    expression_id: str
    sample_count: int
    mood_regime: MoodRegimeFacts
    overall_pass_rate: float
    clauses: List[ClauseFacts] = Field(default_factory=list)
    prototypes: List[PrototypeFacts] = Field(default_factory=list)
    invariants: List[Invariant] = Field(default_factory=list)

    @property
    def failed_invariants(self) -> List[Invariant]:
        return [i for i in self.invariants if not i.ok]


class InvariantValidator:
    """Sanity checks over the facts. A single failure suppresses every recommendation."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)

    def validate(self, facts: DiagnosticFacts, result: Optional[SimulationResult] = None) -> List[Invariant]:
        checks: List[Invariant] = []

        rate = facts.overall_pass_rate
        checks.append(Invariant(id="trigger_rate_bounds", ok=0.0 <= rate <= 1.0,
                                message=f"Overall pass rate {rate:.4f} must lie in [0, 1]"))
        checks.append(Invariant(id="regime_count_bounds",
                                ok=0 <= facts.mood_regime.sample_count <= facts.sample_count,
                                message=f"Mood-regime count {facts.mood_regime.sample_count} exceeds "
                                        f"sample count {facts.sample_count}"))

        if result is not None:
            for root in result.breakdown:
                checks.append(Invariant(
                    id=f"trigger_within_prerequisite:{root.node_id}",
                    ok=result.trigger_count <= root.pass_count,
                    message=f"Trigger count {result.trigger_count} exceeds pass count {root.pass_count} "
                            f"of prerequisite {root.node_id}"))
                for node in root.walk():
                    if node.tag != NodeTag.Or or not node.children:
                        continue
                    child_passes = [c.pass_count for c in node.children]
                    checks.append(Invariant(
                        id=f"or_union_bounds:{node.node_id}",
                        ok=max(child_passes) <= node.pass_count <= sum(child_passes),
                        message=f"OR {node.node_id} pass count {node.pass_count} outside "
                                f"[{max(child_passes)}, {sum(child_passes)}]"))

        for proto in facts.prototypes:
            key = f"{proto.prototype_type}:{proto.prototype_id}"
            checks.append(Invariant(
                id=f"gate_partition:{key}",
                ok=proto.gate_pass_count + proto.gate_fail_count == proto.mood_sample_count,
                message=f"{key}: gate pass {proto.gate_pass_count} + fail {proto.gate_fail_count} "
                        f"!= mood-regime count {proto.mood_sample_count}"))
            checks.append(Invariant(
                id=f"threshold_within_gate:{key}",
                ok=proto.threshold_pass_count <= proto.gate_pass_count,
                message=f"{key}: threshold passes {proto.threshold_pass_count} exceed gate passes "
                        f"{proto.gate_pass_count}"))
            checks.append(Invariant(
                id=f"evidence_population:{key}",
                ok=proto.mood_sample_count > 0,
                message=f"{key}: no mood-regime samples to back evidence"))

        for inv in checks:
            if not inv.ok:
                self.logger.warning(f"Invariant failed: {inv.id}: {inv.message}")
        return checks


def _leaves(node: BreakdownNode) -> List[BreakdownNode]:
    return [n for n in node.walk() if n.is_leaf]


class RecommendationFactsBuilder:
    """
    Flattens a SimulationResult into evidence-oriented facts: one entry per clause, one per
    referenced prototype, plus the invariants that gate recommendations.
    """

    def __init__(self, axis_model: AxisModel, registry: PrototypeRegistry,
                 constraint_analyzer: Optional[AxisConstraintAnalyzer] = None,
                 invariant_validator: Optional[InvariantValidator] = None,
                 logger: Optional[logging.Logger] = None):
        self.axis_model = axis_model
        self.registry = registry
        self.logger = logger or logging.getLogger(__name__)
        self.constraint_analyzer = constraint_analyzer or AxisConstraintAnalyzer(axis_model, logger=self.logger)
        self.invariant_validator = invariant_validator or InvariantValidator(logger=self.logger)

    def build(self, expression: Optional[Expression], result: SimulationResult,
              axis_analysis: Optional[Mapping[Tuple[PrototypeType, str], AxisConstraintAnalysis]] = None) -> DiagnosticFacts:
        expression = expression or result.expression
        regime = result.regime
        contexts = [s.normalized(self.axis_model) for s in result.in_regime_contexts()]
        clauses = self._clause_facts(result, regime, contexts)
        by_id = {c.clause_id: c for c in clauses}
        prototypes = self._prototype_facts(result, by_id, regime, axis_analysis or {})

        facts = DiagnosticFacts(
            expression_id=expression.id,
            sample_count=result.sample_count,
            mood_regime=MoodRegimeFacts(definition=regime.definition() or None,
                                        sample_count=result.in_regime_sample_count),
            overall_pass_rate=result.trigger_rate,
            clauses=clauses,
            prototypes=prototypes,
        )
        facts.invariants = self.invariant_validator.validate(facts, result)
        return facts

    # ---------- clauses ----------

    def _clause_facts(self, result: SimulationResult, regime: MoodRegime,
                      contexts: Sequence[Mapping[str, float]]) -> List[ClauseFacts]:
        n = result.sample_count
        facts = []
        for root in result.breakdown:
            for leaf in _leaves(root):
                if leaf.tag == NodeTag.Unsupported:
                    clause_type = "unsupported"
                elif leaf.prototype_id is not None:
                    clause_type = "prototype_threshold"
                else:
                    clause_type = "axis_threshold"
                gate_clamp = None
                if leaf.prototype_id is not None:
                    prototype = self.registry.get_prototype(leaf.prototype_id, leaf.prototype_type)
                    if prototype is not None and prototype.gates:
                        gate_clamp = self.gate_clamp_facts(leaf, prototype, regime, contexts)
                facts.append(ClauseFacts(
                    clause_id=leaf.node_id,
                    clause_label=leaf.description,
                    clause_type=clause_type,
                    prototype_id=leaf.prototype_id,
                    prototype_type=leaf.prototype_type,
                    # forced-pass ablation: trigger-rate gain if this clause always held
                    impact=leaf.last_mile_fail_count / n if n else 0.0,
                    fail_rate_in_mood=leaf.in_regime_failure_rate if leaf.in_regime_evaluation_count else None,
                    avg_violation_in_mood=leaf.average_violation,
                    operator=leaf.operator,
                    threshold_value=leaf.threshold,
                    conditional_fail_rate=(leaf.sibling_conditioned_fail_rate
                                           if leaf.sibling_conditioned_fail_rate is not None
                                           else leaf.last_mile_fail_rate),
                    near_miss_rate=leaf.near_miss_rate if leaf.failure_count else None,
                    raw_pass_in_regime_count=leaf.raw_pass_in_regime_count if leaf.prototype_id else None,
                    lost_pass_in_regime_count=leaf.lost_pass_in_regime_count if leaf.prototype_id else None,
                    lost_pass_rate_in_regime=leaf.lost_pass_rate_in_regime,
                    gate_clamp_regime_permissive=gate_clamp,
                ))
        return facts

    def _predicate_fact(self, gate: GatePredicate, regime: MoodRegime) -> GatePredicateFact:
        spec = self.axis_model.spec(gate.axis)
        lo, hi = regime.interval(gate.axis, self.axis_model)
        bounded = gate.axis in regime.bounds
        return GatePredicateFact(axis=gate.axis, operator=gate.operator, threshold_normalized=gate.threshold,
                                 threshold_raw=round(gate.threshold * spec.scale, 6),
                                 implied_by_regime=bounded and gate.implied_by(lo, hi),
                                 regime_min=lo * spec.scale if bounded else None,
                                 regime_max=hi * spec.scale if bounded else None)

    @staticmethod
    def _satisfies(values: Mapping[str, float], predicates: Sequence[GatePredicateFact]) -> bool:
        return all(compare(values[p.axis], p.operator, p.threshold_normalized) for p in predicates)

    def _candidate(self, cid: str, axes: List[GatePredicateFact], predicates: List[GatePredicateFact],
                   contexts: Sequence[Mapping[str, float]]) -> GateClampCandidate:
        kept = [s for s in contexts if self._satisfies(s, axes)]
        passing = sum(1 for s in kept if self._satisfies(s, predicates))
        denominator = len(contexts)
        candidate = GateClampCandidate(id=cid, axes=axes, keep_count=len(kept), keep_denominator=denominator,
                                       keep_ratio=len(kept) / denominator if denominator else None,
                                       pred_sample_count=len(kept))
        if kept:
            candidate.pred_pass_rate = passing / len(kept)
            candidate.pred_clamp_rate = 1 - candidate.pred_pass_rate
        return candidate

    def gate_clamp_facts(self, leaf: BreakdownNode, prototype: Prototype, regime: MoodRegime,
                         contexts: Sequence[Mapping[str, float]]) -> GateClampFacts:
        """Replays each gate as a candidate regime bound over the normalized in-regime contexts."""
        predicates = [self._predicate_fact(g, regime) for g in prototype.gates]
        count = len(contexts)
        evidence = []
        for p in predicates:
            values = [s[p.axis] for s in contexts]
            below = sum(1 for v in values if v < p.threshold_normalized)
            above = sum(1 for v in values if v > p.threshold_normalized)
            evidence.append(GateAxisEvidence(
                axis=p.axis, operator=p.operator, threshold_raw=p.threshold_raw,
                fraction_below=CountRate(count=below, denominator=count, rate=below / count if count else None),
                fraction_above=CountRate(count=above, denominator=count, rate=above / count if count else None)))

        all_implied = all(p.implied_by_regime for p in predicates)
        candidates = []
        if not all_implied and count:
            for p in predicates:
                candidates.append(self._candidate(f"hard:{p.axis}:{p.operator}:{p.threshold_raw:g}", [p],
                                                  predicates, contexts))
            if len(predicates) > 1:
                key = "|".join(f"{p.axis}{p.operator}{p.threshold_raw:g}" for p in predicates)
                candidates.append(self._candidate(f"hard:combined:{key}", predicates, predicates, contexts))

        return GateClampFacts(
            mood_regime_count=leaf.in_regime_evaluation_count,
            gate_pass_in_regime_count=leaf.gate_pass_in_regime_count,
            gate_fail_in_regime_count=leaf.gate_fail_in_regime_count,
            gate_clamp_rate_in_regime=leaf.gate_clamp_rate_in_regime,
            gate_predicates=predicates,
            axis_evidence=evidence,
            all_gates_implied=all_implied,
            candidates=candidates,
        )

    # ---------- prototypes ----------

    def _prototype_facts(self, result: SimulationResult, clauses: Dict[str, ClauseFacts], regime: MoodRegime,
                         axis_analysis: Mapping[Tuple[PrototypeType, str], AxisConstraintAnalysis]) -> List[PrototypeFacts]:
        groups: Dict[Tuple[PrototypeType, str], List[BreakdownNode]] = {}
        for root in result.breakdown:
            for leaf in _leaves(root):
                if leaf.prototype_id is not None:
                    groups.setdefault((leaf.prototype_type, leaf.prototype_id), []).append(leaf)

        facts = []
        for (ptype, pid), leaves in groups.items():
            prototype = self.registry.get_prototype(pid, ptype)
            if prototype is None:
                continue
            # every leaf of one prototype shares gate counts; prefer the one with most gate passes
            selected = sorted(leaves, key=lambda l: (-l.gate_pass_in_regime_count, l.node_id))[0]
            clause = clauses.get(selected.node_id)
            mood_count = result.in_regime_sample_count
            gate_pass = selected.gate_pass_in_regime_count
            gate_fail = selected.gate_fail_in_regime_count
            thresh_pass = selected.gate_pass_and_clause_pass_in_regime_count
            gate_pass_rate = gate_pass / mood_count if mood_count else 0.0
            p_given_gate = thresh_pass / gate_pass if gate_pass else None

            threshold = clause.threshold_value if clause and clause.threshold_value is not None else 0.0
            operator = clause.operator if clause and clause.operator else ">="
            analysis = axis_analysis.get((ptype, pid)) or \
                self.constraint_analyzer.analyze(prototype, regime, threshold, operator)
            conflicts = [AxisConflictFact(axis=a.axis, weight=a.weight, constraint_min=a.constraint_min,
                                          constraint_max=a.constraint_max, conflict_type=a.conflict_type,
                                          contribution_delta=a.contribution_delta, lost_raw_sum=a.lost_raw_sum,
                                          lost_intensity=a.lost_intensity, sources=a.sources)
                         for a in analysis.conflicts]

            facts.append(PrototypeFacts(
                prototype_id=pid,
                prototype_type=ptype,
                mood_sample_count=mood_count,
                gate_fail_count=gate_fail,
                gate_pass_count=gate_pass,
                threshold_pass_count=thresh_pass,
                gate_fail_rate=gate_fail / mood_count if mood_count else 0.0,
                gate_pass_rate=gate_pass_rate,
                p_thresh_given_gate=p_given_gate,
                p_thresh_effective=gate_pass_rate * (p_given_gate or 0.0),
                mean_value_given_gate=selected.value_sum_given_gate_in_regime / gate_pass if gate_pass else 0.0,
                failed_gate_counts=sorted((FailedGateCount(gate_id=g, count=c)
                                           for g, c in selected.failed_gate_counts.items()),
                                          key=lambda f: (-f.count, f.gate_id)),
                compatibility_score=analysis.compatibility_score,
                axis_conflicts=conflicts,
            ))
        return facts
