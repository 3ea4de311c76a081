from __future__ import annotations

import logging
from enum import StrEnum
from typing import List, Optional, Sequence

from pydantic import BaseModel, Field

from exprdiag.facts import (AxisConflictFact, ClauseFacts, DiagnosticFacts, GateClampCandidate, GateClampFacts,
                            PrototypeFacts)

GATE_CLAMP_MIN_RATE = 0.2
GATE_CLAMP_MIN_KEEP = 0.5
GATE_CLAMP_MIN_DELTA = 0.1
CHOKE_GATE_FAIL_RATE = 0.2
CHOKE_PASS_GIVEN_GATE_MAX = 0.95

LOST_PASS_MISMATCH_RATE = 0.25
THRESHOLD_PASS_MISMATCH_RATE = 0.1
THRESHOLD_MEAN_MARGIN = 0.15
INCOMPATIBLE_SCORE = -0.25
TOP_CLAUSES = 3


class Severity(StrEnum):
    High = "high"
    Medium = "medium"
    Low = "low"


SEVERITY_ORDER = {Severity.High: 0, Severity.Medium: 1, Severity.Low: 2}


class Confidence(StrEnum):
    High = "high"
    Medium = "medium"
    Low = "low"


class ChokeType(StrEnum):
    Gate = "gate"
    Threshold = "threshold"
    Mixed = "mixed"


class RecommendationType(StrEnum):
    PrototypeMismatch = "prototype_mismatch"
    GateIncompatibility = "gate_incompatibility"
    AxisSignConflict = "axis_sign_conflict"
    GateClampRegimePermissive = "gate_clamp_regime_permissive"


class Population(BaseModel):
    name: str
    count: int


class EvidenceItem(BaseModel):
    label: str
    numerator: float
    denominator: float
    value: float
    population: Optional[Population] = None


class Recommendation(BaseModel):
    id: str
    type: RecommendationType
    severity: Severity
    confidence: Confidence
    title: str
    why: str
    evidence: List[EvidenceItem] = Field(default_factory=list)
    actions: List[str] = Field(default_factory=list)
    predicted_effect: str
    related_clause_ids: List[str] = Field(default_factory=list)
    prototype_id: Optional[str] = None
    choke_type: Optional[ChokeType] = None


def confidence_for(mood_sample_count: int) -> Confidence:
    if mood_sample_count >= 500:
        return Confidence.High
    if mood_sample_count >= 200:
        return Confidence.Medium
    return Confidence.Low


def severity_for(impact: float) -> Severity:
    if impact >= 0.2:
        return Severity.High
    if impact >= 0.1:
        return Severity.Medium
    return Severity.Low


def _evidence(label: str, numerator: float, denominator: float, population: Optional[Population] = None) -> EvidenceItem:
    value = numerator / denominator if denominator else 0.0
    return EvidenceItem(label=label, numerator=numerator, denominator=denominator, value=value, population=population)


def _pct(rate: Optional[float]) -> str:
    return f"{(rate or 0.0) * 100:.1f}%"


class _ClauseFlags(BaseModel):
    gate_mismatch: bool = False
    threshold_mismatch: bool = False
    gate_incompatibility: bool = False
    axis_sign_conflict: bool = False

    @property
    def has_any(self) -> bool:
        return self.gate_mismatch or self.threshold_mismatch or self.gate_incompatibility or self.axis_sign_conflict


class RecommendationEngine:
    """
    Turns DiagnosticFacts into ranked, evidence-backed recommendations. Only the three highest-impact
    clauses are considered, and nothing is produced while any invariant fails.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)

    def generate(self, facts: Optional[DiagnosticFacts]) -> List[Recommendation]:
        if facts is None:
            return []
        if facts.failed_invariants:
            self.logger.warning(f"Suppressing recommendations for {facts.expression_id}: "
                                f"{', '.join(i.id for i in facts.failed_invariants)}")
            return []
        if not facts.clauses:
            return []

        top = sorted(facts.clauses, key=lambda c: (-c.impact, c.clause_id))[:TOP_CLAUSES]
        recommendations: List[Recommendation] = []

        for clause in top:
            rec = self._gate_clamp_recommendation(clause)
            if rec is not None:
                recommendations.append(rec)

        if facts.prototypes:
            for clause in top:
                if clause.prototype_id is None:
                    continue
                proto = next((p for p in facts.prototypes
                              if p.prototype_id == clause.prototype_id and
                              (clause.prototype_type is None or p.prototype_type == clause.prototype_type)), None)
                if proto is None:
                    continue
                recommendations.extend(self._prototype_recommendations(clause, proto))

        impact = {c.clause_id: c.impact for c in facts.clauses}
        recommendations.sort(key=lambda r: (SEVERITY_ORDER[r.severity],
                                            -max((impact.get(cid, 0.0) for cid in r.related_clause_ids), default=0.0),
                                            r.id))
        self.logger.info(f"{facts.expression_id}: {len(recommendations)} recommendations")
        return recommendations

    # ---------- prototype-linked ----------

    @staticmethod
    def _flags(clause: ClauseFacts, proto: PrototypeFacts) -> _ClauseFlags:
        flags = _ClauseFlags()
        lost_rate = clause.lost_pass_rate_in_regime
        flags.gate_mismatch = clause.operator == ">=" and lost_rate is not None and lost_rate >= LOST_PASS_MISMATCH_RATE
        t = clause.threshold_value
        p_given_gate = proto.p_thresh_given_gate
        flags.threshold_mismatch = (t is not None and p_given_gate is not None and
                                    p_given_gate <= THRESHOLD_PASS_MISMATCH_RATE and
                                    proto.mean_value_given_gate <= t - THRESHOLD_MEAN_MARGIN)
        has_blocking = clause.operator in (">=", ">")
        flags.gate_incompatibility = has_blocking and proto.compatibility_score <= INCOMPATIBLE_SCORE
        flags.axis_sign_conflict = (bool(proto.axis_conflicts) and has_blocking and
                                    (p_given_gate is None or p_given_gate < CHOKE_PASS_GIVEN_GATE_MAX) and
                                    RecommendationEngine.classify_choke_type(clause, proto)
                                    in (ChokeType.Threshold, ChokeType.Mixed))
        return flags

    @staticmethod
    def classify_choke_type(clause: ClauseFacts, proto: PrototypeFacts,
                            gate_mismatch: Optional[bool] = None, threshold_mismatch: Optional[bool] = None) -> ChokeType:
        """Whether a prototype clause is held back by its gates, its threshold, or both."""
        if gate_mismatch and threshold_mismatch:
            return ChokeType.Mixed
        if gate_mismatch:
            return ChokeType.Gate
        if threshold_mismatch:
            return ChokeType.Threshold

        gate_problem = proto.gate_fail_rate >= CHOKE_GATE_FAIL_RATE
        threshold_problem = False
        if proto.gate_pass_count > 0:
            if proto.p_thresh_given_gate is not None:
                threshold_problem = proto.p_thresh_given_gate < CHOKE_PASS_GIVEN_GATE_MAX
            elif clause.threshold_value is not None:
                threshold_problem = proto.mean_value_given_gate < clause.threshold_value
        if gate_problem and threshold_problem:
            return ChokeType.Mixed
        if gate_problem:
            return ChokeType.Gate
        if threshold_problem:
            return ChokeType.Threshold
        return ChokeType.Mixed

    def _prototype_recommendations(self, clause: ClauseFacts, proto: PrototypeFacts) -> List[Recommendation]:
        flags = self._flags(clause, proto)
        if not flags.has_any:
            return []
        confidence = confidence_for(proto.mood_sample_count)
        severity = severity_for(clause.impact)
        low_confidence_note = f"Low confidence due to limited mood samples (N={proto.mood_sample_count})."
        res = []

        if flags.gate_mismatch or flags.threshold_mismatch:
            choke = self.classify_choke_type(clause, proto, flags.gate_mismatch, flags.threshold_mismatch)
            why = ["Prototype-linked clause is a top-3 impact choke."]
            if flags.gate_mismatch:
                why.append("Lost-pass rate exceeds 25%.")
            if flags.threshold_mismatch:
                why.append("Pass|gate and mean value trail the clause threshold.")
            if confidence == Confidence.Low:
                why.append(low_confidence_note)
            actions = []
            if flags.gate_mismatch:
                actions.append("Tighten mood-regime axis constraints that allow gate-clamped states.")
                actions.append("Loosen prototype gate thresholds or swap the prototype.")
            if flags.threshold_mismatch:
                actions.append("Lower the prototype threshold or rebalance weights to raise values.")
            if not actions:
                actions.append("Review prototype gating and threshold alignment.")
            res.append(Recommendation(
                id=f"{RecommendationType.PrototypeMismatch}:{proto.prototype_id}:{clause.clause_id}",
                type=RecommendationType.PrototypeMismatch, severity=severity, confidence=confidence,
                title="Prototype structurally mismatched", why=" ".join(why),
                evidence=self.build_evidence(clause, proto, choke, flags),
                actions=actions, predicted_effect="Reduce mismatch to improve trigger rate and stability.",
                related_clause_ids=[clause.clause_id], prototype_id=proto.prototype_id, choke_type=choke,
            ))

        if flags.gate_incompatibility:
            why = ["Prototype-linked clause is a top-3 impact choke.",
                   "Gate compatibility indicates the regime blocks this prototype.",
                   "Prototype values are always clamped to 0 in the regime."]
            if confidence == Confidence.Low:
                why.append(low_confidence_note)
            res.append(Recommendation(
                id=f"{RecommendationType.GateIncompatibility}:{proto.prototype_id}:{clause.clause_id}",
                type=RecommendationType.GateIncompatibility, severity=severity, confidence=confidence,
                title="Prototype gate incompatible with regime", why=" ".join(why),
                evidence=self.build_evidence(clause, proto, ChokeType.Gate, flags),
                actions=["Regime makes the gate impossible; adjust gate inputs or swap prototype."],
                predicted_effect="Align gate constraints to allow the prototype to activate.",
                related_clause_ids=[clause.clause_id], prototype_id=proto.prototype_id, choke_type=ChokeType.Gate,
            ))

        if flags.axis_sign_conflict:
            choke = self.classify_choke_type(clause, proto)
            conflicts = proto.axis_conflicts
            why = ["Prototype-linked clause is a top-3 impact choke.",
                   "Axis sign conflicts indicate regime constraints oppose prototype weights.",
                   "Conflicts: " + ", ".join(f"{c.axis} ({c.conflict_type})" for c in conflicts) + "."]
            if confidence == Confidence.Low:
                why.append(low_confidence_note)
            sources = sorted({s for c in conflicts for s in c.sources})
            actions = [f"Relax regime axis bound(s) created by: {', '.join(sources)}." if sources
                       else "Relax the regime axis bounds that oppose the prototype weight.",
                       "Adjust prototype weights by moving weight toward 0 or reducing magnitude."]
            evidence = self._axis_conflict_evidence(conflicts, proto) + self.build_evidence(clause, proto, choke, flags)
            res.append(Recommendation(
                id=f"{RecommendationType.AxisSignConflict}:{proto.prototype_id}:{clause.clause_id}",
                type=RecommendationType.AxisSignConflict,
                severity=self._axis_conflict_severity(conflicts, clause), confidence=confidence,
                title="Prototype axis sign conflict", why=" ".join(why), evidence=evidence, actions=actions,
                predicted_effect="Reduce opposing constraints to align prototype weights with the regime.",
                related_clause_ids=[clause.clause_id], prototype_id=proto.prototype_id, choke_type=choke,
            ))
        return res

    @staticmethod
    def _axis_conflict_evidence(conflicts: Sequence[AxisConflictFact], proto: PrototypeFacts) -> List[EvidenceItem]:
        ranked = sorted(conflicts, key=lambda c: (-(c.lost_intensity or 0.0), c.axis))[:3]
        population = Population(name="mood-regime", count=proto.mood_sample_count)
        return [EvidenceItem(
            label=f"Axis conflict ({c.conflict_type}): {c.axis} weight {c.weight:+.2f}, "
                  f"regime [{c.constraint_min:.2f}, {c.constraint_max:.2f}], "
                  f"lostRawSum {c.lost_raw_sum or 0.0:.2f}, lostIntensity {c.lost_intensity or 0.0:.2f}",
            numerator=c.lost_raw_sum or 0.0, denominator=1, value=c.lost_intensity or 0.0, population=population)
            for c in ranked]

    @staticmethod
    def _axis_conflict_severity(conflicts: Sequence[AxisConflictFact], clause: ClauseFacts) -> Severity:
        t = clause.threshold_value
        if t is None or t <= 0:
            return severity_for(clause.impact)
        ratio = max((c.lost_intensity or 0.0) for c in conflicts) / t
        if ratio < 0.15:
            return Severity.Low
        if ratio < 0.3:
            return Severity.Medium
        return Severity.High

    @staticmethod
    def build_evidence(clause: ClauseFacts, proto: PrototypeFacts, choke: ChokeType,
                       flags: _ClauseFlags) -> List[EvidenceItem]:
        mood = Population(name="mood-regime", count=proto.mood_sample_count)
        gate_pass = Population(name="gate-pass (mood-regime)", count=proto.gate_pass_count)
        evidence = []
        if choke in (ChokeType.Gate, ChokeType.Mixed):
            evidence.append(_evidence("Gate fail rate", proto.gate_fail_count, proto.mood_sample_count, mood))
            if flags.gate_mismatch and clause.raw_pass_in_regime_count:
                evidence.append(_evidence("Lost passes | raw >= threshold", clause.lost_pass_in_regime_count or 0,
                                          clause.raw_pass_in_regime_count,
                                          Population(name="mood-regime raw >= threshold",
                                                     count=clause.raw_pass_in_regime_count)))
            if flags.gate_mismatch and proto.failed_gate_counts and proto.gate_fail_count:
                top = proto.failed_gate_counts[0]
                evidence.append(_evidence(f"Most failed gate: {top.gate_id}", top.count, proto.gate_fail_count,
                                          Population(name="gate-fail (mood-regime)", count=proto.gate_fail_count)))
            if flags.gate_incompatibility:
                evidence.append(_evidence("Gate compatibility", proto.compatibility_score, 1, mood))
        if choke in (ChokeType.Threshold, ChokeType.Mixed):
            evidence.append(_evidence("Pass | gate", proto.threshold_pass_count, proto.gate_pass_count, gate_pass))
            evidence.append(_evidence("Mean value | gate", proto.mean_value_given_gate, 1, gate_pass))
            if clause.threshold_value is not None:
                evidence.append(_evidence("Clause threshold", clause.threshold_value, 1, mood))
        return evidence

    # ---------- regime-permissive gate clamps ----------

    @staticmethod
    def _tightens(candidate: GateClampCandidate) -> bool:
        for p in candidate.axes:
            if p.regime_min is None and p.regime_max is None:
                return True
            if p.operator in (">=", ">") and (p.regime_min is None or p.threshold_raw > p.regime_min):
                return True
            if p.operator in ("<=", "<") and (p.regime_max is None or p.threshold_raw < p.regime_max):
                return True
        return False

    def _eligible_candidates(self, gc: GateClampFacts) -> List[GateClampCandidate]:
        clamp = gc.gate_clamp_rate_in_regime or 0.0
        eligible = [c for c in gc.candidates
                    if c.keep_ratio is not None and c.keep_ratio >= GATE_CLAMP_MIN_KEEP and
                    c.pred_clamp_rate is not None and c.pred_clamp_rate <= clamp - GATE_CLAMP_MIN_DELTA and
                    self._tightens(c)]
        return sorted(eligible, key=lambda c: (c.pred_clamp_rate, -c.keep_ratio, c.id))

    def _gate_clamp_recommendation(self, clause: ClauseFacts) -> Optional[Recommendation]:
        gc = clause.gate_clamp_regime_permissive
        if gc is None or gc.all_gates_implied:
            return None
        if gc.gate_clamp_rate_in_regime is None or gc.gate_clamp_rate_in_regime < GATE_CLAMP_MIN_RATE:
            return None
        eligible = self._eligible_candidates(gc)
        if not eligible:
            return None
        candidate = eligible[0]
        mood = Population(name="mood-regime", count=gc.mood_regime_count)
        kept = Population(name="mood-regime (candidate kept)", count=candidate.keep_count)

        evidence = [
            _evidence("Gate clamp rate (mood regime)", gc.gate_fail_in_regime_count, gc.mood_regime_count, mood),
            _evidence("Keep ratio for proposed constraint", candidate.keep_count, candidate.keep_denominator, mood),
            EvidenceItem(label="Predicted gate clamp rate (post-constraint)",
                         numerator=round((candidate.pred_clamp_rate or 0.0) * candidate.pred_sample_count),
                         denominator=candidate.pred_sample_count, value=candidate.pred_clamp_rate or 0.0,
                         population=kept),
            _evidence("Gate pass count (mood regime)", gc.gate_pass_in_regime_count, gc.mood_regime_count, mood),
        ]
        candidate_axes = {p.axis for p in candidate.axes}
        for ax in gc.axis_evidence:
            if ax.axis not in candidate_axes:
                continue
            evidence.append(EvidenceItem(label=f"Axis below gate ({ax.axis} < {ax.threshold_raw:g})",
                                         numerator=ax.fraction_below.count, denominator=ax.fraction_below.denominator,
                                         value=ax.fraction_below.rate or 0.0, population=mood))
            evidence.append(EvidenceItem(label=f"Axis above gate ({ax.axis} > {ax.threshold_raw:g})",
                                         numerator=ax.fraction_above.count, denominator=ax.fraction_above.denominator,
                                         value=ax.fraction_above.rate or 0.0, population=mood))

        bounds = ", ".join(f"{p.axis} {p.operator} {p.threshold_raw:g}" for p in candidate.axes)
        why = ["Mood regime admits gate-clamped states for this clause.",
               f"Gate clamp rate is {_pct(gc.gate_clamp_rate_in_regime)}.",
               f"Candidate constraint keeps {_pct(candidate.keep_ratio)} of regime samples."]
        confidence = confidence_for(gc.mood_regime_count)
        if confidence == Confidence.Low:
            why.append(f"Low confidence due to limited mood samples (N={gc.mood_regime_count}).")
        return Recommendation(
            id=f"{RecommendationType.GateClampRegimePermissive}:{clause.clause_id}:{candidate.id}",
            type=RecommendationType.GateClampRegimePermissive,
            severity=severity_for(clause.impact), confidence=confidence,
            title="Mood regime allows gate-clamped states", why=" ".join(why), evidence=evidence,
            actions=["Tighten mood-regime axis constraints that allow gate-clamped states.",
                     f"Add regime bounds aligned with gate predicates: {bounds}.",
                     "If the regime cannot be tightened safely, revisit gate thresholds instead."],
            predicted_effect="Reduce gate clamp frequency while preserving regime coverage.",
            related_clause_ids=[clause.clause_id], prototype_id=clause.prototype_id,
            choke_type=ChokeType.Gate,
        )
