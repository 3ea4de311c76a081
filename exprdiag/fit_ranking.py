from __future__ import annotations

import hashlib
import json
import logging
import math
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from pydantic import BaseModel, Field
from scipy.spatial import distance

from exprdiag.axes import AxisModel
from exprdiag.config import FitSettings
from exprdiag.constraints import AxisConstraintAnalyzer, IntensityRange
from exprdiag.expression import Expression, detect_prototype_types, extract_prototype_reference, infer_regime
from exprdiag.prototypes import Prototype, PrototypeFilter, PrototypeRegistry, PrototypeType
from exprdiag.simulation import ClauseFailure, vector_compare
from exprdiag.state import MoodRegime, PsychState

WEIGHT_GATE_PASS = 0.30
WEIGHT_INTENSITY = 0.35
WEIGHT_CONFLICT = 0.20
WEIGHT_EXCLUSION = 0.15

DIRECTION_DEADBAND = 0.1
DEFAULT_LAST_MILE_WEIGHT = 0.5
SIMILARITY_WEIGHT = 0.6
GATE_PASS_WEIGHT = 0.4
WEIGHT_DISTANCE_SHARE = 0.7
GATE_DISTANCE_SHARE = 0.3
SYNTHESIS_EPSILON = 0.01


class IntensityDistribution(BaseModel):
    p50: float = 0.0
    p90: float = 0.0
    p95: float = 0.0
    p_above_threshold: float = 0.0
    min: Optional[float] = None
    max: Optional[float] = None


class ConflictingAxis(BaseModel):
    axis: str
    weight: float
    direction: str


class GateCompatibility(BaseModel):
    compatible: bool
    reason: Optional[str] = None


class PrototypeFitResult(BaseModel):
    prototype_id: str
    type: PrototypeType
    rank: int = 0
    gate_pass_rate: float
    intensity_distribution: IntensityDistribution
    conflict_score: float
    conflict_magnitude: float
    conflicting_axes: List[ConflictingAxis] = Field(default_factory=list)
    composite_score: float
    gate_compatibility: GateCompatibility
    axis_only_range: IntensityRange
    in_regime_range: IntensityRange | None = None


class FitAnalysis(BaseModel):
    leaderboard: List[PrototypeFitResult] = Field(default_factory=list)
    current_prototype: Optional[PrototypeFitResult] = None
    best_alternative: Optional[str] = None
    improvement_factor: Optional[float] = None
    threshold: float
    sample_count: int = 0
    regime_sample_count: int = 0


class TargetSignatureEntry(BaseModel):
    direction: int
    tightness: float
    last_mile_weight: float
    importance: float


class ImpliedPrototypeMatch(BaseModel):
    prototype_id: str
    type: PrototypeType
    cosine_similarity: float
    gate_pass_rate: float
    combined_score: float


class ImpliedPrototypeAnalysis(BaseModel):
    target_signature: Dict[str, TargetSignatureEntry] = Field(default_factory=dict)
    by_similarity: List[ImpliedPrototypeMatch] = Field(default_factory=list)
    by_gate_pass: List[ImpliedPrototypeMatch] = Field(default_factory=list)
    by_combined: List[ImpliedPrototypeMatch] = Field(default_factory=list)


class NeighborDistance(BaseModel):
    prototype_id: str
    type: PrototypeType
    weight_distance: float
    gate_distance: float
    combined_distance: float
    p_intensity_above: float


class SuggestedPrototype(BaseModel):
    weights: Dict[str, float]
    gates: List[str]
    rationale: str


class PrototypeGapAnalysis(BaseModel):
    gap_detected: bool = False
    nearest_distance: Optional[float] = None
    k_nearest_neighbors: List[NeighborDistance] = Field(default_factory=list)
    coverage_warning: Optional[str] = None
    suggested_prototype: Optional[SuggestedPrototype] = None
    gap_threshold: float
    distance_percentile: Optional[float] = None
    distance_z_score: Optional[float] = None
    distance_context: Optional[str] = None


def percentile_of_sorted(sorted_values: Sequence[float], p: float) -> float:
    """Lower nearest-rank percentile: sorted[floor(p * (n - 1))]."""
    if len(sorted_values) == 0:
        return 0.0
    return float(sorted_values[int(math.floor(p * (len(sorted_values) - 1)))])


class _ContextMatrix:
    """Normalized values of the stored contexts, one column per axis, plus the in-regime row mask."""

    def __init__(self, axis_model: AxisModel, states: Sequence[PsychState], regime: MoodRegime):
        self.axes = axis_model.names()
        self.columns = {a: i for i, a in enumerate(self.axes)}
        if states:
            rows = []
            for s in states:
                normalized = s.normalized(axis_model)
                rows.append([normalized[a] for a in self.axes])
            self.values = np.array(rows, dtype=float)
        else:
            self.values = np.zeros((0, len(self.axes)))
        mask = np.ones(len(states), dtype=bool)
        for axis, bound in regime.bounds.items():
            col = self.values[:, self.columns[axis]]
            if bound.min is not None:
                mask &= col >= bound.min
            if bound.max is not None:
                mask &= col <= bound.max
        self.in_regime = self.values[mask]

    def column(self, rows: np.ndarray, axis: str) -> np.ndarray:
        return rows[:, self.columns[axis]]


class PrototypeFitRankingService:
    """
    Ranks registered prototypes against what an expression seems to want, so that
    "used the wrong prototype" mistakes surface. Everything is computed over the stored
    contexts of a simulation; nothing here resamples.
    """

    def __init__(self, axis_model: AxisModel, registry: PrototypeRegistry,
                 constraint_analyzer: Optional[AxisConstraintAnalyzer] = None,
                 settings: Optional[FitSettings] = None, logger: Optional[logging.Logger] = None):
        self.axis_model = axis_model
        self.registry = registry
        self.settings = settings or FitSettings()
        self.logger = logger or logging.getLogger(__name__)
        self.constraint_analyzer = constraint_analyzer or AxisConstraintAnalyzer(axis_model, logger=self.logger)
        self._cache: Dict[str, FitAnalysis] = {}
        self._distance_stats: Dict[str, Optional[Tuple[float, float, List[float]]]] = {}

    # ---------- cache ----------

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    def clear_cache(self) -> None:
        self._cache.clear()
        self._distance_stats.clear()

    @staticmethod
    def _cache_key(expression: Expression, matrix: _ContextMatrix, regime: MoodRegime, threshold: float,
                   prototypes: Sequence[Prototype]) -> str:
        digest = hashlib.sha256()
        for p in sorted(prototypes, key=lambda p: p.key):
            digest.update(p.model_dump_json().encode("utf-8"))
        digest.update(expression.fingerprint().encode("utf-8"))
        digest.update(np.ascontiguousarray(matrix.values).tobytes())
        digest.update(json.dumps(regime.definition(), sort_keys=True).encode("utf-8"))
        digest.update(repr(float(threshold)).encode("utf-8"))
        return digest.hexdigest()

    # ---------- helpers ----------

    def _regime(self, expression: Expression, regime: Optional[MoodRegime]) -> MoodRegime:
        if regime is not None and not regime.is_global:
            return regime
        return infer_regime(expression, self.axis_model)

    def _threshold(self, expression: Expression, threshold: Optional[float]) -> float:
        if threshold is not None:
            return threshold
        reference = extract_prototype_reference(expression)
        if reference is not None:
            return reference.threshold
        return self.settings.default_threshold

    def _candidates(self, expression: Expression) -> Tuple[PrototypeFilter, List[Prototype]]:
        hints = detect_prototype_types(expression)
        return hints, self.registry.get_all_prototypes(hints)

    def _constraints(self, regime: MoodRegime) -> Dict[str, Tuple[float, float]]:
        return {axis: regime.interval(axis, self.axis_model) for axis in regime.bounds}

    @staticmethod
    def _gate_mask(prototype: Prototype, matrix: _ContextMatrix, rows: np.ndarray) -> np.ndarray:
        mask = np.ones(len(rows), dtype=bool)
        for gate in prototype.gates:
            mask &= vector_compare(matrix.column(rows, gate.axis), gate.operator, gate.threshold)
        return mask

    @staticmethod
    def _raw_intensities(prototype: Prototype, matrix: _ContextMatrix, rows: np.ndarray) -> np.ndarray:
        if not prototype.weights:
            return np.zeros(len(rows))
        total = np.zeros(len(rows))
        for axis, w in prototype.weights.items():
            total += w * matrix.column(rows, axis)
        return np.clip(total / prototype.normalizer, 0.0, 1.0)

    def gate_pass_rate(self, prototype: Prototype, matrix: _ContextMatrix, rows: np.ndarray) -> float:
        if len(rows) == 0:
            return 0.0
        if not prototype.gates:
            return 1.0
        return float(self._gate_mask(prototype, matrix, rows).mean())

    def intensity_distribution(self, prototype: Prototype, matrix: _ContextMatrix, rows: np.ndarray,
                               threshold: float) -> IntensityDistribution:
        if len(rows) == 0:
            return IntensityDistribution()
        passing = rows[self._gate_mask(prototype, matrix, rows)]
        if len(passing) == 0:
            return IntensityDistribution()
        intensities = np.sort(self._raw_intensities(prototype, matrix, passing))
        return IntensityDistribution(
            p50=percentile_of_sorted(intensities, 0.5),
            p90=percentile_of_sorted(intensities, 0.9),
            p95=percentile_of_sorted(intensities, 0.95),
            p_above_threshold=float(np.mean(intensities >= threshold)),
            min=float(intensities[0]),
            max=float(intensities[-1]),
        )

    @staticmethod
    def analyze_conflicts(weights: Dict[str, float],
                          constraints: Dict[str, Tuple[float, float]]) -> Tuple[float, float, List[ConflictingAxis]]:
        """Sign of each weight against the side of zero the regime interval sits on."""
        if not constraints:
            return 0.0, 0.0, []
        axes = []
        magnitude = 0.0
        for axis, (lo, hi) in constraints.items():
            weight = weights.get(axis, 0.0)
            if weight == 0:
                continue
            constraint_direction = 1 if (lo + hi) / 2 >= 0 else -1
            weight_direction = 1 if weight > 0 else -1
            if weight_direction != constraint_direction:
                axes.append(ConflictingAxis(axis=axis, weight=weight,
                                            direction="positive" if weight_direction > 0 else "negative"))
                magnitude += abs(weight)
        return len(axes) / len(constraints), magnitude, axes

    @staticmethod
    def composite_score(gate_pass_rate: float, p_intensity_above: float, conflict_score: float,
                        exclusion_compatibility: float = 1.0) -> float:
        return (WEIGHT_GATE_PASS * gate_pass_rate
                + WEIGHT_INTENSITY * p_intensity_above
                + WEIGHT_CONFLICT * (1 - conflict_score)
                + WEIGHT_EXCLUSION * exclusion_compatibility)

    def _gate_compatibility(self, prototype: Prototype, regime: MoodRegime,
                            threshold: float) -> Tuple[GateCompatibility, IntensityRange]:
        analysis = self.constraint_analyzer.analyze(prototype, regime, threshold)
        reason = None
        if analysis.blocking_gates:
            g = analysis.blocking_gates[0]
            reason = f"{g.gate} cannot hold for {g.axis} in [{g.interval_min:.2f}, {g.interval_max:.2f}]"
        elif not analysis.all_gates_satisfiable:
            reason = "gates on the same axis exclude each other"
        return GateCompatibility(compatible=analysis.all_gates_satisfiable, reason=reason), analysis.gated_range

    # ---------- leaderboard ----------

    def analyze_all_prototype_fit(self, expression: Expression, stored_contexts: Sequence[PsychState],
                                  regime: Optional[MoodRegime] = None,
                                  threshold: Optional[float] = None) -> FitAnalysis:
        regime = self._regime(expression, regime)
        threshold = self._threshold(expression, threshold)
        matrix = _ContextMatrix(self.axis_model, stored_contexts, regime)
        _, prototypes = self._candidates(expression)
        key = self._cache_key(expression, matrix, regime, threshold, prototypes)
        cached = self._cache.get(key)
        if cached is not None:
            self.logger.debug(f"Fit ranking cache hit for {expression.id}")
            return cached.model_copy(deep=True)
        self.logger.debug(f"Fit ranking cache miss for {expression.id}")

        constraints = self._constraints(regime)
        rows = matrix.in_regime
        self.logger.debug(f"{len(rows)}/{len(stored_contexts)} contexts in regime")

        results = []
        for proto in prototypes:
            gate_rate = self.gate_pass_rate(proto, matrix, rows)
            dist = self.intensity_distribution(proto, matrix, rows, threshold)
            compatibility, axis_only = self._gate_compatibility(proto, regime, threshold)
            score, magnitude, conflicting = self.analyze_conflicts(proto.weights, constraints)
            in_regime = None
            if dist.min is not None:
                in_regime = IntensityRange(min=dist.min, max=dist.max)
            results.append(PrototypeFitResult(
                prototype_id=proto.id, type=proto.type, gate_pass_rate=gate_rate, intensity_distribution=dist,
                conflict_score=score, conflict_magnitude=magnitude, conflicting_axes=conflicting,
                composite_score=self.composite_score(gate_rate, dist.p_above_threshold, score),
                gate_compatibility=compatibility, axis_only_range=axis_only, in_regime_range=in_regime,
            ))

        # stable: equal scores keep registry order
        results.sort(key=lambda r: -r.composite_score)
        for i, r in enumerate(results):
            r.rank = i + 1

        leaderboard = results[:self.settings.leaderboard_size]
        reference = extract_prototype_reference(expression)
        current = None
        if reference is not None:
            current = next((r for r in results
                            if r.prototype_id == reference.prototype_id and r.type == reference.type), None)
        best_alternative = None
        improvement = None
        if current is not None and leaderboard and (leaderboard[0].prototype_id, leaderboard[0].type) != (current.prototype_id, current.type):
            best_alternative = leaderboard[0].prototype_id
            if current.composite_score > 0:
                improvement = leaderboard[0].composite_score / current.composite_score

        analysis = FitAnalysis(leaderboard=leaderboard, current_prototype=current, best_alternative=best_alternative,
                               improvement_factor=improvement, threshold=threshold,
                               sample_count=len(stored_contexts), regime_sample_count=len(rows))
        self._cache[key] = analysis
        return analysis.model_copy(deep=True)

    # ---------- implied prototype ----------

    def _tightness(self, axis: str, lo: float, hi: float) -> float:
        dlo, dhi = self.axis_model.normalized_domain(axis)
        return max(0.0, 1 - (hi - lo) / (dhi - dlo))

    @staticmethod
    def _direction(lo: float, hi: float) -> int:
        mid = (lo + hi) / 2
        if mid > DIRECTION_DEADBAND:
            return 1
        if mid < -DIRECTION_DEADBAND:
            return -1
        return 0

    @staticmethod
    def _last_mile_weight(axis: str, clause_failures: Sequence[ClauseFailure]) -> float:
        for failure in clause_failures or ():
            if axis in failure.description:
                return failure.last_mile_fail_rate or DEFAULT_LAST_MILE_WEIGHT
        return DEFAULT_LAST_MILE_WEIGHT

    def build_target_signature(self, regime: MoodRegime,
                               clause_failures: Sequence[ClauseFailure] = ()) -> Dict[str, TargetSignatureEntry]:
        signature = {}
        for axis, (lo, hi) in self._constraints(regime).items():
            tightness = self._tightness(axis, lo, hi)
            last_mile = self._last_mile_weight(axis, clause_failures)
            signature[axis] = TargetSignatureEntry(direction=self._direction(lo, hi), tightness=tightness,
                                                   last_mile_weight=last_mile,
                                                   importance=0.5 * tightness + 0.5 * last_mile)
        return signature

    @staticmethod
    def cosine_similarity(signature: Dict[str, TargetSignatureEntry], weights: Dict[str, float]) -> float:
        axes = sorted(set(signature) | set(weights))
        target = np.array([signature[a].direction * signature[a].importance if a in signature else 0.0 for a in axes])
        proto = np.array([weights.get(a, 0.0) for a in axes])
        if not axes or not target.any() or not proto.any():
            return 0.0
        return float(1.0 - distance.cosine(target, proto))

    def compute_implied_prototype(self, expression: Expression, stored_contexts: Sequence[PsychState],
                                  regime: Optional[MoodRegime] = None,
                                  clause_failures: Sequence[ClauseFailure] = ()) -> ImpliedPrototypeAnalysis:
        regime = self._regime(expression, regime)
        signature = self.build_target_signature(regime, clause_failures)
        _, prototypes = self._candidates(expression)
        if not signature or not prototypes:
            return ImpliedPrototypeAnalysis(target_signature=signature)

        matrix = _ContextMatrix(self.axis_model, stored_contexts, regime)
        matches = []
        for proto in prototypes:
            cos = self.cosine_similarity(signature, proto.weights)
            gate_rate = self.gate_pass_rate(proto, matrix, matrix.in_regime)
            matches.append(ImpliedPrototypeMatch(prototype_id=proto.id, type=proto.type, cosine_similarity=cos,
                                                 gate_pass_rate=gate_rate,
                                                 combined_score=SIMILARITY_WEIGHT * cos + GATE_PASS_WEIGHT * gate_rate))
        k = self.settings.implied_top_k
        return ImpliedPrototypeAnalysis(
            target_signature=signature,
            by_similarity=sorted(matches, key=lambda m: -m.cosine_similarity)[:k],
            by_gate_pass=sorted(matches, key=lambda m: -m.gate_pass_rate)[:k],
            by_combined=sorted(matches, key=lambda m: -m.combined_score)[:k],
        )

    # ---------- gap detection ----------

    @staticmethod
    def weight_distance(desired: Dict[str, float], weights: Dict[str, float]) -> float:
        """RMS difference over the union of axes."""
        axes = set(desired) | set(weights)
        if not axes:
            return 0.0
        return math.sqrt(sum((desired.get(a, 0.0) - weights.get(a, 0.0)) ** 2 for a in axes) / len(axes))

    @staticmethod
    def gate_distance(desired: Dict[str, Tuple[float, float]], prototype: Prototype) -> float:
        """Share of desired axis ranges that one of the prototype's gates rules out."""
        if not prototype.gates or not desired:
            return 0.0
        conflicts = 0
        for axis, (lo, hi) in desired.items():
            for gate in prototype.gates:
                if gate.axis == axis and not gate.satisfiable(lo, hi):
                    conflicts += 1
        return conflicts / len(desired)

    def _gate_ranges(self, prototype: Prototype) -> Dict[str, Tuple[float, float]]:
        ranges: Dict[str, Tuple[float, float]] = {}
        for gate in prototype.gates:
            lo, hi = ranges.get(gate.axis, self.axis_model.normalized_domain(gate.axis))
            ranges[gate.axis] = gate.interval(lo, hi)
        return ranges

    def prototype_distance(self, a: Prototype, b: Prototype) -> float:
        gate_dist = (self.gate_distance(self._gate_ranges(a), b) + self.gate_distance(self._gate_ranges(b), a)) / 2
        return WEIGHT_DISTANCE_SHARE * self.weight_distance(a.weights, b.weights) + GATE_DISTANCE_SHARE * gate_dist

    def _distance_distribution(self, hints: PrototypeFilter,
                               prototypes: List[Prototype]) -> Optional[Tuple[float, float, List[float]]]:
        """Nearest-neighbour distance of every prototype to the others: (mean, std, sorted distances)."""
        key = "|".join(sorted(p.model_dump_json() for p in prototypes))
        if key in self._distance_stats:
            return self._distance_stats[key]
        stats = None
        if len(prototypes) >= 2:
            nearest = [min(self.prototype_distance(p, q) for j, q in enumerate(prototypes) if j != i)
                       for i, p in enumerate(prototypes)]
            values = np.sort(np.asarray(nearest, dtype=float))
            stats = (float(values.mean()), float(values.std()), values.tolist())
        self._distance_stats[key] = stats
        return stats

    def _synthesize(self, neighbors: List[NeighborDistance], constraints: Dict[str, Tuple[float, float]]) -> SuggestedPrototype:
        weights: Dict[str, float] = {}
        total = 0.0
        for n in neighbors:
            w = 1 / (n.combined_distance + SYNTHESIS_EPSILON)
            total += w
            proto = self.registry.get_prototype(n.prototype_id, n.type)
            for axis, value in proto.weights.items():
                weights[axis] = weights.get(axis, 0.0) + value * w
        weights = {a: v / total for a, v in weights.items()} if total else weights
        gates = []
        for axis, (lo, hi) in constraints.items():
            dlo, dhi = self.axis_model.normalized_domain(axis)
            if lo > dlo:
                gates.append(f"{axis} >= {lo:.2f}")
            if hi < dhi:
                gates.append(f"{axis} <= {hi:.2f}")
        return SuggestedPrototype(weights=weights, gates=gates,
                                  rationale=f"Synthesized from {len(neighbors)} nearest neighbors "
                                            f"using distance-weighted averaging")

    def detect_prototype_gaps(self, expression: Expression, stored_contexts: Sequence[PsychState],
                              regime: Optional[MoodRegime] = None, threshold: Optional[float] = None,
                              clause_failures: Sequence[ClauseFailure] = ()) -> PrototypeGapAnalysis:
        regime = self._regime(expression, regime)
        threshold = self._threshold(expression, threshold)
        hints, prototypes = self._candidates(expression)
        gap_threshold = self.settings.gap_distance_threshold
        if not prototypes:
            return PrototypeGapAnalysis(gap_threshold=gap_threshold)

        signature = self.build_target_signature(regime, clause_failures)
        desired_weights = {a: e.direction * e.importance for a, e in signature.items()}
        desired_gates = self._constraints(regime)
        matrix = _ContextMatrix(self.axis_model, stored_contexts, regime)

        distances = []
        for proto in prototypes:
            wd = self.weight_distance(desired_weights, proto.weights)
            gd = self.gate_distance(desired_gates, proto)
            dist = self.intensity_distribution(proto, matrix, matrix.in_regime, threshold)
            distances.append(NeighborDistance(prototype_id=proto.id, type=proto.type, weight_distance=wd,
                                              gate_distance=gd,
                                              combined_distance=WEIGHT_DISTANCE_SHARE * wd + GATE_DISTANCE_SHARE * gd,
                                              p_intensity_above=dist.p_above_threshold))
        distances.sort(key=lambda d: d.combined_distance)
        nearest = distances[:self.settings.gap_neighbors]
        nearest_distance = nearest[0].combined_distance
        best_intensity = max(d.p_intensity_above for d in nearest)
        gap = nearest_distance > gap_threshold and best_intensity < self.settings.gap_intensity_threshold

        analysis = PrototypeGapAnalysis(gap_detected=gap, nearest_distance=nearest_distance,
                                        k_nearest_neighbors=nearest, gap_threshold=gap_threshold)
        stats = self._distance_distribution(hints, prototypes)
        if stats is not None:
            mean, std, sorted_distances = stats
            analysis.distance_percentile = sum(1 for d in sorted_distances if nearest_distance >= d) / len(sorted_distances)
            analysis.distance_z_score = (nearest_distance - mean) / std if std > 0 else 0.0
            analysis.distance_context = (f"Distance {nearest_distance:.2f} is farther than "
                                         f"{round(analysis.distance_percentile * 100)}% of prototype nearest-neighbor "
                                         f"distances (z={analysis.distance_z_score:.2f}).")
        if gap:
            analysis.coverage_warning = (f"No prototype within distance {gap_threshold:.2f}. "
                                         f"Best achieves only {best_intensity * 100:.1f}% intensity rate.")
            analysis.suggested_prototype = self._synthesize(nearest, desired_gates)
            self.logger.info(f"{expression.id}: prototype gap detected (nearest distance {nearest_distance:.2f})")
        return analysis
