from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from exprdiag.axes import AxisModel
from exprdiag.prototypes import EQUALITY_TOLERANCE, Prototype, PrototypeType
from exprdiag.state import MoodRegime

AXIS_ONLY_SCOPE = "axis-only"

POSITIVE_WEIGHT_LOW_MAX = "positive_weight_low_max"
NEGATIVE_WEIGHT_HIGH_MIN = "negative_weight_high_min"


class AxisAnalysis(BaseModel):
    axis: str
    weight: float
    default_min: float
    default_max: float
    constraint_min: float
    constraint_max: float
    optimal_value: float
    contribution: float
    unbounded_contribution: float
    conflict_type: Optional[str] = None
    lost_raw_sum: float = 0.0
    lost_intensity: float = 0.0
    sources: List[str] = Field(default_factory=list)

    @property
    def contribution_delta(self) -> float:
        return self.unbounded_contribution - self.contribution


class GateFeasibility(BaseModel):
    gate: str
    axis: str
    operator: str
    threshold: float
    interval_min: float
    interval_max: float
    satisfiable: bool
    implied: bool


class IntensityRange(BaseModel):
    min: float
    max: float


class AxisConstraintAnalysis(BaseModel):
    """Exact, sampling-free fit of one prototype against axis bounds."""
    prototype_id: str
    prototype_type: PrototypeType
    scope: str = AXIS_ONLY_SCOPE
    threshold: Optional[float] = None
    operator: str = ">="
    raw_range: IntensityRange
    gated_range: IntensityRange
    unbounded_gated_max: float
    axis_analysis: List[AxisAnalysis]
    gates: List[GateFeasibility]
    all_gates_satisfiable: bool
    achievable: Optional[bool] = None

    @property
    def conflicts(self) -> List[AxisAnalysis]:
        return [a for a in self.axis_analysis if a.conflict_type]

    @property
    def blocking_gates(self) -> List[GateFeasibility]:
        return [g for g in self.gates if not g.satisfiable]

    @property
    def compatibility_score(self) -> int:
        return 1 if self.all_gates_satisfiable else -1


def _clamp01(x: float) -> float:
    return max(0.0, min(1.0, x))


def threshold_reachable(lo: float, hi: float, operator: str, threshold: float) -> bool:
    """Whether some value of a continuous quantity ranging over [lo, hi] satisfies `op threshold`."""
    if operator == ">=":
        return hi >= threshold
    if operator == ">":
        return hi > threshold
    if operator == "<=":
        return lo <= threshold
    if operator == "<":
        return lo < threshold
    if operator == "==":
        return lo - EQUALITY_TOLERANCE < threshold < hi + EQUALITY_TOLERANCE
    return not (abs(lo - threshold) < EQUALITY_TOLERANCE and abs(hi - threshold) < EQUALITY_TOLERANCE)


class AxisConstraintAnalyzer:
    """
    Interval arithmetic over a prototype's weights and gates. Each weight's sign picks the regime
    bound that maximizes (or minimizes) its term, so the achievable range is exact for linear
    prototypes. Gates are single-axis predicates and therefore just narrow the same intervals.
    """

    def __init__(self, axis_model: AxisModel, logger: Optional[logging.Logger] = None):
        self.axis_model = axis_model
        self.logger = logger or logging.getLogger(__name__)

    def _intervals(self, prototype: Prototype, regime: MoodRegime) -> Dict[str, Tuple[float, float]]:
        axes = set(prototype.weights) | {g.axis for g in prototype.gates}
        return {a: regime.interval(a, self.axis_model) for a in axes}

    @staticmethod
    def _raw_range(prototype: Prototype, intervals: Dict[str, Tuple[float, float]]) -> Tuple[float, float]:
        hi_sum = 0.0
        lo_sum = 0.0
        for axis, w in prototype.weights.items():
            lo, hi = intervals[axis]
            if w >= 0:
                hi_sum += w * hi
                lo_sum += w * lo
            else:
                hi_sum += w * lo
                lo_sum += w * hi
        if not prototype.weights:
            return 0.0, 0.0
        return _clamp01(lo_sum / prototype.normalizer), _clamp01(hi_sum / prototype.normalizer)

    def gated_range(self, prototype: Prototype, regime: Optional[MoodRegime] = None) -> Tuple[IntensityRange, List[GateFeasibility]]:
        regime = regime or MoodRegime()
        intervals = self._intervals(prototype, regime)
        gated = dict(intervals)
        feasibility = []
        all_ok = True
        every_implied = True
        for gate in prototype.gates:
            lo, hi = intervals[gate.axis]
            ok = gate.satisfiable(lo, hi)
            implied = gate.implied_by(lo, hi)
            all_ok = all_ok and ok
            every_implied = every_implied and implied
            glo, ghi = gated[gate.axis]
            gated[gate.axis] = gate.interval(glo, ghi)
            feasibility.append(GateFeasibility(gate=gate.text, axis=gate.axis, operator=gate.operator,
                                               threshold=gate.threshold, interval_min=lo, interval_max=hi,
                                               satisfiable=ok, implied=implied))
        # two gates on one axis can each be satisfiable but jointly empty
        if not all_ok or any(lo > hi for lo, hi in gated.values()):
            return IntensityRange(min=0.0, max=0.0), feasibility
        gmin, gmax = self._raw_range(prototype, gated)
        if not every_implied:
            gmin = 0.0
        return IntensityRange(min=gmin, max=gmax), feasibility

    def analyze(self, prototype: Prototype, regime: Optional[MoodRegime] = None,
                threshold: Optional[float] = None, operator: str = ">=") -> AxisConstraintAnalysis:
        regime = regime or MoodRegime()
        intervals = self._intervals(prototype, regime)
        raw_lo, raw_hi = self._raw_range(prototype, intervals)
        gated, feasibility = self.gated_range(prototype, regime)
        unbounded, _ = self.gated_range(prototype, MoodRegime())

        axis_rows = []
        for axis, w in prototype.weights.items():
            spec = self.axis_model.spec(axis)
            dlo, dhi = spec.norm_min, spec.norm_max
            lo, hi = intervals[axis]
            optimal = hi if w >= 0 else lo
            default_optimal = dhi if w >= 0 else dlo
            row = AxisAnalysis(axis=axis, weight=w, default_min=dlo, default_max=dhi,
                               constraint_min=lo, constraint_max=hi, optimal_value=optimal,
                               contribution=w * optimal, unbounded_contribution=w * default_optimal,
                               sources=list(regime.sources.get(axis, [])))
            if axis in regime.bounds:
                if w > 0 and hi < dhi and hi <= spec.norm_midpoint:
                    row.conflict_type = POSITIVE_WEIGHT_LOW_MAX
                elif w < 0 and lo > dlo and lo >= spec.norm_midpoint:
                    row.conflict_type = NEGATIVE_WEIGHT_HIGH_MIN
                if row.conflict_type:
                    row.lost_raw_sum = abs(w) * abs(default_optimal - optimal)
                    row.lost_intensity = row.lost_raw_sum / prototype.normalizer
            axis_rows.append(row)

        all_ok = self.gates_feasible(prototype, regime)
        achievable = None
        if threshold is not None:
            achievable = threshold_reachable(gated.min, gated.max, operator, threshold)

        analysis = AxisConstraintAnalysis(
            prototype_id=prototype.id, prototype_type=prototype.type, threshold=threshold, operator=operator,
            raw_range=IntensityRange(min=raw_lo, max=raw_hi), gated_range=gated,
            unbounded_gated_max=unbounded.max, axis_analysis=axis_rows, gates=feasibility,
            all_gates_satisfiable=all_ok, achievable=achievable,
        )
        if analysis.conflicts:
            self.logger.debug(f"{prototype.id}: axis conflicts "
                              f"{', '.join(f'{c.axis} ({c.conflict_type})' for c in analysis.conflicts)}")
        return analysis

    @staticmethod
    def _jointly_empty(prototype: Prototype, intervals: Dict[str, Tuple[float, float]]) -> bool:
        narrowed = dict(intervals)
        for gate in prototype.gates:
            lo, hi = narrowed[gate.axis]
            narrowed[gate.axis] = gate.interval(lo, hi)
        return any(lo > hi for lo, hi in narrowed.values())

    def gates_feasible(self, prototype: Prototype, regime: Optional[MoodRegime] = None) -> bool:
        """Exact satisfiability of every gate under the regime bounds."""
        regime = regime or MoodRegime()
        intervals = self._intervals(prototype, regime)
        return all(g.satisfiable(*intervals[g.axis]) for g in prototype.gates) and \
            not self._jointly_empty(prototype, intervals)
