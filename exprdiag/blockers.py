from __future__ import annotations

import logging
from enum import StrEnum
from typing import List, Optional, Tuple

import numpy as np
from pydantic import BaseModel, Field
from scipy.stats import skew

from exprdiag.config import BlockerSettings
from exprdiag.constraints import AxisConstraintAnalyzer, threshold_reachable
from exprdiag.evaluator import AROUSAL_PATHS, SEXUAL_AXES_ROOT, TRAIT_ROOT, BreakdownNode
from exprdiag.expression import MOOD_ROOTS, Comparison, NodeTag
from exprdiag.prototypes import PrototypeRegistry
from exprdiag.simulation import SimulationResult
from exprdiag.state import MoodRegime

PERCENTILES = (10, 25, 50, 75, 90)
SKEW_NORMAL_BAND = 0.5
DECISIVE_LAST_MILE_RATE = 0.5


class Tunability(StrEnum):
    High = "high"
    Moderate = "moderate"
    Low = "low"
    Unknown = "unknown"


class BlockerSeverity(StrEnum):
    Critical = "critical"
    High = "high"
    Medium = "medium"
    Low = "low"


class BlockerAction(StrEnum):
    Redesign = "redesign"
    TuneThreshold = "tune_threshold"
    AdjustUpstream = "adjust_upstream"
    LowerPriority = "lower_priority"
    Investigate = "investigate"


class PercentileAnalysis(BaseModel):
    percentiles: dict[int, float] = Field(default_factory=dict)
    fraction_below_threshold: Optional[float] = None
    skewness: Optional[float] = None
    shape: str = "unknown"
    insight: str = ""


class NearMissAnalysis(BaseModel):
    near_miss_count: int
    failure_count: int
    near_miss_rate: float
    epsilon: float
    tunability: Tunability
    insight: str = ""


class CeilingAnalysis(BaseModel):
    status: str
    operator: Optional[str] = None
    threshold: Optional[float] = None
    observed_min: Optional[float] = None
    observed_max: Optional[float] = None
    achievable_min: Optional[float] = None
    achievable_max: Optional[float] = None
    in_regime_min: Optional[float] = None
    in_regime_max: Optional[float] = None
    achievable: Optional[bool] = None
    achievable_in_regime: Optional[bool] = None
    ceiling_gap: Optional[float] = None
    insight: str = ""


class LastMileAnalysis(BaseModel):
    others_passed_count: int
    last_mile_fail_count: int
    last_mile_fail_rate: Optional[float] = None
    is_or_alternative: bool = False
    is_decisive: bool = False
    insight: str = ""


class AdvancedAnalysis(BaseModel):
    percentile_analysis: PercentileAnalysis
    near_miss_analysis: NearMissAnalysis
    ceiling_analysis: CeilingAnalysis
    last_mile_analysis: LastMileAnalysis


class Blocker(BaseModel):
    rank: int
    clause_id: str
    clause_description: str
    failure_rate: float
    in_regime_failure_rate: float
    severity: BlockerSeverity
    recommended_action: BlockerAction
    flags: List[str] = Field(default_factory=list)
    advanced_analysis: AdvancedAnalysis
    hierarchical_breakdown: BreakdownNode = Field(repr=False)


def tunability_for(near_miss_rate: Optional[float], settings: BlockerSettings) -> Tunability:
    if near_miss_rate is None:
        return Tunability.Unknown
    if near_miss_rate > settings.high_tunability_rate:
        return Tunability.High
    if near_miss_rate >= settings.moderate_tunability_rate:
        return Tunability.Moderate
    return Tunability.Low


class BlockerAnalyzer:
    """
    Ranks failing leaf clauses of a finished simulation and explains each one from four angles:
    where the observed values sit against the threshold, how many failures were close calls,
    whether the threshold is reachable at all, and whether the clause is the last one standing.
    """

    def __init__(self, constraint_analyzer: AxisConstraintAnalyzer, registry: PrototypeRegistry,
                 settings: Optional[BlockerSettings] = None, logger: Optional[logging.Logger] = None):
        self.constraint_analyzer = constraint_analyzer
        self.axis_model = constraint_analyzer.axis_model
        self.registry = registry
        self.settings = settings or BlockerSettings()
        self.logger = logger or logging.getLogger(__name__)

    def rank_blockers(self, result: SimulationResult) -> List[Blocker]:
        leaf_count = len(result.expression.leaves())
        blockers = []
        # clause_failures is already sorted by failure rate with declaration order on ties
        for failure in result.clause_failures:
            if failure.failure_count == 0:
                continue
            node = result.expression.node(failure.clause_id)
            leaf = failure.leaf
            percentile = self.percentile_analysis(leaf)
            near_miss = self.near_miss_analysis(leaf)
            ceiling = self.ceiling_analysis(leaf, node.comparison, result.regime)
            last_mile = self.last_mile_analysis(leaf, result, single_clause=leaf_count == 1)
            severity, action, flags = self._classify(ceiling, near_miss, last_mile)
            blockers.append(Blocker(
                rank=len(blockers) + 1,
                clause_id=failure.clause_id,
                clause_description=failure.description,
                failure_rate=failure.failure_rate,
                in_regime_failure_rate=failure.in_regime_failure_rate,
                severity=severity,
                recommended_action=action,
                flags=flags,
                advanced_analysis=AdvancedAnalysis(percentile_analysis=percentile, near_miss_analysis=near_miss,
                                                   ceiling_analysis=ceiling, last_mile_analysis=last_mile),
                hierarchical_breakdown=failure.hierarchical_breakdown,
            ))
            if len(blockers) >= self.settings.max_blockers:
                break
        self.logger.info(f"{result.expression.id}: {len(blockers)} blockers ranked")
        return blockers

    # ---------- analyses ----------

    def percentile_analysis(self, leaf: BreakdownNode) -> PercentileAnalysis:
        if not leaf.observed_values or leaf.threshold is None:
            return PercentileAnalysis(insight="No observed values for this clause.")
        values = np.asarray(leaf.observed_values, dtype=float)
        percentiles = {p: float(v) for p, v in zip(PERCENTILES, np.percentile(values, PERCENTILES))}
        below = float(np.mean(values < leaf.threshold))
        # constant samples have no defined skew
        skewness = float(skew(values)) if len(values) > 2 and np.ptp(values) > 0 else 0.0
        if abs(skewness) < SKEW_NORMAL_BAND:
            shape = "normal"
        elif skewness > 0:
            shape = "right-skewed"
        else:
            shape = "left-skewed"

        median = percentiles[50]
        if leaf.operator in (">=", ">"):
            if percentiles[90] < leaf.threshold:
                insight = f"Even the 90th percentile ({percentiles[90]:.3g}) stays below the threshold {leaf.threshold:g}."
            elif median < leaf.threshold:
                insight = f"Median {median:.3g} is below the threshold {leaf.threshold:g}; only the upper tail passes."
            else:
                insight = f"Median {median:.3g} already clears the threshold {leaf.threshold:g}."
        elif leaf.operator in ("<=", "<"):
            if percentiles[10] > leaf.threshold:
                insight = f"Even the 10th percentile ({percentiles[10]:.3g}) stays above the threshold {leaf.threshold:g}."
            elif median > leaf.threshold:
                insight = f"Median {median:.3g} is above the threshold {leaf.threshold:g}; only the lower tail passes."
            else:
                insight = f"Median {median:.3g} already satisfies the threshold {leaf.threshold:g}."
        else:
            insight = f"Values center on {median:.3g} against an equality check at {leaf.threshold:g}."
        return PercentileAnalysis(percentiles=percentiles, fraction_below_threshold=below,
                                  skewness=skewness, shape=shape, insight=insight)

    def near_miss_analysis(self, leaf: BreakdownNode) -> NearMissAnalysis:
        rate = leaf.near_miss_rate if leaf.failure_count else None
        tunability = tunability_for(rate, self.settings)
        match tunability:
            case Tunability.High:
                insight = "Many failures are close calls; a small threshold adjustment would recover them."
            case Tunability.Moderate:
                insight = "Some failures are close calls; a threshold adjustment may help somewhat."
            case Tunability.Low:
                insight = "Failures are far from the threshold; fix upstream (prototype, gates or regime)."
            case _:
                insight = "Clause never failed."
        return NearMissAnalysis(near_miss_count=leaf.near_miss_count, failure_count=leaf.failure_count,
                                near_miss_rate=rate or 0.0, epsilon=leaf.near_miss_epsilon,
                                tunability=tunability, insight=insight)

    def _value_ranges(self, comparison: Comparison,
                      regime: MoodRegime) -> Optional[Tuple[Tuple[float, float], Tuple[float, float]]]:
        """Exact (global, in-regime) ranges of the value a comparison reads, in the comparison's units."""
        ptype = comparison.prototype_type
        if ptype is not None:
            prototype = self.registry.get_prototype(comparison.name, ptype)
            if prototype is None:
                return None
            glob, _ = self.constraint_analyzer.gated_range(prototype, MoodRegime())
            local, _ = self.constraint_analyzer.gated_range(prototype, regime)
            return (glob.min, glob.max), (local.min, local.max)
        if comparison.var_path in AROUSAL_PATHS:
            axis = self.axis_model.resolve_alias("SA")
        elif comparison.root in MOOD_ROOTS or comparison.root in (TRAIT_ROOT, SEXUAL_AXES_ROOT):
            axis = comparison.name
        else:
            return None
        spec = self.axis_model.spec(axis)
        lo, hi = regime.interval(axis, self.axis_model)
        return (spec.raw_min, spec.raw_max), (lo * spec.scale, hi * spec.scale)

    def ceiling_analysis(self, leaf: BreakdownNode, comparison: Optional[Comparison],
                         regime: MoodRegime) -> CeilingAnalysis:
        if leaf.tag != NodeTag.Leaf or comparison is None:
            return CeilingAnalysis(status="not_applicable", insight="Unsupported clause, it can never pass.")
        op, t = comparison.operator, comparison.threshold
        analysis = CeilingAnalysis(status="achievable", operator=op, threshold=t,
                                   observed_min=leaf.observed_min, observed_max=leaf.observed_max)
        if leaf.observed_max is not None:
            if op in (">=", ">"):
                analysis.ceiling_gap = t - leaf.observed_max
            elif op in ("<=", "<"):
                analysis.ceiling_gap = leaf.observed_min - t

        ranges = self._value_ranges(comparison, regime)
        if ranges is None:
            analysis.status = "not_applicable"
            analysis.insight = "No exact range available for this value."
            return analysis
        (glo, ghi), (rlo, rhi) = ranges
        analysis.achievable_min, analysis.achievable_max = glo, ghi
        analysis.achievable = threshold_reachable(glo, ghi, op, t)
        if not regime.is_global:
            analysis.in_regime_min, analysis.in_regime_max = rlo, rhi
            analysis.achievable_in_regime = rlo <= rhi and threshold_reachable(rlo, rhi, op, t)

        if not analysis.achievable:
            analysis.status = "ceiling_detected"
            bound = ghi if op in (">=", ">") else glo
            analysis.insight = (f"Threshold {t:g} is unreachable: the value can only reach {bound:.3g}. "
                                f"No amount of sampling will make this clause pass.")
        elif analysis.achievable_in_regime is False:
            analysis.insight = (f"Threshold {t:g} is reachable globally but not inside the mood regime "
                                f"(range {rlo:.3g} to {rhi:.3g}).")
        else:
            analysis.insight = f"Threshold {t:g} lies within the achievable range {glo:.3g} to {ghi:.3g}."
        return analysis

    @staticmethod
    def _is_or_alternative(result: SimulationResult, clause_id: str) -> bool:
        if "." not in clause_id:
            return False
        parent = result.expression.node(clause_id.rsplit(".", 1)[0])
        return parent.tag == NodeTag.Or

    def last_mile_analysis(self, leaf: BreakdownNode, result: SimulationResult,
                           single_clause: bool = False) -> LastMileAnalysis:
        rate = leaf.last_mile_fail_rate
        or_alt = self._is_or_alternative(result, leaf.node_id)
        decisive = single_clause or (leaf.last_mile_fail_count > 0 and rate is not None
                                     and rate >= DECISIVE_LAST_MILE_RATE)
        if single_clause:
            insight = "Only clause in the expression; every failure is on it."
        elif rate is None:
            insight = "Other clauses never all passed together, so this clause was never the last one."
        elif decisive:
            insight = f"When everything else passes, this clause still fails {rate:.1%} of the time."
        else:
            insight = f"Rarely the last blocker ({rate:.1%} when everything else passes)."
        return LastMileAnalysis(others_passed_count=leaf.others_passed_count,
                                last_mile_fail_count=leaf.last_mile_fail_count, last_mile_fail_rate=rate,
                                is_or_alternative=or_alt, is_decisive=decisive, insight=insight)

    @staticmethod
    def _classify(ceiling: CeilingAnalysis, near_miss: NearMissAnalysis,
                  last_mile: LastMileAnalysis) -> Tuple[BlockerSeverity, BlockerAction, List[str]]:
        flags = []
        if ceiling.status == "ceiling_detected":
            flags.append("[CEILING]")
        if last_mile.is_decisive:
            flags.append("[DECISIVE]")
        if near_miss.tunability == Tunability.High:
            flags.append("[TUNABLE]")
        elif near_miss.tunability == Tunability.Low:
            flags.append("[UPSTREAM]")

        if ceiling.status == "ceiling_detected":
            return BlockerSeverity.Critical, BlockerAction.Redesign, flags
        if last_mile.is_decisive:
            if near_miss.tunability in (Tunability.High, Tunability.Moderate):
                return BlockerSeverity.High, BlockerAction.TuneThreshold, flags
            return BlockerSeverity.High, BlockerAction.AdjustUpstream, flags
        if last_mile.last_mile_fail_count > 0:
            if near_miss.tunability == Tunability.Low:
                return BlockerSeverity.Medium, BlockerAction.AdjustUpstream, flags
            return BlockerSeverity.Medium, BlockerAction.Investigate, flags
        return BlockerSeverity.Low, BlockerAction.LowerPriority, flags
