from __future__ import annotations

import logging
import math
from typing import List, Optional

import numpy as np
from pydantic import BaseModel, Field
from scipy.stats import norm

from exprdiag.axes import AxisModel
from exprdiag.config import SensitivitySettings, SimulationSettings
from exprdiag.evaluator import (BreakdownNode, ContextBuilder, EvaluationContext, ExpressionTreeEvaluator,
                                HierarchicalBreakdown)
from exprdiag.expression import Expression, NodeTag
from exprdiag.prototypes import EQUALITY_TOLERANCE, PrototypeRegistry
from exprdiag.sampler import StateSampler
from exprdiag.state import MoodRegime, PsychState


class ConfidenceInterval(BaseModel):
    low: float
    high: float
    level: float


def wilson_interval(successes: int, n: int, level: float = 0.95) -> ConfidenceInterval:
    """Wilson score interval. Widens as n shrinks and stays inside [0, 1] near the edges."""
    if n <= 0:
        return ConfidenceInterval(low=0.0, high=1.0, level=level)
    z = float(norm.ppf(1 - (1 - level) / 2))
    rate = successes / n
    z2 = z * z
    denom = 1 + z2 / n
    center = rate + z2 / (2 * n)
    margin = z * math.sqrt((rate * (1 - rate) + z2 / (4 * n)) / n)
    # the closed form leaves rounding residue at the edges
    low = 0.0 if successes <= 0 else max(0.0, (center - margin) / denom)
    high = 1.0 if successes >= n else min(1.0, (center + margin) / denom)
    return ConfidenceInterval(low=low, high=high, level=level)


class ClauseFailure(BaseModel):
    clause_id: str
    description: str
    prerequisite_index: int
    evaluation_count: int
    failure_count: int
    failure_rate: float
    in_regime_evaluation_count: int
    in_regime_failure_count: int
    in_regime_failure_rate: float
    average_violation: float
    near_miss_rate: float
    last_mile_fail_rate: Optional[float] = None
    leaf: BreakdownNode = Field(repr=False)
    hierarchical_breakdown: BreakdownNode = Field(repr=False)


class NearestMiss(BaseModel):
    state: PsychState
    failed_leaf_count: int
    failed_clause_ids: List[str]


class SimulationResult(BaseModel):
    expression: Expression = Field(repr=False)
    regime: MoodRegime
    sample_count: int
    trigger_count: int
    trigger_rate: float
    confidence_interval: ConfidenceInterval
    in_regime_sample_count: int
    in_regime_trigger_count: int
    in_regime_trigger_rate: float
    breakdown: List[BreakdownNode] = Field(repr=False)
    clause_failures: List[ClauseFailure] = Field(repr=False)
    witnesses: List[PsychState] = Field(default_factory=list, repr=False)
    nearest_miss: Optional[NearestMiss] = Field(default=None, repr=False)
    stored_contexts: List[PsychState] = Field(default_factory=list, repr=False, exclude=True)
    in_regime_flags: List[bool] = Field(default_factory=list, repr=False, exclude=True)
    distribution: str = "uniform"
    seed: Optional[int] = None
    regime_bounded_sampling: bool = False

    def leaf(self, clause_id: str) -> BreakdownNode:
        for root in self.breakdown:
            for node in root.walk():
                if node.node_id == clause_id:
                    return node
        raise KeyError(clause_id)

    def in_regime_contexts(self) -> List[PsychState]:
        return [s for s, flag in zip(self.stored_contexts, self.in_regime_flags) if flag]


class SensitivityPoint(BaseModel):
    threshold: float
    pass_count: int
    sample_count: int
    pass_rate: float
    is_original: bool = False


class SensitivityGrid(BaseModel):
    clause_id: str
    var_path: str
    operator: str
    original_threshold: float
    kind: str
    points: List[SensitivityPoint]


def vector_compare(values: np.ndarray, operator: str, threshold: float) -> np.ndarray:
    if operator == ">=":
        return values >= threshold
    if operator == ">":
        return values > threshold
    if operator == "<=":
        return values <= threshold
    if operator == "<":
        return values < threshold
    if operator == "==":
        return np.abs(values - threshold) < EQUALITY_TOLERANCE
    return np.abs(values - threshold) >= EQUALITY_TOLERANCE


class MonteCarloSimulationEngine:
    """
    Orchestrates sampling and evaluation. Every run() owns its breakdown and result; nothing
    is shared between runs.
    """

    def __init__(self, axis_model: AxisModel, registry: PrototypeRegistry,
                 settings: Optional[SimulationSettings] = None, sampler: Optional[StateSampler] = None,
                 context_builder: Optional[ContextBuilder] = None,
                 evaluator: Optional[ExpressionTreeEvaluator] = None,
                 near_miss_epsilon: float = 0.05,
                 sensitivity: Optional[SensitivitySettings] = None,
                 logger: Optional[logging.Logger] = None):
        self.axis_model = axis_model
        self.registry = registry
        self.settings = settings or SimulationSettings()
        self.logger = logger or logging.getLogger(__name__)
        self.sampler = sampler or StateSampler(axis_model, distribution=self.settings.distribution,
                                               seed=self.settings.seed, logger=self.logger)
        self.context_builder = context_builder or ContextBuilder(axis_model, registry)
        self.evaluator = evaluator or ExpressionTreeEvaluator()
        self.near_miss_epsilon = near_miss_epsilon
        self.sensitivity = sensitivity or SensitivitySettings()

    def run(self, expression: Expression, n: Optional[int] = None, regime: Optional[MoodRegime] = None,
            confidence_level: Optional[float] = None) -> SimulationResult:
        n = self.settings.sample_count if n is None else n
        regime = regime or MoodRegime()
        bounded = self.settings.regime_bounded_sampling and not regime.is_global
        if regime.is_empty(self.axis_model):
            self.logger.warning(f"Mood regime for {expression.id} is empty, in-regime metrics will have no samples")

        self.logger.info(f"Simulating {expression.id}: {n} samples, "
                         f"{'regime-bounded' if bounded else 'global'} {self.settings.distribution} sampling")
        states = self.sampler.sample(n, regime if bounded else None)
        result = self.analyze_contexts(expression, states, regime, confidence_level)
        result.distribution = str(self.settings.distribution)
        result.seed = self.settings.seed
        result.regime_bounded_sampling = bounded
        if not self.settings.store_contexts:
            result.stored_contexts = []
            result.in_regime_flags = []
        self.logger.info(f"{expression.id}: triggered {result.trigger_count}/{result.sample_count} "
                         f"({result.trigger_rate:.2%}), in-regime {result.in_regime_trigger_count}/"
                         f"{result.in_regime_sample_count}")
        return result

    def _contexts(self, expression: Expression, states: List[PsychState],
                  regime: MoodRegime) -> List[EvaluationContext]:
        prototypes = self.context_builder.referenced_prototypes(expression)
        return [self.context_builder.build(s, prototypes, regime) for s in states]

    def analyze_contexts(self, expression: Expression, states: List[PsychState],
                         regime: Optional[MoodRegime] = None,
                         confidence_level: Optional[float] = None) -> SimulationResult:
        """Evaluate already-drawn states. Used by run() and to re-query stored contexts without resampling."""
        regime = regime or MoodRegime()
        level = confidence_level or self.settings.confidence_level
        expression = self.context_builder.prepare(expression)
        breakdown = HierarchicalBreakdown(expression, self.near_miss_epsilon, self.context_builder.value_scale)

        trigger_count = 0
        in_regime_count = 0
        in_regime_trigger = 0
        witnesses: List[PsychState] = []
        nearest: Optional[NearestMiss] = None
        flags: List[bool] = []
        leaf_ids = [leaf.node_id for leaf in expression.leaves()]

        for ctx in self._contexts(expression, states, regime):
            outcome = self.evaluator.evaluate_expression(expression, ctx)
            breakdown.record(outcome, ctx)
            flags.append(ctx.in_regime)
            if ctx.in_regime:
                in_regime_count += 1
            if outcome.passed:
                trigger_count += 1
                if ctx.in_regime:
                    in_regime_trigger += 1
                if len(witnesses) < self.settings.max_witnesses:
                    witnesses.append(ctx.state)
            else:
                failed = [i for i in leaf_ids if not outcome.results[i]]
                if nearest is None or len(failed) < nearest.failed_leaf_count:
                    nearest = NearestMiss(state=ctx.state, failed_leaf_count=len(failed), failed_clause_ids=failed)

        n = len(states)
        clause_failures = []
        for bd in breakdown.leaves():
            clause_failures.append(ClauseFailure(
                clause_id=bd.node_id,
                description=bd.description,
                prerequisite_index=int(bd.node_id.split(".", 1)[0]),
                evaluation_count=bd.evaluation_count,
                failure_count=bd.failure_count,
                failure_rate=bd.failure_rate,
                in_regime_evaluation_count=bd.in_regime_evaluation_count,
                in_regime_failure_count=bd.in_regime_failure_count,
                in_regime_failure_rate=bd.in_regime_failure_rate,
                average_violation=bd.average_violation,
                near_miss_rate=bd.near_miss_rate,
                last_mile_fail_rate=bd.last_mile_fail_rate,
                leaf=bd,
                hierarchical_breakdown=breakdown.root_for(bd.node_id),
            ))
        # stable sort keeps declaration order for ties
        clause_failures.sort(key=lambda c: -c.failure_rate)

        return SimulationResult(
            expression=expression,
            regime=regime,
            sample_count=n,
            trigger_count=trigger_count,
            trigger_rate=trigger_count / n if n else 0.0,
            confidence_interval=wilson_interval(trigger_count, n, level),
            in_regime_sample_count=in_regime_count,
            in_regime_trigger_count=in_regime_trigger,
            in_regime_trigger_rate=in_regime_trigger / in_regime_count if in_regime_count else 0.0,
            breakdown=breakdown.roots,
            clause_failures=clause_failures,
            witnesses=witnesses,
            nearest_miss=nearest,
            stored_contexts=list(states),
            in_regime_flags=flags,
        )

    # ---------- sensitivity ----------

    def _threshold_grid(self, result: SimulationResult, clause_id: str, steps: Optional[int],
                        step_size: Optional[float]):
        node = result.expression.node(clause_id)
        if node.tag != NodeTag.Leaf:
            raise KeyError(f"{clause_id} is not a comparison leaf")
        cmp = node.comparison
        steps = steps or self.sensitivity.steps
        step = (step_size or self.sensitivity.step_size) * self.context_builder.value_scale(cmp)
        lo, hi = self.context_builder.value_domain(cmp)
        half = steps // 2
        thresholds = []
        for i in range(-half, steps - half):
            t = round(cmp.threshold + i * step, 9)
            if lo <= t <= hi or i == 0:
                thresholds.append((t, i == 0))
        return cmp, thresholds

    def compute_threshold_sensitivity(self, result: SimulationResult, clause_id: str,
                                      steps: Optional[int] = None,
                                      step_size: Optional[float] = None) -> SensitivityGrid:
        """Pass rate of one comparison at neighbouring thresholds, from the recorded values."""
        cmp, thresholds = self._threshold_grid(result, clause_id, steps, step_size)
        values = np.asarray(result.leaf(clause_id).observed_values, dtype=float)
        n = len(values)
        points = []
        for t, original in thresholds:
            count = int(vector_compare(values, cmp.operator, t).sum()) if n else 0
            points.append(SensitivityPoint(threshold=t, pass_count=count, sample_count=n,
                                           pass_rate=count / n if n else 0.0, is_original=original))
        return SensitivityGrid(clause_id=clause_id, var_path=cmp.var_path, operator=cmp.operator,
                               original_threshold=cmp.threshold, kind="clause", points=points)

    def compute_expression_sensitivity(self, result: SimulationResult, clause_id: str,
                                       steps: Optional[int] = None,
                                       step_size: Optional[float] = None) -> SensitivityGrid:
        """Whole-expression trigger rate over the stored contexts with one leaf threshold varied."""
        cmp, thresholds = self._threshold_grid(result, clause_id, steps, step_size)
        contexts = self._contexts(result.expression, result.stored_contexts, result.regime)
        n = len(contexts)
        points = []
        for t, original in thresholds:
            variant = result.expression.with_threshold(clause_id, t)
            count = sum(1 for ctx in contexts if self.evaluator.evaluate_expression(variant, ctx).passed)
            points.append(SensitivityPoint(threshold=t, pass_count=count, sample_count=n,
                                           pass_rate=count / n if n else 0.0, is_original=original))
        return SensitivityGrid(clause_id=clause_id, var_path=cmp.var_path, operator=cmp.operator,
                               original_threshold=cmp.threshold, kind="expression", points=points)
