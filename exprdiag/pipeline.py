from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

import yaml
from pydantic import BaseModel, ConfigDict, Field

from exprdiag.axes import AxisModel
from exprdiag.blockers import Blocker, BlockerAnalyzer
from exprdiag.config import DiagnosticsConfig
from exprdiag.constraints import AxisConstraintAnalysis, AxisConstraintAnalyzer
from exprdiag.errors import ConfigError
from exprdiag.expression import Expression, NodeTag, infer_regime
from exprdiag.facts import DiagnosticFacts, RecommendationFactsBuilder
from exprdiag.fit_ranking import FitAnalysis, ImpliedPrototypeAnalysis, PrototypeFitRankingService, PrototypeGapAnalysis
from exprdiag.prototypes import PrototypeRegistry, PrototypeType
from exprdiag.recommendations import Recommendation, RecommendationEngine
from exprdiag.report import ReportGenerator
from exprdiag.sampler import StateSampler
from exprdiag.simulation import MonteCarloSimulationEngine, SensitivityGrid, SimulationResult
from exprdiag.state import MoodRegime

SENSITIVITY_BLOCKERS = 3


class DiagnosticsReport(BaseModel):
    """Everything one diagnostics run produced, structured and rendered."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    simulation: SimulationResult
    blockers: List[Blocker] = Field(default_factory=list)
    fit: Optional[FitAnalysis] = None
    implied_prototype: Optional[ImpliedPrototypeAnalysis] = None
    prototype_gaps: Optional[PrototypeGapAnalysis] = None
    axis_analyses: List[AxisConstraintAnalysis] = Field(default_factory=list)
    facts: DiagnosticFacts
    recommendations: List[Recommendation] = Field(default_factory=list)
    sensitivity: Dict[str, List[SensitivityGrid]] = Field(default_factory=dict)
    markdown: str = ""


def read_document(path: str | Path) -> dict:
    """Load a JSON or YAML document into a dict."""
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Input file not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        try:
            if path.suffix.lower() in (".yaml", ".yml"):
                data = yaml.safe_load(f)
            else:
                data = json.load(f)
        except (json.JSONDecodeError, yaml.YAMLError) as e:
            raise ConfigError(f"Cannot parse {path}: {e}") from e
    return data or {}


class DiagnosticsPipeline:
    """
    Wires the diagnostics services together from a DiagnosticsConfig. Every collaborator can be
    injected; the defaults share one axis model, registry and logger.
    """

    def __init__(self, registry: PrototypeRegistry, config: Optional[DiagnosticsConfig] = None,
                 axis_model: Optional[AxisModel] = None, logger: Optional[logging.Logger] = None):
        self.config = config or DiagnosticsConfig()
        self.axis_model = axis_model or registry.axis_model
        self.registry = registry
        self.logger = logger or logging.getLogger(__name__)

        sim = self.config.simulation
        self.sampler = StateSampler(self.axis_model, distribution=sim.distribution, seed=sim.seed, logger=self.logger)
        self.engine = MonteCarloSimulationEngine(self.axis_model, registry, settings=sim, sampler=self.sampler,
                                                 near_miss_epsilon=self.config.blockers.near_miss_epsilon,
                                                 sensitivity=self.config.sensitivity, logger=self.logger)
        self.constraint_analyzer = AxisConstraintAnalyzer(self.axis_model, logger=self.logger)
        self.blocker_analyzer = BlockerAnalyzer(self.constraint_analyzer, registry,
                                                settings=self.config.blockers, logger=self.logger)
        self.fit_service = PrototypeFitRankingService(self.axis_model, registry, self.constraint_analyzer,
                                                      settings=self.config.fit, logger=self.logger)
        self.facts_builder = RecommendationFactsBuilder(self.axis_model, registry, self.constraint_analyzer,
                                                        logger=self.logger)
        self.recommendation_engine = RecommendationEngine(logger=self.logger)
        self.report_generator = ReportGenerator(logger=self.logger)

    @classmethod
    def from_files(cls, emotion_path: Optional[str | Path] = None, sexual_path: Optional[str | Path] = None,
                   config: Optional[DiagnosticsConfig] = None,
                   logger: Optional[logging.Logger] = None) -> "DiagnosticsPipeline":
        axis_model = AxisModel.default()
        registry = PrototypeRegistry.from_files(axis_model, emotion_path, sexual_path, logger=logger)
        return cls(registry, config=config, axis_model=axis_model, logger=logger)

    @staticmethod
    def load_expression(path: str | Path) -> Expression:
        return Expression.from_definition(read_document(path))

    def load_regime(self, path: str | Path) -> MoodRegime:
        return MoodRegime.from_definition(read_document(path), self.axis_model)

    def resolve_regime(self, expression: Expression,
                       regime: Optional[MoodRegime | Mapping] = None) -> MoodRegime:
        """Explicit regime if given, otherwise the one implied by top-level mood clauses."""
        if isinstance(regime, MoodRegime):
            return regime
        if regime:
            return MoodRegime.from_definition(regime, self.axis_model)
        return infer_regime(expression, self.axis_model)

    def analyze_axis_constraints(self, result: SimulationResult) -> Dict[Tuple[PrototypeType, str], AxisConstraintAnalysis]:
        analyses: Dict[Tuple[PrototypeType, str], AxisConstraintAnalysis] = {}
        leaves = sorted((leaf for root in result.breakdown for leaf in root.walk()
                         if leaf.is_leaf and leaf.prototype_id is not None), key=lambda l: l.node_id)
        for leaf in leaves:
            key = (leaf.prototype_type, leaf.prototype_id)
            if key in analyses:
                continue
            prototype = self.registry.require(leaf.prototype_id, leaf.prototype_type)
            analyses[key] = self.constraint_analyzer.analyze(prototype, result.regime, leaf.threshold,
                                                             leaf.operator or ">=")
        return analyses

    def sensitivity_grids(self, result: SimulationResult, blockers: List[Blocker]) -> Dict[str, List[SensitivityGrid]]:
        grids: Dict[str, List[SensitivityGrid]] = {}
        if not result.stored_contexts:
            return grids
        for blocker in blockers[:SENSITIVITY_BLOCKERS]:
            if result.expression.node(blocker.clause_id).tag != NodeTag.Leaf:
                continue
            grids[blocker.clause_id] = [self.engine.compute_threshold_sensitivity(result, blocker.clause_id),
                                        self.engine.compute_expression_sensitivity(result, blocker.clause_id)]
        return grids

    def run(self, expression: Expression | Mapping, regime: Optional[MoodRegime | Mapping] = None,
            n: Optional[int] = None) -> DiagnosticsReport:
        if not isinstance(expression, Expression):
            expression = Expression.from_definition(expression)
        regime = self.resolve_regime(expression, regime)

        result = self.engine.run(expression, n=n, regime=regime)
        blockers = self.blocker_analyzer.rank_blockers(result)
        analyses = self.analyze_axis_constraints(result)

        fit = implied = gaps = None
        if result.stored_contexts:
            fit = self.fit_service.analyze_all_prototype_fit(result.expression, result.stored_contexts, regime)
            implied = self.fit_service.compute_implied_prototype(result.expression, result.stored_contexts, regime,
                                                                 result.clause_failures)
            gaps = self.fit_service.detect_prototype_gaps(result.expression, result.stored_contexts, regime,
                                                          clause_failures=result.clause_failures)
        else:
            self.logger.info("Stored contexts disabled, skipping prototype fit ranking")

        facts = self.facts_builder.build(expression, result, analyses)
        recommendations = self.recommendation_engine.generate(facts)
        sensitivity = self.sensitivity_grids(result, blockers)

        markdown = self.report_generator.generate(result, blockers=blockers, fit=fit,
                                                  axis_analyses=list(analyses.values()), facts=facts,
                                                  recommendations=recommendations, implied=implied, gaps=gaps,
                                                  sensitivity=sensitivity)
        return DiagnosticsReport(simulation=result, blockers=blockers, fit=fit, implied_prototype=implied,
                                 prototype_gaps=gaps, axis_analyses=list(analyses.values()), facts=facts,
                                 recommendations=recommendations, sensitivity=sensitivity, markdown=markdown)
