from __future__ import annotations

import logging
import re
from typing import Dict, Iterable, List, Optional, Sequence

from exprdiag.blockers import Blocker
from exprdiag.constraints import AxisConstraintAnalysis
from exprdiag.evaluator import BreakdownNode
from exprdiag.expression import NodeTag
from exprdiag.facts import DiagnosticFacts
from exprdiag.fit_ranking import FitAnalysis, ImpliedPrototypeAnalysis, PrototypeGapAnalysis
from exprdiag.recommendations import EvidenceItem, Recommendation
from exprdiag.simulation import SensitivityGrid, SimulationResult

AXIS_ONLY_BADGE = "[AXIS-ONLY FIT]"
IN_REGIME_BADGE = "[IN-REGIME]"
AXIS_ONLY_SCOPE_TEXT = ("Computed analytically from the regime's axis bounds only; emotion and sexual-state "
                        "clauses are ignored and no samples are involved.")
IN_REGIME_SCOPE_TEXT = "Observed over stored samples whose mood state satisfies the regime."

SECTION_TITLES = ("Summary", "Prototype Fit", "Blockers", "Axis Constraints", "Recommendations")


def format_pct(rate: Optional[float], digits: int = 2) -> str:
    if rate is None:
        return "n/a"
    return f"{rate * 100:.{digits}f}%"


def format_pp(rate: Optional[float]) -> str:
    if rate is None:
        return "n/a"
    return f"{rate * 100:+.2f} pp"


def format_count(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return f"{value:.2f}"


def format_number(value: Optional[float]) -> str:
    if value is None:
        return "n/a"
    return f"{value:.2f}"


def rarity(rate: float) -> str:
    if rate <= 0:
        return "impossible"
    if rate < 0.00001:
        return "extremely_rare"
    if rate < 0.0005:
        return "rare"
    if rate < 0.02:
        return "normal"
    return "frequent"


def clause_anchor(clause_id: str) -> str:
    token = re.sub(r"[^a-z0-9]+", "-", str(clause_id).lower()).strip("-")
    return f"clause-{token}"


def scope_badge(badge: str, text: str) -> str:
    return f"**{badge}** {text}"


def _table(header: Sequence[str], rows: Iterable[Sequence[str]]) -> List[str]:
    lines = ["| " + " | ".join(header) + " |", "|" + "|".join("---" for _ in header) + "|"]
    for row in rows:
        lines.append("| " + " | ".join(str(c) for c in row) + " |")
    return lines


def format_evidence(entry: EvidenceItem) -> str:
    line = f"{entry.label}: {format_count(entry.numerator)}/{format_count(entry.denominator)} ({format_pct(entry.value)})"
    if entry.population is not None:
        line += f" | Population: {entry.population.name} (N={entry.population.count})"
    return line


class ReportGenerator:
    """
    Deterministic markdown assembly. Section order is fixed; downstream tooling greps the `##` headings.
    Axis-only numbers and in-regime numbers are always rendered in separate, badged tables.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)

    def generate(self, result: SimulationResult,
                 blockers: Sequence[Blocker] = (),
                 fit: Optional[FitAnalysis] = None,
                 axis_analyses: Sequence[AxisConstraintAnalysis] = (),
                 facts: Optional[DiagnosticFacts] = None,
                 recommendations: Sequence[Recommendation] = (),
                 implied: Optional[ImpliedPrototypeAnalysis] = None,
                 gaps: Optional[PrototypeGapAnalysis] = None,
                 sensitivity: Optional[Dict[str, Sequence[SensitivityGrid]]] = None) -> str:
        parts = [
            f"# Expression Diagnostics: {result.expression.id}",
            self.summary_section(result),
            self.prototype_fit_section(fit, implied, gaps),
            self.blocker_section(result, blockers, sensitivity or {}),
            self.axis_constraint_section(axis_analyses),
            self.recommendation_section(facts, recommendations),
        ]
        report = "\n\n".join(p.rstrip("\n") for p in parts) + "\n"
        self.logger.debug(f"Report for {result.expression.id}: {len(report)} chars")
        return report

    # ---------- summary ----------

    def summary_section(self, result: SimulationResult) -> str:
        ci = result.confidence_interval
        lines = ["## Summary", "",
                 f"- **Trigger Rate**: {format_pct(result.trigger_rate)} "
                 f"({format_pct(ci.level, 0)} CI: {format_pct(ci.low)} - {format_pct(ci.high)})",
                 f"- **Rarity**: {rarity(result.trigger_rate)}",
                 f"- **Samples**: {result.sample_count} ({result.distribution}"
                 f"{', seed ' + str(result.seed) if result.seed is not None else ''})",
                 f"- **Triggers**: {result.trigger_count}"]
        if result.regime.is_global:
            lines.append("- **Mood regime**: none (in-regime metrics equal global metrics)")
        else:
            bounds = ", ".join(f"{axis} [{format_number(b.min)}, {format_number(b.max)}]"
                               for axis, b in sorted(result.regime.bounds.items()))
            lines.append(f"- **Mood regime**: {bounds}")
            lines.append(f"- **In-regime samples**: {result.in_regime_sample_count} "
                         f"({format_pct(result.in_regime_sample_count / result.sample_count if result.sample_count else None)}), "
                         f"trigger rate {format_pct(result.in_regime_trigger_rate)}")
            if result.regime_bounded_sampling:
                lines.append("- **Sampling**: draws restricted to the regime bounds")
            if result.in_regime_sample_count == 0:
                lines.append("")
                lines.append("> No samples fell inside the mood regime; in-regime statistics are empty.")
        lines.append(f"- **Witnesses**: {len(result.witnesses)}")
        if result.nearest_miss is not None:
            miss = result.nearest_miss
            lines.append(f"- **Nearest miss**: failed {miss.failed_leaf_count} "
                         f"condition{'' if miss.failed_leaf_count == 1 else 's'} "
                         f"({', '.join(miss.failed_clause_ids)})")
        return "\n".join(lines)

    # ---------- prototype fit ----------

    def prototype_fit_section(self, fit: Optional[FitAnalysis], implied: Optional[ImpliedPrototypeAnalysis] = None,
                              gaps: Optional[PrototypeGapAnalysis] = None) -> str:
        lines = ["## Prototype Fit", ""]
        if fit is None or not fit.leaderboard:
            lines.append("No prototype fit analysis available.")
            return "\n".join(lines)

        lines.append(f"Every candidate prototype of the referenced type is scored against threshold "
                     f"{format_number(fit.threshold)}. Achievable ranges come from interval arithmetic over the "
                     f"regime bounds; gate pass rates and intensity percentiles come from the stored samples.")
        if fit.current_prototype is not None:
            current = fit.current_prototype
            lines.append("")
            lines.append(f"Current prototype **{current.prototype_id}** ranks #{current.rank} "
                         f"(composite {format_number(current.composite_score)}).")
            if fit.best_alternative is not None:
                factor = f" ({fit.improvement_factor:.2f}x)" if fit.improvement_factor is not None else ""
                lines.append(f"Best alternative: **{fit.best_alternative}**{factor}.")

        lines += ["", scope_badge(AXIS_ONLY_BADGE, AXIS_ONLY_SCOPE_TEXT), ""]
        lines += _table(("Rank", "Prototype", "Gated Min", "Gated Max", "Gates Compatible"),
                        ((r.rank, r.prototype_id, format_number(r.axis_only_range.min),
                          format_number(r.axis_only_range.max),
                          "yes" if r.gate_compatibility.compatible else f"no ({r.gate_compatibility.reason})")
                         for r in fit.leaderboard))

        lines += ["", scope_badge(IN_REGIME_BADGE, IN_REGIME_SCOPE_TEXT +
                                  f" Population: {fit.regime_sample_count} of {fit.sample_count} stored samples."), ""]
        lines += _table(("Rank", "Prototype", "Gate Pass", "P(I >= t)", "P50", "P90", "Conflicts", "Composite"),
                        ((r.rank, r.prototype_id, format_pct(r.gate_pass_rate),
                          format_pct(r.intensity_distribution.p_above_threshold),
                          format_number(r.intensity_distribution.p50), format_number(r.intensity_distribution.p90),
                          ", ".join(f"{c.axis} ({c.direction})" for c in r.conflicting_axes) or "-",
                          format_number(r.composite_score))
                         for r in fit.leaderboard))

        if implied is not None and implied.target_signature:
            lines += ["", "### Implied Prototype", "",
                      "Target signature derived from the regime's axis bounds and clause last-mile rates.", ""]
            lines += _table(("Axis", "Direction", "Tightness", "Last-Mile", "Importance"),
                            ((axis, f"{e.direction:+d}", format_number(e.tightness), format_number(e.last_mile_weight),
                              format_number(e.importance))
                             for axis, e in sorted(implied.target_signature.items())))
            if implied.by_combined:
                lines += ["", scope_badge(IN_REGIME_BADGE, "Gate pass rates below are observed in-regime."), ""]
                lines += _table(("Prototype", "Cosine", "Gate Pass", "Combined"),
                                ((m.prototype_id, format_number(m.cosine_similarity), format_pct(m.gate_pass_rate),
                                  format_number(m.combined_score)) for m in implied.by_combined))

        if gaps is not None and gaps.k_nearest_neighbors:
            lines += ["", "### Prototype Gap Detection", ""]
            if gaps.gap_detected:
                lines.append(f"**Coverage gap detected**: nearest distance {format_number(gaps.nearest_distance)} "
                             f"(threshold {format_number(gaps.gap_threshold)}).")
                if gaps.coverage_warning:
                    lines.append(f"> {gaps.coverage_warning}")
            else:
                lines.append(f"Good coverage: nearest distance {format_number(gaps.nearest_distance)}.")
            if gaps.distance_context:
                lines.append(gaps.distance_context)
            lines.append("")
            lines += _table(("Prototype", "Weight Dist", "Gate Dist", "Combined", "P(I >= t)"),
                            ((n.prototype_id, format_number(n.weight_distance), format_number(n.gate_distance),
                              format_number(n.combined_distance), format_pct(n.p_intensity_above))
                             for n in gaps.k_nearest_neighbors))
            if gaps.suggested_prototype is not None:
                s = gaps.suggested_prototype
                lines += ["", "**Suggested prototype**: " + s.rationale,
                          "- Weights: " + ", ".join(f"{a}: {w:+.2f}" for a, w in sorted(s.weights.items())),
                          "- Gates: " + (", ".join(s.gates) or "none")]
        return "\n".join(lines)

    # ---------- blockers ----------

    def _breakdown_rows(self, node: BreakdownNode, depth: int = 0) -> List[List[str]]:
        # OR nodes report their own union counts
        label = node.tag.upper() if node.tag in (NodeTag.And, NodeTag.Or, NodeTag.Not) else f"`{node.description}`"
        rows = [[node.node_id, "&nbsp;&nbsp;" * depth + label,
                 f"{node.pass_count}/{node.evaluation_count}", format_pct(node.failure_rate),
                 format_pct(node.in_regime_failure_rate) if node.in_regime_evaluation_count else "n/a"]]
        for child in node.children:
            rows.extend(self._breakdown_rows(child, depth + 1))
        return rows

    def blocker_section(self, result: SimulationResult, blockers: Sequence[Blocker],
                        sensitivity: Dict[str, Sequence[SensitivityGrid]]) -> str:
        lines = ["## Blockers", ""]
        if not blockers:
            lines.append("No failing clauses." if result.sample_count else "No samples were evaluated.")
            return "\n".join(lines)
        for b in blockers:
            adv = b.advanced_analysis
            lines += [f'<a id="{clause_anchor(b.clause_id)}"></a>',
                      f"### Blocker #{b.rank}: `{b.clause_description}`", "",
                      f"- **Clause**: {b.clause_id}",
                      f"- **Fail% global**: {format_pct(b.failure_rate)}",
                      f"- **Fail% | mood-pass**: {format_pct(b.in_regime_failure_rate)}",
                      f"- **Severity**: {b.severity}",
                      f"- **Recommended action**: {b.recommended_action}",
                      f"- **Flags**: {' '.join(b.flags) or 'none'}",
                      "", "#### Distribution Analysis", "",
                      adv.percentile_analysis.insight or "No observed values.",
                      "", "#### Near-Miss Analysis", "",
                      f"{adv.near_miss_analysis.near_miss_count}/{adv.near_miss_analysis.failure_count} failures within "
                      f"{format_number(adv.near_miss_analysis.epsilon)} of the threshold "
                      f"({format_pct(adv.near_miss_analysis.near_miss_rate)}, tunability "
                      f"{adv.near_miss_analysis.tunability}).",
                      "", "#### Ceiling Analysis", "",
                      adv.ceiling_analysis.insight or adv.ceiling_analysis.status,
                      "", "#### Last-Mile Analysis", "",
                      adv.last_mile_analysis.insight or "n/a",
                      "", "#### Condition Breakdown", ""]
            lines += _table(("Node", "Condition", "Pass", "Fail% global", "Fail% | mood-pass"),
                            self._breakdown_rows(b.hierarchical_breakdown))
            for grid in sensitivity.get(b.clause_id, ()):
                title = "Clause Pass Rate" if grid.kind == "clause" else "Trigger Rate"
                lines += ["", f"#### {title} by Threshold: {grid.var_path} {grid.operator} [threshold]", ""]
                lines += _table(("Threshold", title, "Count"),
                                ((f"**{format_number(p.threshold)}**" if p.is_original else format_number(p.threshold),
                                  format_pct(p.pass_rate), f"{p.pass_count}/{p.sample_count}")
                                 for p in grid.points))
            lines.append("")
        return "\n".join(lines)

    # ---------- axis constraints ----------

    def axis_constraint_section(self, analyses: Sequence[AxisConstraintAnalysis]) -> str:
        lines = ["## Axis Constraints", ""]
        if not analyses:
            lines.append("No prototype-referencing clauses.")
            return "\n".join(lines)
        lines.append("Each referenced prototype is checked against the regime bounds with exact interval arithmetic: "
                     "each weight's sign selects the optimal bound and every gate is tested for satisfiability.")
        for a in analyses:
            lines += ["", f"### {a.prototype_type}:{a.prototype_id}", ""]
            target = f" {a.operator} {format_number(a.threshold)}" if a.threshold is not None else ""
            status = "n/a" if a.achievable is None else ("achievable" if a.achievable else "unreachable")
            lines.append(f"Gated intensity range [{format_number(a.gated_range.min)}, {format_number(a.gated_range.max)}]"
                         f" (unbounded max {format_number(a.unbounded_gated_max)}); threshold{target}: {status}.")
            lines += ["", scope_badge(AXIS_ONLY_BADGE, AXIS_ONLY_SCOPE_TEXT), ""]
            lines += _table(("Axis", "Weight", "Regime", "Optimal", "Contribution", "Conflict", "Lost Intensity"),
                            ((r.axis, f"{r.weight:+.2f}",
                              f"[{format_number(r.constraint_min)}, {format_number(r.constraint_max)}]",
                              format_number(r.optimal_value), format_number(r.contribution),
                              r.conflict_type or "-", format_number(r.lost_intensity) if r.conflict_type else "-")
                             for r in a.axis_analysis))
            if a.gates:
                lines.append("")
                lines += _table(("Gate", "Regime Interval", "Satisfiable", "Implied"),
                                ((f"`{g.gate}`", f"[{format_number(g.interval_min)}, {format_number(g.interval_max)}]",
                                  "yes" if g.satisfiable else "**no**", "yes" if g.implied else "no")
                                 for g in a.gates))
        return "\n".join(lines)

    # ---------- recommendations ----------

    def recommendation_section(self, facts: Optional[DiagnosticFacts],
                               recommendations: Sequence[Recommendation]) -> str:
        lines = ["## Recommendations", ""]
        if facts is not None and facts.failed_invariants:
            lines.append("> Recommendations suppressed: invariant violations detected")
            for inv in facts.failed_invariants:
                lines.append(f"> - {inv.id}: {inv.message}")
            return "\n".join(lines)
        if not recommendations:
            lines.append("No recommendations.")
            return "\n".join(lines)
        impact = {c.clause_id: c.impact for c in facts.clauses} if facts is not None else {}
        for i, rec in enumerate(recommendations):
            lines.append(self.format_card(rec, i, impact))
        return "\n".join(lines)

    @staticmethod
    def format_card(rec: Recommendation, index: int, impact_by_clause: Dict[str, float]) -> str:
        impact = next((impact_by_clause[c] for c in rec.related_clause_ids if c in impact_by_clause), None)
        bullets = [f"- **Type**: {rec.type}",
                   f"- **Severity**: {rec.severity}",
                   f"- **Confidence**: {rec.confidence}",
                   f"- **Impact (full sample)**: {format_pp(impact)}"]
        if rec.why:
            bullets.append(f"- **Why**: {rec.why}")
        if rec.evidence:
            bullets.append("- **Evidence**:\n" + "\n".join(f"  - {format_evidence(e)}" for e in rec.evidence))
        if rec.actions:
            bullets.append("- **Actions**:\n" + "\n".join(f"  - {a}" for a in rec.actions))
        if rec.predicted_effect:
            bullets.append(f"- **Predicted Effect**: {rec.predicted_effect}")
        if rec.related_clause_ids:
            links = ", ".join(f"[{c}](#{clause_anchor(c)})" for c in rec.related_clause_ids)
            bullets.append(f"- **Related Clauses**: {links}")
        return f"### Recommendation {index + 1}: {rec.title}\n\n" + "\n".join(bullets) + "\n"
