from __future__ import annotations

import json
import logging
from enum import StrEnum
from typing import Any, Iterator, List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from exprdiag.axes import AxisModel
from exprdiag.errors import MalformedExpressionError
from exprdiag.prototypes import COMPARISON_OPERATORS, ORDERING_OPERATORS, PrototypeFilter, PrototypeType
from exprdiag.state import MoodRegime

logger = logging.getLogger(__name__)

# operator flips used when the var sits on the right: [0.5, {"var": x}] with "<=" means x >= 0.5
_FLIPPED = {">=": "<=", "<=": ">=", ">": "<", "<": ">", "==": "==", "!=": "!="}

MOOD_ROOTS = ("moodAxes", "mood")
EMOTION_ROOT = "emotions"
SEXUAL_STATE_ROOT = "sexualStates"


class NodeTag(StrEnum):
    And = "and"
    Or = "or"
    Not = "not"
    Leaf = "leaf"
    Unsupported = "unsupported"


class Comparison(BaseModel):
    model_config = ConfigDict(frozen=True)

    var_path: str
    operator: str
    threshold: float

    @property
    def root(self) -> str:
        return self.var_path.split(".", 1)[0]

    @property
    def name(self) -> str:
        return self.var_path.split(".", 1)[-1]

    @property
    def prototype_type(self) -> Optional[PrototypeType]:
        if self.root == EMOTION_ROOT:
            return PrototypeType.Emotion
        if self.root == SEXUAL_STATE_ROOT:
            return PrototypeType.Sexual
        return None

    @property
    def text(self) -> str:
        return f"{self.var_path} {self.operator} {self.threshold:g}"


class LogicNode(BaseModel):
    """
    Closed tagged variant. and/or/not carry children, leaf carries a comparison,
    unsupported keeps the raw JsonLogic it could not interpret and always evaluates false.
    """
    model_config = ConfigDict(frozen=True)

    tag: NodeTag
    node_id: str
    children: Tuple["LogicNode", ...] = ()
    comparison: Optional[Comparison] = None
    raw: Any = Field(default=None, repr=False)

    @property
    def description(self) -> str:
        match self.tag:
            case NodeTag.Leaf:
                return self.comparison.text
            case NodeTag.And:
                return f"AND ({len(self.children)} conditions)"
            case NodeTag.Or:
                return f"OR ({len(self.children)} alternatives)"
            case NodeTag.Not:
                return f"NOT ({self.children[0].description})"
            case NodeTag.Unsupported:
                return f"unsupported: {json.dumps(self.raw, sort_keys=True, default=str)}"

    def walk(self) -> Iterator["LogicNode"]:
        yield self
        for c in self.children:
            yield from c.walk()

    def leaves(self) -> List["LogicNode"]:
        return [n for n in self.walk() if n.tag in (NodeTag.Leaf, NodeTag.Unsupported)]


LogicNode.model_rebuild()


class Expression(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    prerequisites: Tuple[LogicNode, ...]
    definition: Any = Field(default=None, repr=False)

    @classmethod
    def from_definition(cls, definition: Mapping[str, Any]) -> "Expression":
        if not isinstance(definition, Mapping):
            raise MalformedExpressionError("Expression definition must be a mapping", definition)
        prerequisites = definition.get("prerequisites")
        if not isinstance(prerequisites, list):
            raise MalformedExpressionError("Expression needs a 'prerequisites' list", definition)
        roots = []
        for i, prereq in enumerate(prerequisites):
            if not isinstance(prereq, Mapping) or "logic" not in prereq:
                raise MalformedExpressionError(f"Prerequisite {i} has no 'logic'", prereq)
            roots.append(parse_logic(prereq["logic"], str(i)))
        return cls(id=str(definition.get("id", "expression")), prerequisites=tuple(roots), definition=definition)

    def walk(self) -> Iterator[LogicNode]:
        for root in self.prerequisites:
            yield from root.walk()

    def leaves(self) -> List[LogicNode]:
        return [n for root in self.prerequisites for n in root.leaves()]

    def node(self, node_id: str) -> LogicNode:
        for n in self.walk():
            if n.node_id == node_id:
                return n
        raise KeyError(node_id)

    def fingerprint(self) -> str:
        return json.dumps(self.definition if self.definition is not None else
                          [r.model_dump(mode="json") for r in self.prerequisites],
                          sort_keys=True, default=str)

    def with_threshold(self, node_id: str, threshold: float) -> "Expression":
        """Copy with one leaf threshold replaced. Used by the sensitivity grids."""
        return self.model_copy(update={
            "prerequisites": tuple(_replace_threshold(r, node_id, threshold) for r in self.prerequisites),
            "definition": None,
        })


def _replace_threshold(node: LogicNode, node_id: str, threshold: float) -> LogicNode:
    if node.node_id == node_id:
        if node.tag != NodeTag.Leaf:
            raise KeyError(f"{node_id} is not a comparison leaf")
        return node.model_copy(update={"comparison": node.comparison.model_copy(update={"threshold": threshold})})
    if not node.children or not node_id.startswith(node.node_id + "."):
        return node
    return node.model_copy(update={"children": tuple(_replace_threshold(c, node_id, threshold) for c in node.children)})


# ---------- parsing ----------

def _var_path(operand) -> Optional[str]:
    if isinstance(operand, Mapping) and "var" in operand and len(operand) == 1:
        var = operand["var"]
        if isinstance(var, list):
            var = var[0] if var else None
        if isinstance(var, str) and var:
            return var
        return ""
    return None


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def parse_logic(logic: Any, node_id: str = "0") -> LogicNode:
    if not isinstance(logic, Mapping) or len(logic) != 1:
        raise MalformedExpressionError("Logic node must be a single-key mapping", logic)
    op, args = next(iter(logic.items()))

    if op in ("and", "or"):
        if not isinstance(args, list):
            raise MalformedExpressionError(f"'{op}' needs a list of children", logic)
        children = tuple(parse_logic(c, f"{node_id}.{i}") for i, c in enumerate(args))
        return LogicNode(tag=NodeTag.And if op == "and" else NodeTag.Or, node_id=node_id, children=children, raw=logic)

    if op in ("not", "!"):
        child = args
        if isinstance(args, list):
            if len(args) != 1:
                raise MalformedExpressionError(f"'{op}' takes exactly one child", logic)
            child = args[0]
        return LogicNode(tag=NodeTag.Not, node_id=node_id, children=(parse_logic(child, f"{node_id}.0"),), raw=logic)

    if op in COMPARISON_OPERATORS:
        if not isinstance(args, list) or len(args) != 2:
            raise MalformedExpressionError(f"'{op}' needs [{{var: path}}, threshold]", logic)
        left, right = args
        operator = op
        path = _var_path(left)
        threshold = right
        if path is None:
            path = _var_path(right)
            threshold = left
            operator = _FLIPPED[op]
        if path is None or path == "":
            raise MalformedExpressionError("Comparison is missing its var path", logic)
        if _var_path(threshold) is not None or isinstance(threshold, Mapping):
            # var-to-var or arithmetic operands are outside what the engine can analyse
            logger.warning(f"Unsupported comparison operands at {node_id}: {logic}")
            return LogicNode(tag=NodeTag.Unsupported, node_id=node_id, raw=logic)
        if not _is_number(threshold):
            raise MalformedExpressionError("Comparison threshold must be a number", logic)
        return LogicNode(tag=NodeTag.Leaf, node_id=node_id, raw=logic,
                         comparison=Comparison(var_path=path, operator=operator, threshold=float(threshold)))

    logger.warning(f"Unsupported operator '{op}' at {node_id}, node will evaluate as failing")
    return LogicNode(tag=NodeTag.Unsupported, node_id=node_id, raw=logic)


# ---------- type detection / prototype reference ----------

def _scan(node: LogicNode) -> Iterator[Comparison]:
    """Comparisons reachable through and/or only. not and unsupported subtrees are skipped."""
    match node.tag:
        case NodeTag.Leaf:
            yield node.comparison
        case NodeTag.And | NodeTag.Or:
            for c in node.children:
                yield from _scan(c)
        case NodeTag.Not | NodeTag.Unsupported:
            return


def detect_prototype_types(expression: Optional[Expression]) -> PrototypeFilter:
    hints = PrototypeFilter()
    if expression is not None:
        for root in expression.prerequisites:
            for comparison in _scan(root):
                if comparison.prototype_type == PrototypeType.Emotion:
                    hints.has_emotions = True
                elif comparison.prototype_type == PrototypeType.Sexual:
                    hints.has_sexual_states = True
    if not hints.has_emotions and not hints.has_sexual_states:
        hints.has_emotions = True
    return hints


class PrototypeReference(BaseModel):
    prototype_id: str
    type: PrototypeType
    operator: str
    threshold: float


def extract_prototype_reference(expression: Optional[Expression]) -> Optional[PrototypeReference]:
    """First emotions.*/sexualStates.* inequality. Equality leaves are status checks, never identifying."""
    if expression is None:
        return None
    for root in expression.prerequisites:
        for comparison in _scan(root):
            if comparison.prototype_type is not None and comparison.operator in ORDERING_OPERATORS:
                return PrototypeReference(prototype_id=comparison.name, type=comparison.prototype_type,
                                          operator=comparison.operator, threshold=comparison.threshold)
    return None


def infer_regime(expression: Expression, axis_model: AxisModel) -> MoodRegime:
    """
    Regime implied by top-level AND mood comparisons, e.g. moodAxes.valence >= 20 -> valence >= 0.2.
    Leaves under or/not do not constrain the population.
    """
    regime = MoodRegime()

    def visit(node: LogicNode):
        if node.tag == NodeTag.And:
            for c in node.children:
                visit(c)
            return
        if node.tag != NodeTag.Leaf or node.comparison.root not in MOOD_ROOTS:
            return
        nonlocal regime
        cmp = node.comparison
        axis = axis_model.resolve_alias(cmp.name)
        value = axis_model.normalize(axis, cmp.threshold)
        if cmp.operator in (">=", ">"):
            regime = regime.with_bound(axis, lo=value, source=cmp.text)
        elif cmp.operator in ("<=", "<"):
            regime = regime.with_bound(axis, hi=value, source=cmp.text)
        elif cmp.operator == "==":
            regime = regime.with_bound(axis, lo=value, hi=value, source=cmp.text)

    for root in expression.prerequisites:
        visit(root)
    return regime
