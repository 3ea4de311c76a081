from __future__ import annotations

import json
import logging
import re
from enum import StrEnum
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from exprdiag.axes import AxisModel
from exprdiag.errors import ConfigError, MalformedGateError, UnknownAxisError, format_validation_error

logger = logging.getLogger(__name__)

EQUALITY_TOLERANCE = 1e-4
GATE_PATTERN = re.compile(r"^(\w+)\s*(>=|<=|>|<|==)\s*(-?\d*\.?\d+)$")

ORDERING_OPERATORS = (">=", ">", "<=", "<")
COMPARISON_OPERATORS = (">=", "<=", ">", "<", "==", "!=")


def compare(value: float, operator: str, threshold: float) -> bool:
    if operator == ">=":
        return value >= threshold
    if operator == ">":
        return value > threshold
    if operator == "<=":
        return value <= threshold
    if operator == "<":
        return value < threshold
    if operator == "==":
        return abs(value - threshold) < EQUALITY_TOLERANCE
    if operator == "!=":
        return abs(value - threshold) >= EQUALITY_TOLERANCE
    raise ValueError(f"Unsupported comparison operator '{operator}'")


class PrototypeType(StrEnum):
    Emotion = "emotion"
    Sexual = "sexual"


class GatePredicate(BaseModel):
    """Threshold predicate over one normalized axis, e.g. 'valence >= 0.4'."""
    model_config = ConfigDict(frozen=True)

    axis: str
    operator: str
    threshold: float

    @classmethod
    def parse(cls, text: str) -> "GatePredicate":
        match = GATE_PATTERN.match(text.strip()) if isinstance(text, str) else None
        if match is None:
            raise MalformedGateError(f"Cannot parse gate {text!r}, expected '<axis> <op> <number>'")
        axis, operator, threshold = match.groups()
        return cls(axis=axis, operator=operator, threshold=float(threshold))

    @property
    def text(self) -> str:
        return f"{self.axis} {self.operator} {self.threshold:g}"

    def holds(self, value: float) -> bool:
        return compare(value, self.operator, self.threshold)

    def interval(self, lo: float, hi: float) -> Tuple[float, float]:
        """Part of [lo, hi] where the predicate holds. Strict bounds are returned closed; lo > hi means empty."""
        if self.operator in (">=", ">"):
            return max(lo, self.threshold), hi
        if self.operator in ("<=", "<"):
            return lo, min(hi, self.threshold)
        return max(lo, self.threshold), min(hi, self.threshold)

    def satisfiable(self, lo: float, hi: float) -> bool:
        """Exact check whether some value in [lo, hi] satisfies the predicate."""
        if lo > hi:
            return False
        if self.operator == ">=":
            return hi >= self.threshold
        if self.operator == ">":
            return hi > self.threshold
        if self.operator == "<=":
            return lo <= self.threshold
        if self.operator == "<":
            return lo < self.threshold
        return lo - EQUALITY_TOLERANCE < self.threshold < hi + EQUALITY_TOLERANCE

    def implied_by(self, lo: float, hi: float) -> bool:
        """True when every value in [lo, hi] satisfies the predicate."""
        if lo > hi:
            return True
        if self.operator == ">=":
            return lo >= self.threshold
        if self.operator == ">":
            return lo > self.threshold
        if self.operator == "<=":
            return hi <= self.threshold
        if self.operator == "<":
            return hi < self.threshold
        return abs(lo - self.threshold) < EQUALITY_TOLERANCE and abs(hi - self.threshold) < EQUALITY_TOLERANCE


class Prototype(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    type: PrototypeType
    weights: Dict[str, float] = Field(default_factory=dict)
    gates: Tuple[GatePredicate, ...] = ()

    @property
    def key(self) -> Tuple[PrototypeType, str]:
        return self.type, self.id

    @property
    def var_root(self) -> str:
        return "emotions" if self.type == PrototypeType.Emotion else "sexualStates"

    @property
    def var_path(self) -> str:
        return f"{self.var_root}.{self.id}"

    @property
    def weight_sum_abs(self) -> float:
        return sum(abs(w) for w in self.weights.values())

    @property
    def normalizer(self) -> float:
        # weights summing below 1 cap the reachable intensity at that sum
        return max(1.0, self.weight_sum_abs)


class PrototypeFilter(BaseModel):
    has_emotions: bool = False
    has_sexual_states: bool = False

    def types(self) -> List[PrototypeType]:
        res = []
        if self.has_emotions or not self.has_sexual_states:
            res.append(PrototypeType.Emotion)
        if self.has_sexual_states:
            res.append(PrototypeType.Sexual)
        return res


def _read_table(path: str | Path) -> dict:
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Prototype table not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        try:
            if path.suffix.lower() in (".yaml", ".yml"):
                return yaml.safe_load(f) or {}
            return json.load(f)
        except (json.JSONDecodeError, yaml.YAMLError) as e:
            raise ConfigError(f"Cannot parse prototype table {path}: {e}") from e


class PrototypeRegistry:
    """
    Named emotion/sexual prototypes loaded from lookup tables. Every weight and gate key
    is audited against the axis model when a prototype is added.
    """

    def __init__(self, axis_model: AxisModel, prototypes: Iterable[Prototype] = (), logger: Optional[logging.Logger] = None):
        self.axis_model = axis_model
        self.logger = logger or logging.getLogger(__name__)
        self._by_type: Dict[PrototypeType, Dict[str, Prototype]] = {t: {} for t in PrototypeType}
        for p in prototypes:
            self.add(p)

    def add(self, prototype: Prototype) -> Prototype:
        self.axis_model.audit_prototype(prototype)
        # store canonical names so aliases never reach the calculators
        canonical = prototype.model_copy(update={
            "weights": {self.axis_model.resolve_alias(k): v for k, v in prototype.weights.items()},
            "gates": tuple(g.model_copy(update={"axis": self.axis_model.resolve_alias(g.axis)}) for g in prototype.gates),
        })
        self._by_type[prototype.type][prototype.id] = canonical
        return canonical

    @classmethod
    def from_lookup_tables(cls, axis_model: AxisModel, emotion_table: Optional[Mapping] = None,
                           sexual_table: Optional[Mapping] = None, logger: Optional[logging.Logger] = None) -> "PrototypeRegistry":
        registry = cls(axis_model, logger=logger)
        for table, ptype in ((emotion_table, PrototypeType.Emotion), (sexual_table, PrototypeType.Sexual)):
            if not table:
                continue
            entries = table.get("entries", table) if isinstance(table, Mapping) else None
            if not isinstance(entries, Mapping):
                raise ConfigError(f"{ptype} prototype table must map prototype ids to entries")
            for proto_id, entry in entries.items():
                if not isinstance(entry, Mapping):
                    raise ConfigError(f"Prototype '{proto_id}' must be a mapping with weights and gates")
                gates = tuple(GatePredicate.parse(g) for g in entry.get("gates", []) or [])
                try:
                    prototype = Prototype(id=proto_id, type=ptype, weights=entry.get("weights", {}) or {}, gates=gates)
                except ValidationError as e:
                    raise ConfigError(f"Invalid prototype '{proto_id}':\n{format_validation_error(e)}") from e
                registry.add(prototype)
        registry.logger.info(f"Loaded {len(registry)} prototypes "
                             f"({len(registry.get_prototypes_by_type(PrototypeType.Emotion))} emotion, "
                             f"{len(registry.get_prototypes_by_type(PrototypeType.Sexual))} sexual)")
        return registry

    @classmethod
    def from_files(cls, axis_model: AxisModel, emotion_path: Optional[str | Path] = None,
                   sexual_path: Optional[str | Path] = None, logger: Optional[logging.Logger] = None) -> "PrototypeRegistry":
        emotion_table = _read_table(emotion_path) if emotion_path else None
        sexual_table = _read_table(sexual_path) if sexual_path else None
        return cls.from_lookup_tables(axis_model, emotion_table, sexual_table, logger=logger)

    def get_prototype(self, prototype_id: str, prototype_type: Optional[PrototypeType] = None) -> Optional[Prototype]:
        types = [prototype_type] if prototype_type is not None else list(PrototypeType)
        for t in types:
            p = self._by_type[t].get(prototype_id)
            if p is not None:
                return p
        return None

    def require(self, prototype_id: str, prototype_type: Optional[PrototypeType] = None) -> Prototype:
        p = self.get_prototype(prototype_id, prototype_type)
        if p is None:
            raise UnknownAxisError(prototype_id, f"no {prototype_type or 'registered'} prototype")
        return p

    def get_prototypes_by_type(self, prototype_type: PrototypeType) -> List[Prototype]:
        return list(self._by_type[prototype_type].values())

    def get_all_prototypes(self, filter: Optional[PrototypeFilter] = None) -> List[Prototype]:
        if filter is None:
            return [p for t in PrototypeType for p in self._by_type[t].values()]
        return [p for t in filter.types() for p in self._by_type[t].values()]

    def __contains__(self, item) -> bool:
        if isinstance(item, tuple):
            ptype, pid = item
            return pid in self._by_type[ptype]
        return any(item in d for d in self._by_type.values())

    def __iter__(self) -> Iterator[Prototype]:
        return iter(self.get_all_prototypes())

    def __len__(self) -> int:
        return sum(len(d) for d in self._by_type.values())
