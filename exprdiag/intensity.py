from __future__ import annotations

from typing import Dict, Iterable, List, Mapping, NamedTuple, Tuple

from exprdiag.axes import AxisModel
from exprdiag.prototypes import Prototype, PrototypeType


def _clamp01(x: float) -> float:
    return max(0.0, min(1.0, x))


class PrototypeSignal(NamedTuple):
    raw: float
    intensity: float
    gate_pass: bool
    failed_gates: Tuple[str, ...]


class PrototypeIntensityCalculator:
    """
    Intensity of a prototype from normalized axis values, plus per-sample gate evaluation.

    raw       = clamp01(sum(w * v) / max(1, sum|w|))
    intensity = raw if every gate holds, else 0
    """

    def __init__(self, axis_model: AxisModel):
        self.axis_model = axis_model

    def raw_intensity(self, prototype: Prototype, normalized: Mapping[str, float]) -> float:
        if not prototype.weights:
            return 0.0
        total = 0.0
        for axis, weight in prototype.weights.items():
            total += weight * normalized.get(axis, 0.0)
        return _clamp01(total / prototype.normalizer)

    def failed_gates(self, prototype: Prototype, normalized: Mapping[str, float]) -> List[str]:
        return [g.text for g in prototype.gates if not g.holds(normalized.get(g.axis, 0.0))]

    def evaluate(self, prototype: Prototype, normalized: Mapping[str, float]) -> PrototypeSignal:
        raw = self.raw_intensity(prototype, normalized)
        failed = tuple(self.failed_gates(prototype, normalized))
        gate_pass = not failed
        return PrototypeSignal(raw=raw, intensity=raw if gate_pass else 0.0, gate_pass=gate_pass, failed_gates=failed)

    def evaluate_all(self, prototypes: Iterable[Prototype],
                     normalized: Mapping[str, float]) -> Dict[Tuple[PrototypeType, str], PrototypeSignal]:
        return {p.key: self.evaluate(p, normalized) for p in prototypes}
