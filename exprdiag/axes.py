from __future__ import annotations

from enum import StrEnum
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from exprdiag.errors import UnknownAxisError

# ---------- Canonical axis sets ----------
MOOD_AXES: Tuple[str, ...] = (
    "valence",
    "arousal",
    "agency_control",
    "threat",
    "engagement",
    "future_expectancy",
    "self_evaluation",
    "affiliation",
    "inhibitory_control",
    "uncertainty",
)

AFFECT_TRAITS: Tuple[str, ...] = (
    "affective_empathy",
    "cognitive_empathy",
    "harm_aversion",
    "self_control",
    "disgust_sensitivity",
    "ruminative_tendency",
    "evaluation_sensitivity",
)

SEXUAL_AXES: Tuple[str, ...] = ("sex_excitation", "sex_inhibition", "baseline_libido")

SEXUAL_AROUSAL = "sexual_arousal"

DEFAULT_ALIASES: Dict[str, str] = {"SA": SEXUAL_AROUSAL}

# Author-facing scale: raw value 100 == normalized 1.0
RAW_SCALE = 100.0


class AxisKind(StrEnum):
    Mood = "mood"
    Trait = "trait"
    Sexual = "sexual"
    Derived = "derived"


class AxisSpec(BaseModel):
    """
    One named scalar dimension. normalized = raw / scale, clamped to the raw domain first.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    kind: AxisKind
    raw_min: float
    raw_max: float
    scale: float = Field(default=RAW_SCALE, gt=0)
    default_raw: float = 0.0

    @property
    def norm_min(self) -> float:
        return self.raw_min / self.scale

    @property
    def norm_max(self) -> float:
        return self.raw_max / self.scale

    @property
    def norm_midpoint(self) -> float:
        return (self.norm_min + self.norm_max) / 2.0

    @property
    def sampled(self) -> bool:
        return self.kind != AxisKind.Derived

    def clamp_raw(self, raw: float) -> float:
        return max(self.raw_min, min(self.raw_max, float(raw)))

    def normalize(self, raw: float) -> float:
        return self.clamp_raw(raw) / self.scale

    def denormalize(self, value: float) -> float:
        return self.clamp_raw(float(value) * self.scale)


def default_axis_specs() -> List[AxisSpec]:
    specs: List[AxisSpec] = []
    for name in MOOD_AXES:
        if name == "inhibitory_control":
            specs.append(AxisSpec(name=name, kind=AxisKind.Mood, raw_min=0, raw_max=100, default_raw=50))
        else:
            specs.append(AxisSpec(name=name, kind=AxisKind.Mood, raw_min=-100, raw_max=100))
    for name in AFFECT_TRAITS:
        specs.append(AxisSpec(name=name, kind=AxisKind.Trait, raw_min=0, raw_max=100, default_raw=50))
    specs.append(AxisSpec(name="sex_excitation", kind=AxisKind.Sexual, raw_min=0, raw_max=100))
    specs.append(AxisSpec(name="sex_inhibition", kind=AxisKind.Sexual, raw_min=0, raw_max=100))
    specs.append(AxisSpec(name="baseline_libido", kind=AxisKind.Sexual, raw_min=-50, raw_max=50))
    specs.append(AxisSpec(name=SEXUAL_AROUSAL, kind=AxisKind.Derived, raw_min=0, raw_max=1, scale=1.0))
    return specs


class AxisModel:
    """
    Single source of truth for axis names, aliases and the raw <-> normalized rule of every axis.

    Everything downstream stores raw values and calls normalize() at the computation boundary,
    so each axis is converted by exactly one rule wherever it is read.
    """

    def __init__(self, specs: Optional[Iterable[AxisSpec]] = None, aliases: Optional[Mapping[str, str]] = None):
        if specs is None:
            specs = default_axis_specs()
        self._specs: Dict[str, AxisSpec] = {}
        for spec in specs:
            if spec.name in self._specs:
                raise ValueError(f"Axis '{spec.name}' declared twice ({self._specs[spec.name].kind} and {spec.kind})")
            self._specs[spec.name] = spec
        self._aliases: Dict[str, str] = dict(DEFAULT_ALIASES if aliases is None else aliases)
        for alias, target in self._aliases.items():
            if target not in self._specs:
                raise ValueError(f"Alias '{alias}' points to unknown axis '{target}'")

    @classmethod
    def default(cls) -> "AxisModel":
        return cls()

    # ---------- lookup ----------
    def resolve_alias(self, name: str) -> str:
        return self._aliases.get(name, name)

    def is_known(self, name: str) -> bool:
        return self.resolve_alias(name) in self._specs

    def spec(self, name: str) -> AxisSpec:
        canonical = self.resolve_alias(name)
        try:
            return self._specs[canonical]
        except KeyError:
            raise UnknownAxisError(name) from None

    def kind(self, name: str) -> AxisKind:
        return self.spec(name).kind

    def names(self, kind: Optional[AxisKind] = None) -> List[str]:
        return [n for n, s in self._specs.items() if kind is None or s.kind == kind]

    @property
    def mood_axes(self) -> List[str]:
        return self.names(AxisKind.Mood)

    @property
    def affect_traits(self) -> List[str]:
        return self.names(AxisKind.Trait)

    @property
    def sexual_axes(self) -> List[str]:
        return self.names(AxisKind.Sexual)

    @property
    def sampled_axes(self) -> List[str]:
        return [n for n, s in self._specs.items() if s.sampled]

    # ---------- conversions ----------
    def normalize(self, name: str, raw: float) -> float:
        return self.spec(name).normalize(raw)

    def denormalize(self, name: str, value: float) -> float:
        return self.spec(name).denormalize(value)

    def raw_domain(self, name: str) -> Tuple[float, float]:
        s = self.spec(name)
        return s.raw_min, s.raw_max

    def normalized_domain(self, name: str) -> Tuple[float, float]:
        s = self.spec(name)
        return s.norm_min, s.norm_max

    def sexual_arousal(self, sex_excitation: float, sex_inhibition: float, baseline_libido: float) -> float:
        """Derived arousal in [0, 1] from the three raw sexual axes."""
        value = (float(sex_excitation) - float(sex_inhibition) + float(baseline_libido)) / RAW_SCALE
        return max(0.0, min(1.0, value))

    # ---------- audit ----------
    def audit_keys(self, keys: Iterable[str], context: str) -> None:
        for key in keys:
            if not self.is_known(key):
                raise UnknownAxisError(key, context)

    def audit_prototype(self, prototype) -> None:
        """Every weight and gate key of a prototype must resolve to a known axis."""
        context = f"prototype {prototype.type}:{prototype.id}"
        self.audit_keys(prototype.weights.keys(), context + " weights")
        self.audit_keys([g.axis for g in prototype.gates], context + " gates")
