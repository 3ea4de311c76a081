from __future__ import annotations

from typing import Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from exprdiag.axes import AxisKind, AxisModel, SEXUAL_AROUSAL
from exprdiag.errors import ConfigError, UnknownAxisError, format_validation_error


class PsychState(BaseModel):
    """
    One sampled point of psychological state. Mood axes, sexual axes and affect traits are
    always stored raw (author-facing units); sexual_arousal is the derived [0, 1] scalar.
    """
    model_config = ConfigDict(frozen=True)

    mood_axes: Dict[str, float]
    sexual_axes: Dict[str, float]
    sexual_arousal: float = Field(ge=0, le=1)
    affect_traits: Dict[str, float]

    @classmethod
    def from_raw(cls, axis_model: AxisModel, mood_axes: Optional[Mapping[str, float]] = None,
                 sexual_axes: Optional[Mapping[str, float]] = None,
                 affect_traits: Optional[Mapping[str, float]] = None) -> "PsychState":
        mood = _fill(axis_model, AxisKind.Mood, mood_axes or {})
        sexual = _fill(axis_model, AxisKind.Sexual, sexual_axes or {})
        traits = _fill(axis_model, AxisKind.Trait, affect_traits or {})
        arousal = axis_model.sexual_arousal(sexual["sex_excitation"], sexual["sex_inhibition"], sexual["baseline_libido"])
        return cls(mood_axes=mood, sexual_axes=sexual, sexual_arousal=arousal, affect_traits=traits)

    @classmethod
    def from_normalized(cls, axis_model: AxisModel, mood_axes: Optional[Mapping[str, float]] = None,
                        sexual_axes: Optional[Mapping[str, float]] = None,
                        affect_traits: Optional[Mapping[str, float]] = None) -> "PsychState":
        def raw(values):
            return {k: axis_model.denormalize(k, v) for k, v in (values or {}).items()}
        return cls.from_raw(axis_model, raw(mood_axes), raw(sexual_axes), raw(affect_traits))

    def raw_value(self, axis: str) -> float:
        if axis in self.mood_axes:
            return self.mood_axes[axis]
        if axis in self.affect_traits:
            return self.affect_traits[axis]
        if axis in self.sexual_axes:
            return self.sexual_axes[axis]
        if axis == SEXUAL_AROUSAL:
            return self.sexual_arousal
        raise UnknownAxisError(axis, "not part of the sampled state")

    def normalized(self, axis_model: AxisModel) -> Dict[str, float]:
        """Flat map of every axis in normalized units. This is the only place raw values get converted."""
        out: Dict[str, float] = {}
        for group in (self.mood_axes, self.affect_traits, self.sexual_axes):
            for k, v in group.items():
                out[k] = axis_model.normalize(k, v)
        out[SEXUAL_AROUSAL] = self.sexual_arousal
        return out


def _fill(axis_model: AxisModel, kind: AxisKind, values: Mapping[str, float]) -> Dict[str, float]:
    res = {}
    for name, value in values.items():
        canonical = axis_model.resolve_alias(name)
        if axis_model.kind(canonical) != kind:
            raise UnknownAxisError(name, f"not a {kind} axis")
        res[canonical] = axis_model.spec(canonical).clamp_raw(value)
    for name in axis_model.names(kind):
        if name not in res:
            res[name] = axis_model.spec(name).default_raw
    return res


class AxisBound(BaseModel):
    min: Optional[float] = None
    max: Optional[float] = None


class MoodRegime(BaseModel):
    """
    Axis bounds (normalized units, inclusive) defining the in-regime population.
    An empty bounds map is the global population.
    """
    bounds: Dict[str, AxisBound] = Field(default_factory=dict)
    sources: Dict[str, List[str]] = Field(default_factory=dict)

    @classmethod
    def from_definition(cls, definition: Optional[Mapping[str, Mapping[str, float]]], axis_model: AxisModel) -> "MoodRegime":
        if not definition:
            return cls()
        if not isinstance(definition, Mapping):
            raise ConfigError(f"Mood regime must be a mapping of axis -> bounds, got {type(definition).__name__}")
        bounds = {}
        for name, spec in definition.items():
            axis = axis_model.resolve_alias(name.split(".")[-1])
            if not axis_model.is_known(axis):
                raise UnknownAxisError(name, "mood regime")
            if spec is not None and not isinstance(spec, Mapping):
                raise ConfigError(f"Regime bound for '{name}' must be a mapping with min/max, got {spec!r}")
            try:
                bound = AxisBound(**dict(spec or {}))
            except ValidationError as e:
                raise ConfigError(f"Invalid regime bound for '{name}':\n{format_validation_error(e)}") from e
            bounds[axis] = _merge(bounds.get(axis), bound)
        return cls(bounds=bounds)

    @property
    def is_global(self) -> bool:
        return not self.bounds

    def definition(self) -> Dict[str, Dict[str, float]]:
        return {axis: b.model_dump(exclude_none=True) for axis, b in self.bounds.items()}

    def with_bound(self, axis: str, lo: Optional[float] = None, hi: Optional[float] = None,
                   source: Optional[str] = None) -> "MoodRegime":
        bounds = dict(self.bounds)
        bounds[axis] = _merge(bounds.get(axis), AxisBound(min=lo, max=hi))
        sources = {k: list(v) for k, v in self.sources.items()}
        if source:
            sources.setdefault(axis, []).append(source)
        return MoodRegime(bounds=bounds, sources=sources)

    def interval(self, axis: str, axis_model: AxisModel) -> Tuple[float, float]:
        """Normalized interval for the axis: its domain intersected with the regime bound."""
        lo, hi = axis_model.normalized_domain(axis)
        bound = self.bounds.get(axis_model.resolve_alias(axis))
        if bound is not None:
            if bound.min is not None:
                lo = max(lo, bound.min)
            if bound.max is not None:
                hi = min(hi, bound.max)
        return lo, hi

    def is_empty(self, axis_model: AxisModel) -> bool:
        return any(lo > hi for lo, hi in (self.interval(a, axis_model) for a in self.bounds))

    def contains_normalized(self, normalized: Mapping[str, float]) -> bool:
        for axis, bound in self.bounds.items():
            value = normalized.get(axis, 0.0)
            if bound.min is not None and value < bound.min:
                return False
            if bound.max is not None and value > bound.max:
                return False
        return True

    def contains(self, state: PsychState, axis_model: AxisModel) -> bool:
        return self.contains_normalized(state.normalized(axis_model))


def _merge(a: Optional[AxisBound], b: AxisBound) -> AxisBound:
    if a is None:
        return b
    lo = [v for v in (a.min, b.min) if v is not None]
    hi = [v for v in (a.max, b.max) if v is not None]
    return AxisBound(min=max(lo) if lo else None, max=min(hi) if hi else None)
