# tests/test_axes.py
import math

import pytest
from hypothesis import given, settings, strategies as st

from exprdiag.axes import AFFECT_TRAITS, MOOD_AXES, SEXUAL_AROUSAL, AxisKind, AxisModel, AxisSpec
from exprdiag.errors import UnknownAxisError
from exprdiag.state import MoodRegime, PsychState

MODEL = AxisModel.default()


@settings(deadline=None, max_examples=300)
@given(axis=st.sampled_from(MODEL.names()), frac=st.floats(min_value=0.0, max_value=1.0))
def test_normalize_round_trip(axis, frac):
    lo, hi = MODEL.raw_domain(axis)
    raw = lo + frac * (hi - lo)
    assert math.isclose(MODEL.denormalize(axis, MODEL.normalize(axis, raw)), raw, abs_tol=1e-9)


@pytest.mark.parametrize("axis", list(MOOD_AXES) + list(AFFECT_TRAITS) + ["sex_excitation", "baseline_libido"])
def test_round_trip_at_bounds_and_midpoint(axis):
    lo, hi = MODEL.raw_domain(axis)
    for raw in (lo, (lo + hi) / 2, hi):
        assert math.isclose(MODEL.denormalize(axis, MODEL.normalize(axis, raw)), raw, abs_tol=1e-9)


def test_domains():
    assert MODEL.raw_domain("valence") == (-100, 100)
    assert MODEL.raw_domain("inhibitory_control") == (0, 100)
    assert MODEL.normalized_domain("inhibitory_control") == (0, 1)
    assert MODEL.raw_domain("baseline_libido") == (-50, 50)
    assert MODEL.normalized_domain(SEXUAL_AROUSAL) == (0, 1)
    assert MODEL.kind("self_control") == AxisKind.Trait


def test_out_of_domain_values_are_clamped():
    assert MODEL.normalize("valence", 250) == 1.0
    assert MODEL.normalize("inhibitory_control", -30) == 0.0


def test_alias_resolves_to_sexual_arousal():
    assert MODEL.resolve_alias("SA") == SEXUAL_AROUSAL
    assert MODEL.spec("SA").name == SEXUAL_AROUSAL


def test_unknown_axis_raises():
    with pytest.raises(UnknownAxisError) as e:
        MODEL.spec("mood_swing")
    assert isinstance(e.value, KeyError)
    assert "mood_swing" in str(e.value)


def test_duplicate_axis_rejected():
    specs = [AxisSpec(name="valence", kind=AxisKind.Mood, raw_min=-100, raw_max=100),
             AxisSpec(name="valence", kind=AxisKind.Trait, raw_min=0, raw_max=100)]
    with pytest.raises(ValueError):
        AxisModel(specs)


def test_sexual_arousal_derivation():
    assert MODEL.sexual_arousal(80, 20, 10) == pytest.approx(0.7)
    assert MODEL.sexual_arousal(0, 100, -50) == 0.0
    assert MODEL.sexual_arousal(100, 0, 50) == 1.0


def test_raw_and_normalized_constructors_agree():
    a = PsychState.from_raw(MODEL, mood_axes={"valence": 50, "threat": -20})
    b = PsychState.from_normalized(MODEL, mood_axes={"valence": 0.5, "threat": -0.2})
    assert a.mood_axes["valence"] == pytest.approx(b.mood_axes["valence"])
    assert a.mood_axes["threat"] == pytest.approx(b.mood_axes["threat"])
    assert a.normalized(MODEL)["valence"] == pytest.approx(0.5)


def test_missing_traits_take_default():
    s = PsychState.from_raw(MODEL)
    assert all(s.affect_traits[t] == 50 for t in AFFECT_TRAITS)
    assert s.mood_axes["inhibitory_control"] == 50


def test_state_rejects_axis_of_wrong_kind():
    with pytest.raises(UnknownAxisError):
        PsychState.from_raw(MODEL, mood_axes={"self_control": 10})


def test_regime_membership_is_inclusive():
    regime = MoodRegime.from_definition({"valence": {"min": 0.4}}, MODEL)
    assert regime.contains(PsychState.from_raw(MODEL, mood_axes={"valence": 40}), MODEL)
    assert not regime.contains(PsychState.from_raw(MODEL, mood_axes={"valence": 39}), MODEL)


def test_empty_regime_is_valid():
    regime = MoodRegime.from_definition({"valence": {"min": 0.6, "max": 0.2}}, MODEL)
    assert regime.is_empty(MODEL)
    assert not regime.contains(PsychState.from_raw(MODEL, mood_axes={"valence": 40}), MODEL)
