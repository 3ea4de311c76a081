from __future__ import annotations

import logging
import math
from typing import Dict, List, Optional, Tuple

import numpy as np

from exprdiag.axes import AxisModel
from exprdiag.config import SamplingDistribution
from exprdiag.state import MoodRegime, PsychState


class StateSampler:
    """
    Draws independent PsychStates. Every sampled axis is drawn over its raw domain as an
    integer; a regime bound narrows only the axis it names.
    """

    def __init__(self, axis_model: AxisModel, distribution: SamplingDistribution = SamplingDistribution.Uniform,
                 seed: Optional[int] = None, rng: Optional[np.random.Generator] = None,
                 logger: Optional[logging.Logger] = None):
        self.axis_model = axis_model
        self.distribution = SamplingDistribution(distribution)
        self.rng = rng if rng is not None else np.random.default_rng(seed)
        self.logger = logger or logging.getLogger(__name__)

    def raw_interval(self, axis: str, regime: Optional[MoodRegime] = None) -> Tuple[int, int]:
        """Integer raw bounds to draw from. Falls back to the full domain when the regime interval is empty."""
        spec = self.axis_model.spec(axis)
        lo, hi = int(math.ceil(spec.raw_min)), int(math.floor(spec.raw_max))
        if regime is None or axis not in regime.bounds:
            return lo, hi
        nlo, nhi = regime.interval(axis, self.axis_model)
        rlo = int(math.ceil(round(nlo * spec.scale, 9)))
        rhi = int(math.floor(round(nhi * spec.scale, 9)))
        if rlo > rhi:
            self.logger.warning(f"Regime interval for {axis} is empty ([{nlo}, {nhi}]), sampling its full domain")
            return lo, hi
        return max(lo, rlo), min(hi, rhi)

    def _draw(self, lo: int, hi: int, n: int) -> np.ndarray:
        if self.distribution == SamplingDistribution.Gaussian:
            mid = (lo + hi) / 2.0
            sigma = max((hi - lo) / 6.0, 1e-9)
            values = np.rint(self.rng.normal(mid, sigma, size=n))
            return np.clip(values, lo, hi)
        return self.rng.integers(lo, hi + 1, size=n).astype(float)

    def sample_columns(self, n: int, regime: Optional[MoodRegime] = None) -> Dict[str, np.ndarray]:
        columns = {}
        for axis in self.axis_model.sampled_axes:
            lo, hi = self.raw_interval(axis, regime)
            columns[axis] = self._draw(lo, hi, n)
        return columns

    def sample(self, n: int, regime: Optional[MoodRegime] = None) -> List[PsychState]:
        if n <= 0:
            return []
        columns = self.sample_columns(n, regime)
        moods = self.axis_model.mood_axes
        traits = self.axis_model.affect_traits
        sexual = self.axis_model.sexual_axes
        states = []
        for i in range(n):
            states.append(PsychState.from_raw(
                self.axis_model,
                mood_axes={a: float(columns[a][i]) for a in moods},
                sexual_axes={a: float(columns[a][i]) for a in sexual},
                affect_traits={a: float(columns[a][i]) for a in traits},
            ))
        return states

    def sample_one(self, regime: Optional[MoodRegime] = None) -> PsychState:
        return self.sample(1, regime)[0]
