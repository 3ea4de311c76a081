# tests/conftest.py
import pytest

from exprdiag.axes import AxisModel
from exprdiag.config import SimulationSettings
from exprdiag.constraints import AxisConstraintAnalyzer
from exprdiag.prototypes import PrototypeRegistry
from exprdiag.simulation import MonteCarloSimulationEngine

EMOTION_TABLE = {
    "entries": {
        # valence and arousal in equal parts, gated on positive valence
        "joy": {"weights": {"valence": 1.0, "arousal": 1.0}, "gates": ["valence >= 0.4"]},
        # sum|w| = 0.5 caps intensity at 0.5
        "faint": {"weights": {"valence": 0.5}, "gates": []},
        "serenity": {"weights": {"valence": 1.0}, "gates": []},
        "elation": {"weights": {"valence": 1.0, "arousal": 1.0}, "gates": []},
        "fear": {"weights": {"threat": 1.0, "arousal": 0.5}, "gates": ["threat >= 0.3"]},
        "unease": {"weights": {"threat": 1.0}, "gates": ["threat >= -0.2"]},
        "calm": {"weights": {"arousal": -1.0, "threat": -0.5}, "gates": ["threat <= 0.2"]},
    }
}

SEXUAL_TABLE = {
    "entries": {
        "aroused": {"weights": {"SA": 1.0}, "gates": ["sexual_arousal >= 0.3"]},
    }
}


def leaf(path, op, threshold):
    return {op: [{"var": path}, threshold]}


def expression(*logic, expr_id="test_expression"):
    return {"id": expr_id, "prerequisites": [{"logic": l} for l in logic]}


# ---------- fixtures ----------
@pytest.fixture(scope="module")
def axis_model():
    return AxisModel.default()


@pytest.fixture(scope="module")
def registry(axis_model):
    return PrototypeRegistry.from_lookup_tables(axis_model, EMOTION_TABLE, SEXUAL_TABLE)


@pytest.fixture(scope="module")
def constraint_analyzer(axis_model):
    return AxisConstraintAnalyzer(axis_model)


@pytest.fixture(scope="module")
def make_engine(axis_model, registry):
    def factory(sample_count=2000, seed=7, **kwargs):
        settings = SimulationSettings(sample_count=sample_count, seed=seed, **kwargs)
        return MonteCarloSimulationEngine(axis_model, registry, settings=settings)
    return factory
