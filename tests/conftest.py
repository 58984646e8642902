from datetime import datetime, timedelta
from pathlib import Path
import sys

import pytest

project_root = Path(__file__).resolve().parents[1]
src_path = project_root / "src"

if src_path.exists():
    sys.path.insert(0, str(src_path))

from fcl.analysis.trend import TrendAnalyzer  # noqa: E402
from fcl.api.models import BGSample  # noqa: E402
from fcl.core.dosing.context import DosingContext, Observation  # noqa: E402
from fcl.core.preferences import PreferenceStore  # noqa: E402

# Wednesday noon: daytime on a weekday.
NOON = datetime(2026, 3, 4, 12, 0)


def build_samples(values, end=NOON, step=5, iob=0.0):
    """Readings every `step` minutes, the last one at `end`."""
    iobs = list(iob) if isinstance(iob, (list, tuple)) else [iob] * len(values)
    start = end - timedelta(minutes=step * (len(values) - 1))
    return [
        BGSample(start + timedelta(minutes=step * i), float(value), float(iobs[i]))
        for i, value in enumerate(values)
    ]


def build_context(now=NOON, learned=None, **preferences):
    return DosingContext.resolve(PreferenceStore(**preferences), learned or {}, now)


def build_observation(samples, ctx):
    return Observation.build(samples, ctx, TrendAnalyzer())


@pytest.fixture
def noon():
    return NOON


@pytest.fixture
def samples():
    return build_samples


@pytest.fixture
def context():
    return build_context


@pytest.fixture
def observation():
    return build_observation
