import os
import sys

import pytest

# Ensure repo root is on sys.path for imports like 'stockintel.*'
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from stockintel.config import load_config  # noqa: E402
from stockintel.credentials import StaticCredentialProvider  # noqa: E402
from stockintel.models import PricePoint  # noqa: E402


def make_prices(closes, volume=1_000_000.0, volumes=None):
    """Daily bars around the given closes, oldest first."""
    points = []
    for i, close in enumerate(closes):
        points.append(PricePoint(
            date=f"2024-01-{i + 1:02d}" if i < 31 else f"2024-02-{i - 30:02d}",
            open=float(close),
            high=float(close) + 1.0,
            low=float(close) - 1.0,
            close=float(close),
            volume=float(volumes[i]) if volumes is not None else volume,
        ))
    return tuple(points)


@pytest.fixture
def config():
    return load_config(None)


@pytest.fixture
def no_credentials():
    return StaticCredentialProvider({})


@pytest.fixture
def flat_prices():
    return make_prices([100.0] * 30)


@pytest.fixture
def rising_prices():
    return make_prices([100.0 + i for i in range(30)])
