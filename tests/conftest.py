import os

import pytest

from termirc.config.model import EngineConfig
from tests.fixtures.fakes import FakeClock

# Keep the test output readable.
os.environ.setdefault("DEBUG", "false")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_config():
    def _make(**overrides) -> EngineConfig:
        data: dict[str, object] = {
            "nickname": "a",
            "requested_capabilities": ["multi-prefix", "server-time"],
            "rate_limit": {"interval": 2.0, "burst": 1},
            "reconnect": {"base_delay": 1.0, "max_delay": 30.0, "jitter": 0.0},
        }
        data.update(overrides)
        return EngineConfig.from_dict(data)

    return _make
