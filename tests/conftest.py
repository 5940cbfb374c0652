import sys
from pathlib import Path

import pytest

# Ensure repository root is on sys.path for test imports without an install.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from icefloe.config import ClientConfig, PollConfig, RetryConfig  # noqa: E402
from icefloe.testkit import ManualClock, RecordingSleep, ScriptedTransport  # noqa: E402


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(start=100.0)


@pytest.fixture
def sleep(clock: ManualClock) -> RecordingSleep:
    return RecordingSleep(clock)


@pytest.fixture
def transport(clock: ManualClock) -> ScriptedTransport:
    return ScriptedTransport(clock=clock)


@pytest.fixture
def config() -> ClientConfig:
    return ClientConfig(
        base_url="https://api.test",
        api_key="tk-test-0123456789",
        retry=RetryConfig(base_delay_s=0.1, max_delay_s=1.0, jitter_pct=0.0),
        poll=PollConfig(base_delay_s=0.05, max_delay_s=0.5),
    )
