import pytest

from agentflow.config import AgentConfig
from agentflow.services.transport import RecordingSink
from fakes import FakeUpstream


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
def agent_config():
    return AgentConfig(max_cycles=5)
