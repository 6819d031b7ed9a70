import pytest
from unittest.mock import MagicMock

from codeloop.collaborators import RecordingTracer
from codeloop.config import AgentConfig
from codeloop.diffs import DirectPatchApplier
from codeloop.tool_bus import ToolBus
from codeloop.tools import ToolRegistry


@pytest.fixture
def config(tmp_path):
    return AgentConfig(repo_path=tmp_path)


@pytest.fixture
def tracer():
    return RecordingTracer()


@pytest.fixture
def bus(config, tracer):
    return ToolBus(
        config,
        ToolRegistry.default(),
        applier=DirectPatchApplier(str(config.repo_path)),
        tracer=tracer,
    )


@pytest.fixture
def model():
    """Model client double. Tests set .query.side_effect / .return_value."""
    client = MagicMock()
    client.query.return_value = ""
    return client
