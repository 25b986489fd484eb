"""Context Sentry test configuration."""
import json
import sys
from collections import deque
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from context_mcp.database import connect  # noqa: E402
from context_mcp.embedder import HashEmbedder  # noqa: E402
from context_mcp.errors import ExternalServiceDegraded  # noqa: E402


class ScriptedCompletion:
    """Completion service stand-in answering from a queue.

    Queue entries are strings (returned) or exceptions (raised). An empty queue
    behaves like an unconfigured service.
    """

    model = "scripted"

    def __init__(self, *responses):
        self.responses = deque(responses)
        self.prompts = []
        self.calls = 0

    def queue(self, *responses):
        self.responses.extend(responses)

    def queue_json(self, payload):
        self.responses.append(json.dumps(payload))

    def complete(self, system_prompt, user_prompt, max_tokens=4000):
        self.calls += 1
        self.prompts.append(user_prompt)
        if not self.responses:
            raise ExternalServiceDegraded("no scripted response")
        response = self.responses.popleft()
        if isinstance(response, Exception):
            raise response
        return response

    def close(self):
        pass


@pytest.fixture
def completion():
    return ScriptedCompletion()


@pytest.fixture
def embedder():
    return HashEmbedder()


@pytest.fixture
def conn(tmp_path):
    """A fresh SQLite connection with the production pragmas."""
    c = connect(tmp_path / "test.db")
    yield c
    c.close()


@pytest.fixture
def system(tmp_path, completion, embedder):
    """A ContextMemorySystem on a temp folder, SQLite-only vector search."""
    from context_mcp.memory_system import ContextMemorySystem

    s = ContextMemorySystem(
        data_folder=tmp_path / "data",
        embedder=embedder,
        completion=completion,
        enable_vector_index=False,
    )
    yield s
    s.close()


@pytest.fixture
def memory_factory(system):
    """Create a memory with explicit classification (no completion call)."""

    def _make(content, tenant_id="tenant-a", category="DECISION",
              importance="CRITICAL", **kwargs):
        res = system.create_memory(
            content, tenant_id, category=category, importance=importance, **kwargs
        )
        assert res.success, res.reason
        return res.data[0]

    return _make
