"""
Pytest configuration and shared fixtures for the GenStack test suite.

Nothing here talks to Docker, PostgreSQL or a model endpoint: the container
client is a MagicMock, the store is in-memory and LLM traffic goes through
httpx.MockTransport.
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
import pytest

from genstack.sandbox import CommandExecutor, SandboxFilesystem
from genstack.utils.config import CommandConfig, Config, LLMConfig


class RecordingPublisher:
    """Collects ``(session_id, event_type, data)`` tuples like the live channel receives."""

    def __init__(self):
        self.events: List[Tuple[str, str, Dict[str, Any]]] = []

    async def __call__(self, session_id: str, event_type: str, data: Dict[str, Any]) -> None:
        self.events.append((session_id, event_type, data))

    def of_type(self, event_type: str) -> List[Dict[str, Any]]:
        return [data for _, kind, data in self.events if kind == event_type]

    def types(self) -> List[str]:
        return [kind for _, kind, _ in self.events]


class InMemoryStore:
    """SessionStore implementation backed by dicts."""

    def __init__(self):
        self.sessions: Dict[str, Dict[str, Any]] = {}
        self.messages: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.files: Dict[Tuple[str, str], str] = {}

    async def disconnect(self):
        pass

    async def create_session(self, session_id, prompt, config, status):
        self.sessions[session_id] = {
            "id": session_id,
            "prompt": prompt,
            "config": config,
            "status": status,
            "error_message": None,
            "created_at": datetime.now(timezone.utc),
        }

    async def update_session(self, session_id, **fields):
        self.sessions.setdefault(session_id, {"id": session_id}).update(fields)

    async def get_session(self, session_id):
        session = self.sessions.get(session_id)
        return dict(session) if session else None

    async def list_sessions(self, limit=50, offset=0):
        return [dict(s) for s in list(self.sessions.values())[offset:offset + limit]]

    async def delete_session(self, session_id):
        return self.sessions.pop(session_id, None) is not None

    async def find_stuck_sessions(self, older_than_seconds):
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=older_than_seconds)
        return [
            dict(s) for s in self.sessions.values()
            if s.get("status") == "generating" and s.get("created_at", cutoff) <= cutoff
        ]

    async def upsert_message(self, session_id, message_id, role, content, timestamp: datetime):
        messages = self.messages.setdefault(session_id, {})
        if message_id in messages:
            messages[message_id]["content"] += content
        else:
            messages[message_id] = {"id": message_id, "role": role, "content": content}

    async def get_messages(self, session_id):
        return list(self.messages.get(session_id, {}).values())

    async def save_file(self, session_id, path, content):
        self.files[(session_id, path)] = content

    async def get_files(self, session_id):
        return [
            {"path": path, "content": content}
            for (sid, path), content in sorted(self.files.items())
            if sid == session_id
        ]


def chat_response(
    content: Optional[str] = None,
    tool_calls: Optional[List[Dict[str, Any]]] = None,
    prompt_tokens: int = 10,
    completion_tokens: int = 5,
) -> Dict[str, Any]:
    """Build an OpenAI-style chat completion body."""
    message: Dict[str, Any] = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = tool_calls
    return {
        "choices": [{"message": message, "finish_reason": "tool_calls" if tool_calls else "stop"}],
        "usage": {"prompt_tokens": prompt_tokens, "completion_tokens": completion_tokens},
    }


def tool_call(call_id: str, name: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": call_id,
        "type": "function",
        "function": {"name": name, "arguments": json.dumps(arguments)},
    }


class ScriptedLLM:
    """
    MockTransport handler that replays chat completion bodies in order.

    Every request body is kept in ``requests`` for assertions.
    """

    def __init__(self, responses: List[Dict[str, Any]]):
        self.responses = list(responses)
        self.requests: List[Dict[str, Any]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content))
        if not self.responses:
            return httpx.Response(200, json=chat_response("done"))
        return httpx.Response(200, json=self.responses.pop(0))

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


@pytest.fixture
def test_config(tmp_path):
    """Provide test configuration with sandboxes under tmp_path."""
    config = Config()
    config.generation.generated_dir = str(tmp_path / "generated")
    config.generation.templates_dir = str(tmp_path / "templates")
    config.llm = LLMConfig(
        base_url="http://llm.test/v1",
        model="test-model",
        api_key="test-key",
        timeout=5.0,
        input_cost_per_million=1.0,
        output_cost_per_million=2.0,
        max_tool_calls=20,
    )
    return config


@pytest.fixture
def filesystem(tmp_path) -> SandboxFilesystem:
    templates = tmp_path / "templates"
    templates.mkdir()
    return SandboxFilesystem(tmp_path / "generated", templates)


@pytest.fixture
def executor(filesystem) -> CommandExecutor:
    return CommandExecutor(filesystem, CommandConfig(timeout_seconds=10.0))


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def make_template(filesystem) -> Callable[..., Path]:
    """Create a template directory from a {relative_path: content} mapping."""

    def _make(name: str, files: Dict[str, str]) -> Path:
        root = filesystem.templates_dir / name
        for relative, content in files.items():
            target = root / relative
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content)
        return root

    return _make


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll until ``predicate`` is true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)
