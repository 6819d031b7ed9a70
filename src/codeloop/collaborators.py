# collaborators.py
# Narrow interfaces to everything the control loop consumes but does not own:
# the language model, repository retrieval, session memory and trace sinks.
#
# The loop only ever talks to these protocols. Concrete implementations here
# are the minimal ones needed to run the agent end to end.

from collections import deque
from typing import Any, Protocol

from openai import OpenAI

from codeloop import display
from codeloop.config import AgentConfig

ROLES = ("planner", "developer", "reviewer", "diagnostics")


# ---------------------------------------------------------------------------
# Model
# ---------------------------------------------------------------------------


class ModelClient(Protocol):
    def query(self, role: str, prompt: str, *, response_format: dict | None = None) -> str: ...


class OpenAIModelClient:
    """
    Role-aware client for any OpenAI-compatible endpoint (OpenRouter by default).

    Each role maps to a configured model string. Timeouts are the client's.
    """

    def __init__(self, config: AgentConfig) -> None:
        self._config = config
        self._client = OpenAI(base_url=config.base_url, api_key=config.api_key)

    def query(self, role: str, prompt: str, *, response_format: dict | None = None) -> str:
        if role not in ROLES:
            raise ValueError(f"unknown model role {role!r}")
        kwargs: dict[str, Any] = {
            "model": self._config.model_for(role),
            "messages": [{"role": "user", "content": prompt}],
            "temperature": 0.0 if role != "planner" else 0.1,
        }
        if response_format is not None:
            kwargs["response_format"] = response_format
        response = self._client.chat.completions.create(**kwargs)
        return (response.choices[0].message.content or "").strip()


def json_schema_format(name: str, schema: dict) -> dict:
    """response_format payload asking the provider for schema-conformant JSON."""
    return {"type": "json_schema", "json_schema": {"name": name, "schema": schema}}


# ---------------------------------------------------------------------------
# Retrieval
# ---------------------------------------------------------------------------


class Retriever(Protocol):
    def retrieve(self, query: str, limit: int) -> list[dict[str, str]]: ...


class NullRetriever:
    def retrieve(self, query: str, limit: int) -> list[dict[str, str]]:
        return []


def safe_retrieve(retriever: Retriever | None, query: str, limit: int) -> list[dict[str, str]]:
    """Retrieval never raises into the loop: any failure is an empty result."""
    if retriever is None:
        return []
    try:
        snippets = retriever.retrieve(query, limit)
    except Exception:
        return []
    return [s for s in snippets or [] if isinstance(s, dict) and "path" in s][:limit]


# ---------------------------------------------------------------------------
# Session memory
# ---------------------------------------------------------------------------


class SessionMemory:
    """Rolling conversation log used only to build prompts."""

    def __init__(self, limit: int = 20) -> None:
        self._turns: deque[dict[str, str]] = deque(maxlen=limit)

    def append(self, role: str, text: str) -> None:
        self._turns.append({"role": role, "content": text})

    def last_turns(self, count: int) -> list[dict[str, str]]:
        if count <= 0:
            return []
        return list(self._turns)[-count:]


# ---------------------------------------------------------------------------
# Tracing
# ---------------------------------------------------------------------------


class Tracer(Protocol):
    def event(self, name: str, payload: dict[str, Any] | None = None) -> None: ...


class NullTracer:
    def event(self, name: str, payload: dict[str, Any] | None = None) -> None:
        return None


class RecordingTracer:
    """Keeps events in memory. Handy for tests and post-run inspection."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def event(self, name: str, payload: dict[str, Any] | None = None) -> None:
        self.events.append((name, dict(payload or {})))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]


class ConsoleTracer:
    """Routes trace events to the terminal display."""

    def event(self, name: str, payload: dict[str, Any] | None = None) -> None:
        display.trace_event(name, payload or {})


def emit(tracer: Tracer | None, name: str, **payload: Any) -> None:
    """Fire-and-forget: a broken trace sink must never break the loop."""
    if tracer is None:
        return
    try:
        tracer.event(name, payload)
    except Exception:
        return
