"""
agent.py — Agent = instructions + model call + optional tools
=============================================================
An Agent is a configured wrapper around a language-model call, optionally
augmented with callable tools. Every stage agent builds one with its own
system prompt.

Two-tier execution strategy (chooses the highest available tier):
  1. Azure AI Foundry Agent Service — when AZURE_AI_PROJECT_ENDPOINT is set.
     Creates an ephemeral Foundry agent, thread and run; deletes the agent
     afterwards. Tools are not forwarded on this tier.
  2. Direct Azure OpenAI              — when AZURE_OPENAI_ENDPOINT + KEY are set.
     Chat completions via ChatClient; tool calls are executed locally.
  Neither configured → LLMNotConfiguredError (stage falls back to mock).
"""

from __future__ import annotations

import inspect
import json
import logging
import re
import typing
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional, Sequence, Type, TypeVar

from pydantic import BaseModel

from ci_copilot.collector import is_excluded
from ci_copilot.config import Settings, get_settings
from ci_copilot.errors import LLMNotConfiguredError, StageError
from ci_copilot.llm_client import ChatClient

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

_JSON_TYPES = {str: "string", int: "integer", float: "number", bool: "boolean"}
_FENCE_RE = re.compile(r"^```(?:json)?\s*\n(.*)\n```\s*$", re.DOTALL)


# ─── Tools ───────────────────────────────────────────────────────────────────

@dataclass
class Tool:
    """A function the model may call, described as an OpenAI function tool."""
    name:        str
    description: str
    parameters:  dict[str, Any]
    func:        Callable[..., Any]

    @classmethod
    def from_function(cls, func: Callable[..., Any], name: str | None = None) -> "Tool":
        """Build a Tool from a plainly-annotated function (str/int/float/bool params)."""
        hints = typing.get_type_hints(func)
        props: dict[str, Any] = {}
        required: list[str] = []
        for pname, param in inspect.signature(func).parameters.items():
            props[pname] = {"type": _JSON_TYPES.get(hints.get(pname, str), "string")}
            if param.default is inspect.Parameter.empty:
                required.append(pname)
        doc = inspect.getdoc(func) or ""
        return cls(
            name        = name or func.__name__,
            description = doc.splitlines()[0] if doc else func.__name__,
            parameters  = {"type": "object", "properties": props, "required": required},
            func        = func,
        )

    def schema(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name":        self.name,
                "description": self.description,
                "parameters":  self.parameters,
            },
        }

    def invoke(self, arguments: str) -> str:
        kwargs = json.loads(arguments or "{}")
        result = self.func(**kwargs)
        return result if isinstance(result, str) else json.dumps(result)


def make_repo_tools(root: Path, exclude: Sequence[str] = (), max_bytes: int = 40_000) -> list[Tool]:
    """read_file / list_files scoped to *root* so the model can pull extra context."""
    root = Path(root).resolve()

    def read_file(path: str) -> str:
        """Read a UTF-8 text file from the repository by relative path."""
        target = (root / path).resolve()
        if root not in target.parents or is_excluded(path, exclude):
            return f"error: {path} is outside the readable repository area"
        if not target.is_file():
            return f"error: {path} does not exist"
        text = target.read_text(encoding="utf-8", errors="replace")
        return text[:max_bytes]

    def list_files(pattern: str = "**/*.py") -> str:
        """List repository files matching a glob pattern."""
        paths = [
            p.relative_to(root).as_posix() for p in sorted(root.glob(pattern))
            if p.is_file() and not is_excluded(p.relative_to(root).as_posix(), exclude)
        ]
        return "\n".join(paths[:200])

    return [Tool.from_function(read_file), Tool.from_function(list_files)]


# ─── Foundry tier ────────────────────────────────────────────────────────────

class FoundryAgentRunner:
    """Run one prompt through an ephemeral Azure AI Foundry agent."""

    tier = "foundry"

    def __init__(self, project_endpoint: str, deployment: str) -> None:
        from azure.ai.projects import AIProjectClient
        from azure.identity import DefaultAzureCredential

        self._deployment = deployment
        self._client = AIProjectClient(
            endpoint=project_endpoint,
            credential=DefaultAzureCredential(),
        )

    def run(self, name: str, instructions: str, user_message: str) -> str:
        agents = self._client.agents
        agent = agents.create_agent(
            model=self._deployment,
            name=name,
            instructions=instructions,
        )
        try:
            thread = agents.threads.create()
            agents.messages.create(thread_id=thread.id, role="user", content=user_message)
            run = agents.runs.create_and_process(thread_id=thread.id, agent_id=agent.id)
            if run.status == "failed":
                raise StageError(name, f"Foundry agent run failed: {run.last_error}")
            # newest first
            for message in agents.messages.list(thread_id=thread.id):
                if message.role == "assistant" and message.text_messages:
                    return message.text_messages[-1].text.value
            raise StageError(name, "Foundry agent returned no assistant message")
        finally:
            # ephemeral agents count against the project quota
            agents.delete_agent(agent.id)


# ─── Agent ───────────────────────────────────────────────────────────────────

def _strip_fences(text: str) -> str:
    m = _FENCE_RE.match(text.strip())
    return m.group(1) if m else text


class Agent:
    """
    Instructions + a model tier + optional tools.

    run(user_message)              → final assistant text
    run_json(user_message, Model)  → validated pydantic model
    """

    def __init__(
        self,
        name: str,
        instructions: str,
        client: Optional[ChatClient] = None,
        tools: Sequence[Tool] = (),
        foundry: Optional[FoundryAgentRunner] = None,
        max_tool_rounds: int = 5,
    ) -> None:
        if client is None and foundry is None:
            raise LLMNotConfiguredError(f"Agent '{name}' has no model tier.")
        self.name = name
        self.instructions = instructions
        self.tools = {t.name: t for t in tools}
        self.max_tool_rounds = max_tool_rounds
        self._client = client
        self._foundry = foundry

    @property
    def mode(self) -> str:
        return "foundry" if self._foundry is not None else "azure_openai"

    def run(self, user_message: str, json_mode: bool = False) -> str:
        if self._foundry is not None:
            if self.tools:
                logger.debug("%s: tools are not forwarded to the Foundry tier", self.name)
            return self._foundry.run(self.name, self.instructions, user_message)
        if not self.tools:
            return self._client.complete(self.instructions, user_message, json_mode=json_mode)
        return self._run_with_tools(user_message, json_mode)

    def _run_with_tools(self, user_message: str, json_mode: bool) -> str:
        messages: list[dict[str, Any]] = [
            {"role": "system", "content": self.instructions},
            {"role": "user",   "content": user_message},
        ]
        schemas = [t.schema() for t in self.tools.values()]
        for _ in range(self.max_tool_rounds):
            msg = self._client.chat(messages, tools=schemas, json_mode=json_mode)
            calls = getattr(msg, "tool_calls", None) or []
            if not calls:
                return msg.content or ""
            messages.append({
                "role": "assistant",
                "content": msg.content,
                "tool_calls": [
                    {
                        "id": c.id,
                        "type": "function",
                        "function": {"name": c.function.name, "arguments": c.function.arguments},
                    }
                    for c in calls
                ],
            })
            for call in calls:
                messages.append({
                    "role": "tool",
                    "tool_call_id": call.id,
                    "content": self._invoke_tool(call.function.name, call.function.arguments),
                })
        raise StageError(self.name, f"no final answer after {self.max_tool_rounds} tool rounds")

    def _invoke_tool(self, name: str, arguments: str) -> str:
        tool = self.tools.get(name)
        if tool is None:
            return f"error: unknown tool '{name}'"
        try:
            result = tool.invoke(arguments)
        except Exception as exc:  # the model sees the failure and can recover
            logger.warning("%s: tool %s failed: %s", self.name, name, exc)
            return f"error: {type(exc).__name__}: {exc}"
        logger.debug("%s: tool %s → %d chars", self.name, name, len(result))
        return result

    def run_json(self, user_message: str, model_cls: Type[M]) -> M:
        """
        Run in JSON mode and validate against *model_cls*.

        Raises:
            json.JSONDecodeError – response was not JSON.
            pydantic.ValidationError – JSON did not match the contract.
        """
        text = self.run(user_message, json_mode=True)
        return model_cls.model_validate(json.loads(_strip_fences(text)))


def build_agent(
    name: str,
    instructions: str,
    tools: Sequence[Tool] = (),
    settings: Optional[Settings] = None,
) -> Agent:
    """Pick the highest configured tier, or raise LLMNotConfiguredError."""
    settings = settings or get_settings()
    if settings.app.force_mock_mode:
        raise LLMNotConfiguredError("FORCE_MOCK_MODE is set.")

    if settings.foundry.is_configured:
        try:
            runner = FoundryAgentRunner(settings.foundry.project_endpoint, settings.openai.deployment)
            return Agent(name, instructions, tools=tools, foundry=runner)
        except Exception as exc:
            logger.warning("Foundry SDK init failed (%s); falling back to direct OpenAI.", exc)

    if settings.openai.is_configured:
        return Agent(name, instructions, client=ChatClient(settings.openai, settings.llm,
                                                           settings.pipeline.db_path),
                     tools=tools)

    raise LLMNotConfiguredError(f"No model tier configured for agent '{name}'.")
