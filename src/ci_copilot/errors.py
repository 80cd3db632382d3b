"""Exception hierarchy for ci-copilot.

Every error the CLI can surface derives from ``CiCopilotError`` so that
``cli.py`` can print a short message and a hint instead of a traceback.
"""

from __future__ import annotations

from typing import Optional


class CiCopilotError(Exception):
    """Base class for all ci-copilot errors."""

    #: Short, actionable suggestion printed under the message by the CLI.
    hint: Optional[str] = None

    def __init__(self, message: str, hint: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if hint is not None:
            self.hint = hint


class ConfigError(CiCopilotError):
    """Invalid .env values or an unreadable / invalid .ci-copilot.yml."""

    hint = "Run `ci-copilot init` to write a fresh .ci-copilot.yml."


class GitError(CiCopilotError):
    """A git command exited non-zero or git is not installed."""

    def __init__(self, message: str, returncode: int = 1, stderr: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class LLMNotConfiguredError(CiCopilotError, EnvironmentError):
    """Neither Azure AI Foundry nor Azure OpenAI is configured.

    Stage agents catch this and fall back to their rule-based mock path.
    """

    hint = (
        "Set AZURE_OPENAI_ENDPOINT + AZURE_OPENAI_API_KEY (direct) or "
        "AZURE_AI_PROJECT_ENDPOINT (Foundry), or pass --mock."
    )


class StageError(CiCopilotError):
    """A stage could not produce its artefact."""

    def __init__(self, stage: str, message: str) -> None:
        super().__init__(f"[{stage}] {message}")
        self.stage = stage


class GuardrailBlockedError(CiCopilotError):
    """A BLOCK-level guardrail stopped a stage before or after the model call."""

    def __init__(self, stage: str, result) -> None:
        super().__init__(f"[{stage}] blocked by guardrails:\n{result.summary()}")
        self.stage = stage
        self.result = result
