"""
base_agent.py — shared live / mock routing for the six stage agents
===================================================================
Every stage agent answers the same question two ways:

  live   an Agent (Foundry or Azure OpenAI) produces structured output that
         is validated against a Pydantic contract;
  mock   a deterministic rule-based generator produces the same contract
         without any network access.

The live path is used when ``Settings.live_mode`` is true (or an Agent was
injected). LLMNotConfiguredError on the live path falls back to the mock path
with status "fallback". Any other exception propagates to PipelineRunner,
which records the stage as failed and moves on.
"""

from __future__ import annotations

import logging
from typing import Optional

from ci_copilot.agent import Agent, build_agent, make_repo_tools
from ci_copilot.collector import matches_pattern, is_excluded
from ci_copilot.config import Settings, StageSettings, get_settings
from ci_copilot.errors import GuardrailBlockedError, LLMNotConfiguredError
from ci_copilot.guardrails import GuardrailLevel, GuardrailResult, GuardrailsPipeline
from ci_copilot.models import RepoContext, SourceFile, StageName, StageResult, StageStatus

logger = logging.getLogger(__name__)


class StageAgent:
    """Base class; subclasses set ``stage`` / ``instructions`` and implement
    ``work_count``, ``run_live`` and ``run_mock``."""

    stage: StageName
    instructions: str = ""
    work_label: str = "items"
    use_repo_tools: bool = False

    def __init__(
        self,
        settings: Optional[Settings] = None,
        stage_settings: Optional[StageSettings] = None,
        agent: Optional[Agent] = None,
        guardrails: Optional[GuardrailsPipeline] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.stage_settings = stage_settings or StageSettings()
        self.guardrails = guardrails or GuardrailsPipeline()
        self._agent = agent
        self._warnings: list[str] = []

    @property
    def warnings(self) -> list[str]:
        """Guardrail and fallback warnings gathered by the current run."""
        return list(self._warnings)

    # ── Subclass hooks ───────────────────────────────────────────────────────

    def work_count(self, ctx: RepoContext, **kwargs) -> int:
        raise NotImplementedError

    def run_live(self, ctx: RepoContext, agent: Agent, **kwargs) -> StageResult:
        raise NotImplementedError

    def run_mock(self, ctx: RepoContext, **kwargs) -> StageResult:
        raise NotImplementedError

    # ── Helpers for subclasses ───────────────────────────────────────────────

    def select_files(self, ctx: RepoContext, python_only: bool = False) -> list[SourceFile]:
        """
        ctx.files filtered by this stage's include/exclude. With ``changed_only``
        only changed paths qualify, so a branch with no changes selects nothing.
        """
        cfg = self.stage_settings
        changed = set(ctx.changed_paths)
        selected = []
        for f in ctx.files:
            if python_only and f.language != "python":
                continue
            if not any(matches_pattern(f.path, p) for p in cfg.include):
                continue
            if is_excluded(f.path, cfg.exclude):
                continue
            if cfg.changed_only and f.path not in changed:
                continue
            selected.append(f)
        return selected

    def guard_payload(self, text: str) -> str:
        """G-02/G-03 on text about to be sent; raises GuardrailBlockedError on BLOCK."""
        pipeline_cfg = self.settings.pipeline
        result, payload = self.guardrails.check_payload(
            self.stage.value, text, pipeline_cfg.max_diff_chars, redact=pipeline_cfg.redact_secrets,
        )
        self.absorb(result)
        return payload

    def absorb(self, result: GuardrailResult) -> None:
        """Record WARNs; raise on BLOCK."""
        if result.blocked:
            raise GuardrailBlockedError(self.stage.value, result)
        self._warnings.extend(result.messages(GuardrailLevel.WARN))

    def get_agent(self, ctx: RepoContext) -> Agent:
        if self._agent is not None:
            return self._agent
        tools = make_repo_tools(ctx.root, self.stage_settings.exclude) if self.use_repo_tools else ()
        return build_agent(f"ci-copilot-{self.stage.value}", self.instructions, tools=tools,
                           settings=self.settings)

    # ── Entry point ──────────────────────────────────────────────────────────

    def run(self, ctx: RepoContext, **kwargs) -> StageResult:
        self._warnings = []
        count = self.work_count(ctx, **kwargs)
        has_work = self.guardrails.check_has_work(self.stage.value, count, self.work_label)
        if has_work.infos:
            logger.info("%s: %s", self.stage.value, has_work.infos[0].message)
            return StageResult(
                stage=self.stage, status=StageStatus.SKIPPED,
                summary=has_work.infos[0].message,
            )

        result: Optional[StageResult] = None
        if self._agent is not None or self.settings.live_mode:
            try:
                agent = self.get_agent(ctx)
                logger.info("%s: generating with %s", self.stage.value, agent.mode)
                result = self.run_live(ctx, agent, **kwargs)
                result.status = StageStatus.SUCCESS
                result.mode = agent.mode
            except LLMNotConfiguredError as exc:
                logger.warning("%s: %s Falling back to rule-based generator.", self.stage.value, exc.message)
                self._warnings.append(f"Live model unavailable ({exc.message}); rule-based output used.")

        if result is None:
            result = self.run_mock(ctx, **kwargs)
            result.status = StageStatus.FALLBACK
            result.mode = "mock"

        result.warnings = self._warnings + result.warnings
        return result
