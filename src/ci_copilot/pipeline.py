"""
pipeline.py — run the six stages in order
==========================================
PipelineRunner is the only orchestrator: it walks the enabled stages in
pipeline order, times each one, turns any exception into a failed (or
blocked) stage instead of aborting the run, writes the artefacts, and
records a RunTrace.

Output layout
-------------
  <output_dir>/
    docs/...                 one directory per stage
    tests/...
    review/review.md
    changelog/CHANGELOG.md
    release_notes/RELEASE_NOTES.md, release_notes.pdf
    pr_summary/pr_summary.md
    trace.json               the RunTrace for this run

Exit code
---------
0 unless a stage whose ``allow_failure`` is false ended failed or blocked.
All stages default to allow_failure=true, so AI stages never fail a pipeline
unless the repository opts in.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from ci_copilot import database
from ci_copilot.agent_trace import RunTrace, StageStep, StageTimer
from ci_copilot.base_agent import StageAgent
from ci_copilot.changelog_agent import ChangelogAgent
from ci_copilot.collector import write_artifacts
from ci_copilot.config import PipelineFile, Settings, get_settings
from ci_copilot.docs_agent import DocumentationAgent
from ci_copilot.errors import GuardrailBlockedError
from ci_copilot.models import (
    STAGE_ICONS,
    Changelog,
    RepoContext,
    StageName,
    StageResult,
    StageStatus,
)
from ci_copilot.pr_summary_agent import PullRequestSummaryAgent
from ci_copilot.release_notes_agent import ReleaseNotesAgent
from ci_copilot.review_agent import CodeReviewAgent
from ci_copilot.test_gen_agent import TestGenerationAgent

logger = logging.getLogger(__name__)

STAGE_AGENTS: dict[StageName, type[StageAgent]] = {
    StageName.DOCS:          DocumentationAgent,
    StageName.TESTS:         TestGenerationAgent,
    StageName.REVIEW:        CodeReviewAgent,
    StageName.CHANGELOG:     ChangelogAgent,
    StageName.RELEASE_NOTES: ReleaseNotesAgent,
    StageName.PR_SUMMARY:    PullRequestSummaryAgent,
}

STAGE_LABELS: dict[StageName, str] = {
    StageName.DOCS:          "Documentation",
    StageName.TESTS:         "Test generation",
    StageName.REVIEW:        "Code review",
    StageName.CHANGELOG:     "Changelog",
    StageName.RELEASE_NOTES: "Release notes",
    StageName.PR_SUMMARY:    "PR summary",
}


@dataclass
class PipelineRun:
    trace:      RunTrace
    results:    list[StageResult]
    exit_code:  int
    output_dir: Path

    @property
    def status(self) -> str:
        """success / partial (some stage not ok, exit code 0) / failed."""
        if self.exit_code:
            return "failed"
        return "success" if all(r.ok for r in self.results) else "partial"

    def result(self, stage: StageName) -> Optional[StageResult]:
        return next((r for r in self.results if r.stage == stage), None)


class PipelineRunner:
    """
    Usage::

        ctx = vcs.build_context(".", settings, pipeline_file)
        run = PipelineRunner(settings, pipeline_file).run(ctx)
        sys.exit(run.exit_code)

    ``agents`` overrides the agent instance per stage (tests inject agents
    with fake model clients this way).
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        pipeline_file: Optional[PipelineFile] = None,
        agents: Optional[dict[StageName, StageAgent]] = None,
        persist: bool = True,
    ) -> None:
        self.settings = settings or get_settings()
        self.pipeline_file = pipeline_file or PipelineFile()
        self.agents = agents or {}
        self.persist = persist

    def output_dir(self, ctx: RepoContext) -> Path:
        out = Path(self.pipeline_file.output_dir or self.settings.pipeline.output_dir)
        return out if out.is_absolute() else ctx.root / out

    def _agent_for(self, stage: StageName) -> StageAgent:
        if stage in self.agents:
            return self.agents[stage]
        return STAGE_AGENTS[stage](
            settings=self.settings, stage_settings=self.pipeline_file.stage(stage),
        )

    @staticmethod
    def _input_summary(stage: StageName, ctx: RepoContext) -> str:
        if stage in (StageName.DOCS, StageName.TESTS):
            return f"{len(ctx.files)} files collected, {len(ctx.changed_paths)} changed"
        if stage in (StageName.CHANGELOG, StageName.RELEASE_NOTES):
            return f"{len(ctx.commits)} commits since {ctx.previous_tag or 'first commit'}"
        return f"diff {ctx.base_ref}...HEAD ({len(ctx.diff):,} chars)"

    def run_stage(
        self, stage: StageName, ctx: RepoContext, out_dir: Path, **kwargs,
    ) -> StageResult:
        """Run one stage; never raises."""
        agent = self._agent_for(stage)
        try:
            result = agent.run(ctx, **kwargs)
        except GuardrailBlockedError as exc:
            logger.warning("%s blocked by guardrail:\n%s", stage.value, exc.result.summary())
            result = StageResult(
                stage=stage, status=StageStatus.BLOCKED,
                summary="Blocked by guardrail.", error=exc.message,
                warnings=agent.warnings,
            )
        except Exception as exc:
            logger.exception("%s failed: %s", stage.value, exc)
            result = StageResult(
                stage=stage, status=StageStatus.FAILED,
                summary="Stage raised an exception.", error=f"{type(exc).__name__}: {exc}",
                warnings=agent.warnings,
            )

        if result.artifacts:
            try:
                write_artifacts(out_dir / stage.value, result.artifacts)
            except (OSError, ValueError) as exc:
                logger.error("%s: could not write artefacts: %s", stage.value, exc)
                result.status = StageStatus.FAILED
                result.error = f"Writing artefacts failed: {exc}"
        return result

    def run(self, ctx: RepoContext, stages: Optional[Sequence[StageName]] = None) -> PipelineRun:
        """Run *stages* (default: the enabled ones) in pipeline order."""
        selected = [s for s in StageName if s in stages] if stages is not None \
            else self.pipeline_file.enabled_stages()
        out_dir = self.output_dir(ctx)
        trace = RunTrace.start(
            repo   = ctx.root.name,
            branch = ctx.branch,
            mode   = "mock",
        )
        logger.info("Run %s: %s", trace.run_id, ", ".join(s.value for s in selected) or "no stages")

        run_start = time.perf_counter()
        results: list[StageResult] = []
        changelog: Optional[Changelog] = None
        exit_code = 0

        for stage in selected:
            kwargs = {"changelog": changelog} if stage == StageName.RELEASE_NOTES else {}
            with StageTimer(run_start) as timer:
                result = self.run_stage(stage, ctx, out_dir, **kwargs)
            results.append(result)

            if stage == StageName.CHANGELOG and isinstance(result.data, Changelog):
                changelog = result.data
            if result.status in (StageStatus.FAILED, StageStatus.BLOCKED):
                if not self.pipeline_file.stage(stage).allow_failure:
                    exit_code = 1
            # the run is labelled with the first live tier any stage used
            if result.mode != "mock" and trace.mode == "mock":
                trace.mode = result.mode

            trace.append(StageStep(
                stage_id       = stage.value,
                stage_name     = STAGE_LABELS[stage],
                icon           = STAGE_ICONS[stage],
                start_ms       = timer.start_ms,
                duration_ms    = timer.duration_ms,
                status         = result.status.value,
                input_summary  = self._input_summary(stage, ctx),
                output_summary = result.error or result.summary,
                decisions      = result.decisions,
                warnings       = result.warnings,
                detail         = {
                    "mode":      result.mode,
                    "artifacts": [a.relative_path for a in result.artifacts],
                },
            ))
            logger.info("%s %s: %s (%.0f ms)", STAGE_ICONS[stage], stage.value,
                        result.status.value, timer.duration_ms)

        trace.total_ms = round((time.perf_counter() - run_start) * 1000, 1)
        run = PipelineRun(trace=trace, results=results, exit_code=exit_code, output_dir=out_dir)
        self._record(run)
        return run

    def _record(self, run: PipelineRun) -> None:
        run.output_dir.mkdir(parents=True, exist_ok=True)
        (run.output_dir / "trace.json").write_text(
            json.dumps(run.trace.to_dict(), indent=2, ensure_ascii=False), encoding="utf-8",
        )
        if not self.persist:
            return
        try:
            database.save_run(run.trace, run.status, self.settings.pipeline.db_path)
        except sqlite3.Error as exc:
            logger.warning("Run history not saved: %s", exc)
