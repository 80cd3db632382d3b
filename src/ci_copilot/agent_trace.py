"""
agent_trace.py — Lightweight audit log for pipeline runs
=========================================================
Every stage in a run emits a StageStep record. PipelineRunner collects the
steps into a RunTrace, writes it to ``<output_dir>/trace.json`` and stores it
in SQLite so `ci-copilot history` and the dashboard can render per-stage
timing and decisions.

Data model
----------
  StageStep      One stage's contribution: timing, status, decisions, warnings.
  RunTrace       Full trace for a single pipeline run; ordered list of StageSteps.

Key fields
----------
  StageStep.status          "success" | "fallback" | "skipped" | "blocked" | "failed"
  StageStep.duration_ms     Wall-clock milliseconds for that stage
  StageStep.decisions       Human-readable list of choices the stage made
  StageStep.warnings        Non-fatal issues (guardrail WARNs, truncation, fallback)
  StageStep.detail          Arbitrary extra dict for stage-specific metadata
  RunTrace.mode             "mock" | "azure_openai" | "foundry"
  RunTrace.total_ms         End-to-end pipeline wall time
"""

from __future__ import annotations

import datetime
import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any


@dataclass
class StageStep:
    """One stage's contribution inside a pipeline run."""
    stage_id:       str
    stage_name:     str
    icon:           str
    start_ms:       float            # ms relative to run start
    duration_ms:    float
    status:         str
    input_summary:  str
    output_summary: str
    decisions:      list[str] = field(default_factory=list)
    warnings:       list[str] = field(default_factory=list)
    detail:         dict[str, Any] = field(default_factory=dict)


@dataclass
class RunTrace:
    """Full trace for a single pipeline run."""
    run_id:    str
    repo:      str
    branch:    str
    timestamp: str
    mode:      str
    total_ms:  float = 0.0
    steps:     list[StageStep] = field(default_factory=list)

    @classmethod
    def start(cls, repo: str, branch: str, mode: str) -> "RunTrace":
        return cls(
            run_id    = str(uuid.uuid4())[:8].upper(),
            repo      = repo,
            branch    = branch,
            timestamp = datetime.datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
            mode      = mode,
        )

    def append(self, step: StageStep) -> None:
        self.steps.append(step)

    def failed_steps(self) -> list[StageStep]:
        return [s for s in self.steps if s.status in ("failed", "blocked")]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RunTrace":
        steps = [StageStep(**s) for s in data.get("steps", [])]
        return cls(**{**data, "steps": steps})


class StageTimer:
    """Context manager measuring wall-clock ms relative to a run start.

    Usage::

        with StageTimer(run_start) as t:
            ...
        step.start_ms, step.duration_ms = t.start_ms, t.duration_ms
    """

    def __init__(self, run_start: float | None = None) -> None:
        self._run_start = run_start if run_start is not None else time.perf_counter()
        self.start_ms = 0.0
        self.duration_ms = 0.0

    def __enter__(self) -> "StageTimer":
        self._t0 = time.perf_counter()
        self.start_ms = round((self._t0 - self._run_start) * 1000, 1)
        return self

    def __exit__(self, *exc) -> bool:
        self.duration_ms = round((time.perf_counter() - self._t0) * 1000, 1)
        return False
