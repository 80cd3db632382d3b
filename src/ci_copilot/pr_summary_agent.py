"""
Stage 6: Pull request summary
=============================
PullRequestSummaryAgent describes the branch for reviewers: a title, an
overview, the key changes, a risk level and what to test.

Risk heuristic (mock path)
--------------------------
  high     more than 500 changed lines, or a sensitive path is touched
           (CI config, dependency manifests, auth / security code, migrations)
  medium   more than 150 changed lines, or more than 10 files
  low      everything else
"""

from __future__ import annotations

import json
import textwrap

from ci_copilot.agent import Agent
from ci_copilot.base_agent import StageAgent
from ci_copilot.collector import matches_pattern
from ci_copilot.models import (
    Artifact,
    PullRequestSummary,
    RepoContext,
    StageName,
    StageResult,
    StageStatus,
)
from ci_copilot.vcs import diff_stats, parse_diff_files

HIGH_RISK_LINES   = 500
MEDIUM_RISK_LINES = 150
MEDIUM_RISK_FILES = 10
MAX_KEY_CHANGES   = 8

SENSITIVE_PATTERNS = [
    ".gitlab-ci.yml", ".github/workflows/*", "Dockerfile", "**/Dockerfile",
    "pyproject.toml", "setup.py", "setup.cfg", "requirements*.txt", "package.json",
    "**/auth/**", "**/*auth*.py", "**/security/**", "**/migrations/**",
]

_PR_JSON_SCHEMA = {
    "title":         "string (imperative, under 72 characters)",
    "overview":      "string (2-4 sentences: what and why)",
    "key_changes":   ["string (one per notable change)"],
    "risk_level":    "low | medium | high",
    "testing_notes": "string (what a reviewer should try or check)",
}

_SYSTEM_PROMPT = textwrap.dedent("""
    You are summarising a merge request for the engineers who will review it.

    Rules:
    1. Describe behaviour changes, not file-by-file edits.
    2. risk_level reflects blast radius: high for CI, dependency, auth or data
       migration changes, or very large diffs.
    3. testing_notes names concrete scenarios to try.
    4. Never repeat secret values that might appear in the diff.

    Respond with ONLY a valid JSON object matching this schema exactly:
""") + json.dumps(_PR_JSON_SCHEMA, indent=2) + "\n\nDo NOT include any text outside the JSON."


def sensitive_paths(paths: list[str]) -> list[str]:
    return [p for p in paths if any(matches_pattern(p, pat) for pat in SENSITIVE_PATTERNS)]


def assess_risk(files: int, insertions: int, deletions: int, paths: list[str]) -> str:
    changed = insertions + deletions
    if changed > HIGH_RISK_LINES or sensitive_paths(paths):
        return "high"
    if changed > MEDIUM_RISK_LINES or files > MEDIUM_RISK_FILES:
        return "medium"
    return "low"


def render_pr_summary(summary: PullRequestSummary, stats: tuple[int, int, int]) -> str:
    files, insertions, deletions = stats
    badge = {"low": "🟢", "medium": "🟡", "high": "🔴"}[summary.risk_level]
    lines = [
        f"# {summary.title}",
        "",
        summary.overview,
        "",
        f"**Risk:** {badge} {summary.risk_level} · "
        f"**Diff:** {files} files, +{insertions} / -{deletions}",
        "",
    ]
    if summary.key_changes:
        lines += ["## Key changes", ""]
        lines += [f"- {c}" for c in summary.key_changes]
        lines.append("")
    if summary.testing_notes:
        lines += ["## Testing notes", "", summary.testing_notes, ""]
    return "\n".join(lines)


# ─── Agent ───────────────────────────────────────────────────────────────────

class PullRequestSummaryAgent(StageAgent):
    """Summarises the branch's diff and commits."""

    stage = StageName.PR_SUMMARY
    instructions = _SYSTEM_PROMPT
    work_label = "changes against the base ref"

    def work_count(self, ctx: RepoContext, **kwargs) -> int:
        return len(parse_diff_files(ctx.diff)) or len(ctx.changed_paths)

    def _paths(self, ctx: RepoContext) -> list[str]:
        return ctx.changed_paths or sorted(parse_diff_files(ctx.diff))

    def _finish(self, ctx: RepoContext, summary: PullRequestSummary, decisions: list[str]) -> StageResult:
        stats = diff_stats(ctx.diff)
        markdown = render_pr_summary(summary, stats)
        self.absorb(self.guardrails.check_text(markdown, "pr_summary.md"))
        return StageResult(
            stage     = self.stage,
            status    = StageStatus.SUCCESS,
            artifacts = [
                Artifact("pr_summary.md", markdown),
                Artifact("pr_summary.json", summary.model_dump_json(indent=2)),
            ],
            summary   = f"{summary.title} (risk {summary.risk_level}).",
            decisions = decisions,
            data      = summary,
        )

    def run_live(self, ctx: RepoContext, agent: Agent, **kwargs) -> StageResult:
        subjects = "\n".join(f"- {c.subject}" for c in ctx.commits) or "(no commits)"
        payload = self.guard_payload(
            f"Branch: {ctx.branch} → {ctx.base_ref}\n\nCommits:\n{subjects}\n\n"
            f"```diff\n{ctx.diff}\n```\n\nPlease produce the pull request summary JSON."
        )
        summary = agent.run_json(payload, PullRequestSummary)
        return self._finish(ctx, summary, [f"Model risk level: {summary.risk_level}"])

    def run_mock(self, ctx: RepoContext, **kwargs) -> StageResult:
        files, insertions, deletions = diff_stats(ctx.diff)
        paths = self._paths(ctx)
        files = files or len(paths)
        risk = assess_risk(files, insertions, deletions, paths)
        touched = sensitive_paths(paths)

        subjects = [c.subject for c in ctx.commits if not c.subject.startswith("Merge ")]
        if subjects:
            title = subjects[-1] if len(subjects) == 1 else f"{ctx.branch or 'Branch'}: {len(subjects)} commits"
            key_changes = subjects[:MAX_KEY_CHANGES]
        else:
            title = f"Update {files} files"
            key_changes = [f"`{p}`" for p in paths[:MAX_KEY_CHANGES]]

        testing = ["Run the full test suite."]
        if touched:
            testing.append("Sensitive paths changed: " + ", ".join(f"`{p}`" for p in touched) + ".")
        summary = PullRequestSummary(
            title         = title[:72],
            overview      = (
                f"This change touches {files} files (+{insertions} / -{deletions}) "
                f"across {len(subjects)} commits on `{ctx.branch or 'HEAD'}`."
            ),
            key_changes   = key_changes,
            risk_level    = risk,
            testing_notes = " ".join(testing),
        )
        decisions = [f"Diff stats: {files} files, +{insertions}/-{deletions}", f"Risk {risk}"]
        if touched:
            decisions.append(f"Sensitive paths: {', '.join(touched)}")
        return self._finish(ctx, summary, decisions)
