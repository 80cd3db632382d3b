"""
Stage 3: Code review
====================
CodeReviewAgent reads the unified diff against the base ref and produces a
ReviewReport: a verdict plus line-anchored comments.

Only added lines can be commented on. Comments the model anchors anywhere
else are dropped by guardrail G-05 before the report is written.

Mock rules (added lines only)
-----------------------------
  debug print            minor      print(...) left in Python code
  bare except            major      ``except:`` swallows KeyboardInterrupt etc.
  eval                   major      eval(...) on non-literal input
  hard-coded secret      critical   any secret pattern from guardrails.py
  TODO / FIXME           info       unfinished work marker
  long line              info       more than 120 characters
"""

from __future__ import annotations

import json
import re
import textwrap

from ci_copilot.agent import Agent
from ci_copilot.base_agent import StageAgent
from ci_copilot.guardrails import find_secrets
from ci_copilot.models import (
    Artifact,
    RepoContext,
    ReviewComment,
    ReviewReport,
    Severity,
    StageName,
    StageResult,
    StageStatus,
)
from ci_copilot.vcs import iter_added_lines, parse_diff_files

MAX_LINE_LENGTH = 120

_REVIEW_JSON_SCHEMA = {
    "summary":  "string (2-4 sentences on the change as a whole)",
    "verdict":  "approve | comment | request_changes",
    "comments": [{
        "path":       "string (file path exactly as in the diff)",
        "line":       "integer (line number in the NEW file; 0 for a file-level remark)",
        "severity":   "info | minor | major | critical",
        "category":   "string (e.g. bug, security, performance, style, tests)",
        "message":    "string",
        "suggestion": "string (optional concrete fix)",
    }],
}

_SYSTEM_PROMPT = textwrap.dedent("""
    You are a meticulous senior reviewer looking at a merge request diff.

    Rules:
    1. Comment only on lines that start with "+" in the diff; use the new-file
       line number from the hunk header.
    2. Prioritise correctness and security over style. Skip nitpicks that a
       formatter would fix.
    3. Never repeat a secret value in your comment, even if one appears in the diff.
    4. Use "request_changes" only when at least one comment is major or critical.

    Respond with ONLY a valid JSON object matching this schema exactly:
""") + json.dumps(_REVIEW_JSON_SCHEMA, indent=2) + "\n\nDo NOT include any text outside the JSON."

_PRINT_RE       = re.compile(r"^\s*print\(")
_BARE_EXCEPT_RE = re.compile(r"^\s*except\s*:")
_EVAL_RE        = re.compile(r"(?<![\w.])eval\(")
_TODO_RE        = re.compile(r"\b(TODO|FIXME|XXX)\b")

_SEVERITY_ORDER = [Severity.CRITICAL, Severity.MAJOR, Severity.MINOR, Severity.INFO]
_SEVERITY_ICON = {
    Severity.CRITICAL: "🔴", Severity.MAJOR: "🟠", Severity.MINOR: "🟡", Severity.INFO: "🔵",
}


# ─── Mock rules ──────────────────────────────────────────────────────────────

def review_line(path: str, line_no: int, text: str) -> list[ReviewComment]:
    """Apply the rule set to one added line."""
    comments: list[ReviewComment] = []
    is_python = path.endswith(".py")

    def add(severity: Severity, category: str, message: str, suggestion: str = "") -> None:
        comments.append(ReviewComment(
            path=path, line=line_no, severity=severity,
            category=category, message=message, suggestion=suggestion,
        ))

    labels = find_secrets(text)
    if labels:
        # The message names the pattern only; the value must not reach the artefact.
        add(Severity.CRITICAL, "security",
            f"Possible hard-coded secret ({', '.join(labels)}).",
            "Move the value to a masked CI variable or secret store and rotate it.")
    if is_python and _BARE_EXCEPT_RE.match(text):
        add(Severity.MAJOR, "error-handling",
            "Bare `except:` also catches KeyboardInterrupt and SystemExit.",
            "Catch the specific exception, or at least `except Exception:`.")
    if is_python and _EVAL_RE.search(text):
        add(Severity.MAJOR, "security",
            "`eval()` executes arbitrary code.",
            "Use `ast.literal_eval` or an explicit parser.")
    if is_python and _PRINT_RE.match(text):
        add(Severity.MINOR, "debug",
            "Debug `print()` left in the code.",
            "Use the module logger instead.")
    if _TODO_RE.search(text):
        add(Severity.INFO, "maintainability", "Unresolved TODO/FIXME marker.")
    if len(text) > MAX_LINE_LENGTH:
        add(Severity.INFO, "style", f"Line is {len(text)} characters long (limit {MAX_LINE_LENGTH}).")
    return comments


def verdict_for(comments: list[ReviewComment]) -> str:
    if any(c.severity in (Severity.MAJOR, Severity.CRITICAL) for c in comments):
        return "request_changes"
    return "comment" if comments else "approve"


def render_review(report: ReviewReport) -> str:
    lines = [
        "# Code review",
        "",
        f"**Verdict:** `{report.verdict}`",
        "",
        report.summary,
        "",
    ]
    if not report.comments:
        lines += ["No findings. ✅", ""]
        return "\n".join(lines)

    lines += ["| Severity | Location | Category | Finding |", "|---|---|---|---|"]
    for severity in _SEVERITY_ORDER:
        for c in report.by_severity(severity):
            where = f"`{c.path}:{c.line}`" if c.line else f"`{c.path}`"
            finding = c.message
            if c.suggestion:
                finding += f"<br>💡 {c.suggestion}"
            finding = finding.replace("|", r"\|")
            lines.append(f"| {_SEVERITY_ICON[severity]} {severity.value} | {where} | {c.category} | {finding} |")
    lines.append("")
    return "\n".join(lines)


# ─── Agent ───────────────────────────────────────────────────────────────────

class CodeReviewAgent(StageAgent):
    """Reviews the diff against the base ref."""

    stage = StageName.REVIEW
    instructions = _SYSTEM_PROMPT
    work_label = "changed files"

    def work_count(self, ctx: RepoContext, **kwargs) -> int:
        return len(parse_diff_files(ctx.diff))

    def _finish(self, ctx: RepoContext, report: ReviewReport, decisions: list[str]) -> StageResult:
        result, report = self.guardrails.filter_review(report, parse_diff_files(ctx.diff))
        self.absorb(result)
        markdown = render_review(report)
        self.absorb(self.guardrails.check_text(markdown, "review.md"))

        counts = ", ".join(
            f"{len(report.by_severity(s))} {s.value}" for s in _SEVERITY_ORDER if report.by_severity(s)
        )
        return StageResult(
            stage     = self.stage,
            status    = StageStatus.SUCCESS,
            artifacts = [
                Artifact("review.md", markdown),
                Artifact("review.json", report.model_dump_json(indent=2)),
            ],
            summary   = f"Verdict {report.verdict}" + (f" ({counts})." if counts else "."),
            decisions = decisions,
            data      = report,
        )

    def run_live(self, ctx: RepoContext, agent: Agent, **kwargs) -> StageResult:
        payload = self.guard_payload(
            f"Base ref: {ctx.base_ref}\nBranch: {ctx.branch}\n\n```diff\n{ctx.diff}\n```\n\n"
            "Please produce the review JSON."
        )
        report = agent.run_json(payload, ReviewReport)
        return self._finish(ctx, report, [f"Model verdict: {report.verdict}"])

    def run_mock(self, ctx: RepoContext, **kwargs) -> StageResult:
        comments: list[ReviewComment] = []
        files: set[str] = set()
        for path, line_no, text in iter_added_lines(ctx.diff):
            files.add(path)
            if line_no is not None:
                comments.extend(review_line(path, line_no, text))

        verdict = verdict_for(comments)
        report = ReviewReport(
            summary  = (
                f"Rule-based review of {len(files)} changed files found {len(comments)} issues."
                if comments else f"Rule-based review of {len(files)} changed files found no issues."
            ),
            verdict  = verdict,
            comments = comments,
        )
        decisions = [f"Scanned added lines in {len(files)} files", f"Verdict {verdict}"]
        return self._finish(ctx, report, decisions)
