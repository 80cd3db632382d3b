"""
guardrails.py – Guardrails around every model call
===================================================
Input guards run on the text a stage is about to send to the external model
endpoint; output guards run on what the model (or the mock path) produced,
before anything is written as an artefact.

Guardrail levels
----------------
BLOCK   – Hard-stop: the stage does not proceed (status "blocked").
WARN    – Soft-stop: the stage proceeds with a visible warning.
INFO    – Advisory: informational note logged in the stage trace.

Guards implemented
------------------
Input guards (before the model call):
  G-01  Nothing to process (no files / no diff / no commits)          INFO
  G-02  Payload exceeds the configured character budget (truncated)   WARN
  G-03  Secret-like material in the payload                            BLOCK
        (WARN + redaction when CI_COPILOT_REDACT_SECRETS is on)

Output guards (after generation):
  G-04  Generated Python test code must parse                          BLOCK
  G-05  Review comment must point at a changed file / added line       WARN
  G-06  Version must be semantic (X.Y.Z)                               WARN
  G-07  Secret-like material in generated text                         BLOCK
  G-08  Generated text is empty                                        WARN
"""

from __future__ import annotations

import ast
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from ci_copilot.models import GeneratedTestFile, ReviewReport, is_semver


# ─── Enums & data models ─────────────────────────────────────────────────────

class GuardrailLevel(str, Enum):
    BLOCK = "BLOCK"
    WARN  = "WARN"
    INFO  = "INFO"


@dataclass
class GuardrailViolation:
    code:    str
    level:   GuardrailLevel
    message: str
    field:   str = ""   # which input / artefact triggered the violation


@dataclass
class GuardrailResult:
    passed:     bool = True
    violations: list[GuardrailViolation] = field(default_factory=list)

    @property
    def blocked(self) -> bool:
        return any(v.level == GuardrailLevel.BLOCK for v in self.violations)

    @property
    def warnings(self) -> list[GuardrailViolation]:
        return [v for v in self.violations if v.level == GuardrailLevel.WARN]

    @property
    def infos(self) -> list[GuardrailViolation]:
        return [v for v in self.violations if v.level == GuardrailLevel.INFO]

    def messages(self, level: GuardrailLevel) -> list[str]:
        return [f"[{v.code}] {v.message}" for v in self.violations if v.level == level]

    def summary(self) -> str:
        if not self.violations:
            return "✅ All guardrails passed."
        icon = {GuardrailLevel.BLOCK: "🚫", GuardrailLevel.WARN: "⚠️", GuardrailLevel.INFO: "ℹ️"}
        return "\n".join(f"{icon[v.level]} [{v.code}] {v.message}" for v in self.violations)


def _result(violations: list[GuardrailViolation]) -> GuardrailResult:
    return GuardrailResult(
        passed=not any(v.level == GuardrailLevel.BLOCK for v in violations),
        violations=violations,
    )


# ─── Secret patterns ─────────────────────────────────────────────────────────
# (label, pattern). Group "value" is what redaction replaces when present,
# otherwise the whole match.

_SECRET_PATTERNS: list[tuple[str, re.Pattern]] = [
    (
        "Private key",
        re.compile(r"-----BEGIN (?:RSA |EC |OPENSSH |DSA )?PRIVATE KEY-----[\s\S]*?(?:-----END [A-Z ]*PRIVATE KEY-----|\Z)"),
    ),
    (
        "AWS access key",
        re.compile(r"\b(?P<value>AKIA[0-9A-Z]{16})\b"),
    ),
    (
        "GitHub token",
        re.compile(r"\b(?P<value>gh[pousr]_[A-Za-z0-9]{36,})\b"),
    ),
    (
        "Azure connection string",
        re.compile(r"(?:AccountKey|SharedAccessKey)=(?P<value>[A-Za-z0-9+/=]{20,})"),
    ),
    (
        "OpenAI-style API key",
        re.compile(r"\b(?P<value>sk-[A-Za-z0-9_\-]{20,})\b"),
    ),
    (
        "Hard-coded credential",
        re.compile(
            r"(?i)\b(?:password|passwd|secret|api_?key|access_?token|client_?secret)\b"
            r"\s*[:=]\s*['\"](?P<value>[^'\"\s]{8,})['\"]"
        ),
    ),
]

REDACTED = "***REDACTED***"


def find_secrets(text: str) -> list[str]:
    """Labels of every secret pattern present in *text* (deduplicated, ordered)."""
    labels: list[str] = []
    for label, pattern in _SECRET_PATTERNS:
        if pattern.search(text) and label not in labels:
            labels.append(label)
    return labels


def redact_secrets(text: str) -> str:
    def _sub(match: re.Match) -> str:
        if "value" in match.re.groupindex and match.group("value"):
            start, end = match.span("value")
            offset = match.start()
            whole = match.group(0)
            return whole[: start - offset] + REDACTED + whole[end - offset:]
        return REDACTED

    for _, pattern in _SECRET_PATTERNS:
        text = pattern.sub(_sub, text)
    return text


# ─── Guardrail checks ─────────────────────────────────────────────────────────

class InputGuardrails:
    """G-01 – G-03: run on the payload before it leaves the CI runner."""

    def check_has_work(self, stage: str, count: int, what: str) -> GuardrailResult:
        if count > 0:
            return _result([])
        return _result([GuardrailViolation(
            code="G-01", level=GuardrailLevel.INFO, field=stage,
            message=f"No {what} to process; stage skipped.",
        )])

    def check_payload(
        self,
        stage: str,
        text: str,
        max_chars: int,
        redact: bool = False,
    ) -> tuple[GuardrailResult, str]:
        """Return the guardrail result and the (possibly truncated / redacted) payload."""
        violations: list[GuardrailViolation] = []

        if len(text) > max_chars:
            violations.append(GuardrailViolation(
                code="G-02", level=GuardrailLevel.WARN, field=stage,
                message=f"Payload of {len(text):,} chars truncated to {max_chars:,}.",
            ))
            text = text[:max_chars]

        labels = find_secrets(text)
        if labels:
            if redact:
                text = redact_secrets(text)
                violations.append(GuardrailViolation(
                    code="G-03", level=GuardrailLevel.WARN, field=stage,
                    message=f"Redacted before sending: {', '.join(labels)}.",
                ))
            else:
                violations.append(GuardrailViolation(
                    code="G-03", level=GuardrailLevel.BLOCK, field=stage,
                    message=(
                        f"Possible secrets in payload ({', '.join(labels)}); not sent to the "
                        "model endpoint. Remove them or set CI_COPILOT_REDACT_SECRETS=true."
                    ),
                ))
        return _result(violations), text


class OutputGuardrails:
    """G-04 – G-08: run on generated content before it is written."""

    def check_text(self, text: str, field_name: str) -> GuardrailResult:
        violations: list[GuardrailViolation] = []
        if not text or not text.strip():
            violations.append(GuardrailViolation(
                code="G-08", level=GuardrailLevel.WARN, field=field_name,
                message=f"Generated '{field_name}' is empty.",
            ))
            return _result(violations)
        labels = find_secrets(text)
        if labels:
            violations.append(GuardrailViolation(
                code="G-07", level=GuardrailLevel.BLOCK, field=field_name,
                message=f"Generated '{field_name}' contains secret-like material: {', '.join(labels)}.",
            ))
        return _result(violations)

    def check_python_code(self, test_file: GeneratedTestFile) -> GuardrailResult:
        try:
            ast.parse(test_file.code, filename=test_file.test_path)
        except SyntaxError as exc:
            return _result([GuardrailViolation(
                code="G-04", level=GuardrailLevel.BLOCK, field=test_file.test_path,
                message=f"{test_file.test_path} does not parse: line {exc.lineno}: {exc.msg}",
            )])
        return _result([])

    def filter_review(
        self,
        report: ReviewReport,
        added_lines: dict[str, set[int]],
    ) -> tuple[GuardrailResult, ReviewReport]:
        """Drop comments that point outside the diff (G-05)."""
        kept = []
        violations: list[GuardrailViolation] = []
        for c in report.comments:
            lines = added_lines.get(c.path)
            if lines is None:
                reason = f"file {c.path} is not part of the diff"
            elif c.line != 0 and c.line not in lines:
                reason = f"{c.path}:{c.line} is not an added line"
            else:
                kept.append(c)
                continue
            violations.append(GuardrailViolation(
                code="G-05", level=GuardrailLevel.WARN, field=f"{c.path}:{c.line}",
                message=f"Review comment dropped: {reason}.",
            ))
        return _result(violations), report.model_copy(update={"comments": kept})

    def check_version(self, version: str, field_name: str = "version") -> GuardrailResult:
        if is_semver(version):
            return _result([])
        return _result([GuardrailViolation(
            code="G-06", level=GuardrailLevel.WARN, field=field_name,
            message=f"Version '{version}' is not semantic (X.Y.Z).",
        )])


# ─── Convenience façade ───────────────────────────────────────────────────────

class GuardrailsPipeline:
    """
    Single entry-point used by the stage agents.

    Usage::

        gp = GuardrailsPipeline()
        result, payload = gp.check_payload("review", diff_text, max_chars=60_000)
        if result.blocked:
            ...
        result = gp.check_text(markdown, "review.md")
    """

    def __init__(self) -> None:
        self.input_guard  = InputGuardrails()
        self.output_guard = OutputGuardrails()

    def check_has_work(self, stage: str, count: int, what: str) -> GuardrailResult:
        return self.input_guard.check_has_work(stage, count, what)

    def check_payload(self, stage: str, text: str, max_chars: int, redact: bool = False):
        return self.input_guard.check_payload(stage, text, max_chars, redact)

    def check_text(self, text: str, field_name: str) -> GuardrailResult:
        return self.output_guard.check_text(text, field_name)

    def check_python_code(self, test_file: GeneratedTestFile) -> GuardrailResult:
        return self.output_guard.check_python_code(test_file)

    def filter_review(self, report: ReviewReport, added_lines: dict[str, set[int]]):
        return self.output_guard.filter_review(report, added_lines)

    def check_version(self, version: str, field_name: str = "version") -> GuardrailResult:
        return self.output_guard.check_version(version, field_name)

    def merge(self, *results: Optional[GuardrailResult]) -> GuardrailResult:
        """Merge multiple GuardrailResult objects into one (None entries ignored)."""
        all_v: list[GuardrailViolation] = []
        for r in results:
            if r is not None:
                all_v.extend(r.violations)
        return _result(all_v)
