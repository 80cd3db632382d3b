"""
Data models for ci-copilot.

Dataclasses carry repository context and stage results between modules;
Pydantic models are the output contracts the language model must satisfy
before anything it says reaches an artefact.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator


# ─── Enumerations ────────────────────────────────────────────────────────────

class StageName(str, Enum):
    """The six pipeline stages, declared in pipeline order."""
    DOCS          = "docs"
    TESTS         = "tests"
    REVIEW        = "review"
    CHANGELOG     = "changelog"
    RELEASE_NOTES = "release_notes"
    PR_SUMMARY    = "pr_summary"


class StageStatus(str, Enum):
    SUCCESS  = "success"   # live model produced the artefact
    FALLBACK = "fallback"  # rule-based mock produced the artefact
    SKIPPED  = "skipped"   # nothing to process
    BLOCKED  = "blocked"   # a BLOCK guardrail fired
    FAILED   = "failed"    # exception inside the stage


class Severity(str, Enum):
    INFO     = "info"
    MINOR    = "minor"
    MAJOR    = "major"
    CRITICAL = "critical"


class ChangeType(str, Enum):
    """Keep a Changelog section headings, in rendering order."""
    ADDED      = "added"
    CHANGED    = "changed"
    DEPRECATED = "deprecated"
    REMOVED    = "removed"
    FIXED      = "fixed"
    SECURITY   = "security"


STAGE_ICONS: dict[StageName, str] = {
    StageName.DOCS:          "📚",
    StageName.TESTS:         "🧪",
    StageName.REVIEW:        "🔍",
    StageName.CHANGELOG:     "📝",
    StageName.RELEASE_NOTES: "🚀",
    StageName.PR_SUMMARY:    "📋",
}

_LANGUAGE_BY_SUFFIX = {
    ".py": "python", ".js": "javascript", ".ts": "typescript", ".go": "go",
    ".java": "java", ".rs": "rust", ".rb": "ruby", ".cs": "csharp",
    ".sh": "shell", ".yml": "yaml", ".yaml": "yaml", ".md": "markdown",
}


def language_for(path: str) -> str:
    return _LANGUAGE_BY_SUFFIX.get(Path(path).suffix.lower(), "text")


# ─── Repository context ──────────────────────────────────────────────────────

@dataclass
class SourceFile:
    """One collected file, path relative to the repository root (POSIX)."""
    path:     str
    language: str
    content:  str

    @property
    def module_name(self) -> str:
        """Dotted import path for a Python file (``src/`` prefix stripped)."""
        parts = list(Path(self.path).with_suffix("").parts)
        if parts and parts[0] == "src":
            parts = parts[1:]
        if parts and parts[-1] == "__init__":
            parts = parts[:-1]
        return ".".join(parts)


@dataclass
class CommitInfo:
    sha:     str
    author:  str
    date:    str          # ISO-8601
    subject: str
    body:    str = ""

    @property
    def short_sha(self) -> str:
        return self.sha[:7]


@dataclass
class RepoContext:
    """Everything the stages may read about the repository for one run."""
    root:          Path
    files:         list[SourceFile]      = field(default_factory=list)
    diff:          str                   = ""
    changed_paths: list[str]             = field(default_factory=list)
    commits:       list[CommitInfo]      = field(default_factory=list)
    base_ref:      str                   = ""
    previous_tag:  Optional[str]         = None
    branch:        str                   = ""
    warnings:      list[str]             = field(default_factory=list)

    def python_files(self) -> list[SourceFile]:
        return [f for f in self.files if f.language == "python"]


# ─── Stage outputs ───────────────────────────────────────────────────────────

@dataclass
class Artifact:
    """A text file a stage wants written under <output_dir>/<stage>/."""
    relative_path: str
    content:       str
    binary:        Optional[bytes] = None   # set for non-text artefacts (PDF)


@dataclass
class StageResult:
    stage:     StageName
    status:    StageStatus
    artifacts: list[Artifact] = field(default_factory=list)
    summary:   str            = ""
    decisions: list[str]      = field(default_factory=list)
    warnings:  list[str]      = field(default_factory=list)
    error:     str            = ""
    mode:      str            = "mock"      # "mock" | "azure_openai" | "foundry"
    data:      Optional[BaseModel] = None   # structured output, when the stage has one

    @property
    def ok(self) -> bool:
        return self.status in (StageStatus.SUCCESS, StageStatus.FALLBACK, StageStatus.SKIPPED)


# ─── LLM output contracts ────────────────────────────────────────────────────

class ModuleDoc(BaseModel):
    """Documentation page for one source file."""
    path:     str
    title:    str
    markdown: str = Field(description="Full Markdown body of the page")


class GeneratedTestFile(BaseModel):
    """One generated pytest module."""
    target_path: str = Field(description="Source file the tests exercise")
    test_path:   str = Field(description="Suggested path, e.g. tests/test_foo.py")
    code:        str


class ReviewComment(BaseModel):
    path:       str
    line:       int = Field(ge=0, description="Line in the new file; 0 = file-level")
    severity:   Severity = Severity.MINOR
    category:   str = "general"
    message:    str
    suggestion: str = ""


class ReviewReport(BaseModel):
    summary:  str
    verdict:  Literal["approve", "comment", "request_changes"] = "comment"
    comments: list[ReviewComment] = Field(default_factory=list)

    def by_severity(self, severity: Severity) -> list[ReviewComment]:
        return [c for c in self.comments if c.severity == severity]


_SEMVER = re.compile(r"^\d+\.\d+\.\d+(?:[-+][0-9A-Za-z.\-]+)?$")


def is_semver(version: str) -> bool:
    return bool(_SEMVER.match(version.lstrip("v")))


class ChangelogEntry(BaseModel):
    change_type: ChangeType
    description: str
    scope:       str = ""
    breaking:    bool = False
    commit:      str = ""


class Changelog(BaseModel):
    version: str
    date:    str
    entries: list[ChangelogEntry] = Field(default_factory=list)

    def grouped(self) -> dict[ChangeType, list[ChangelogEntry]]:
        """Entries grouped by heading, in Keep a Changelog order, empty groups dropped."""
        groups: dict[ChangeType, list[ChangelogEntry]] = {}
        for ct in ChangeType:
            items = [e for e in self.entries if e.change_type == ct]
            if items:
                groups[ct] = items
        return groups

    @property
    def has_breaking(self) -> bool:
        return any(e.breaking for e in self.entries)


class ReleaseNotesSection(BaseModel):
    heading: str
    items:   list[str] = Field(default_factory=list)


class ReleaseNotes(BaseModel):
    version:       str
    title:         str
    highlights:    list[str] = Field(default_factory=list)
    sections:      list[ReleaseNotesSection] = Field(default_factory=list)
    upgrade_notes: list[str] = Field(default_factory=list)


class PullRequestSummary(BaseModel):
    title:         str
    overview:      str
    key_changes:   list[str] = Field(default_factory=list)
    risk_level:    Literal["low", "medium", "high"] = "low"
    testing_notes: str = ""

    @field_validator("risk_level", mode="before")
    @classmethod
    def _lower_risk(cls, v):
        return v.lower() if isinstance(v, str) else v
