"""
Stage 4: Changelog
==================
ChangelogAgent turns the commits since the last tag into a Keep a Changelog
section and proposes the next semantic version.

The version is never left to the model: it is computed from the categorised
entries by `suggest_next_version`, so live and mock runs agree on it.

Commit parsing (mock path)
--------------------------
Conventional Commits ``type(scope)!: subject`` with an optional
``BREAKING CHANGE:`` footer. Type → heading:

  feat                    Added
  fix                     Fixed
  perf, refactor          Changed
  deprecate               Deprecated
  remove, revert          Removed
  security, sec           Security
  docs, style, test,
  chore, ci, build        dropped (unless breaking)

Merge commits are dropped. Free-form subjects are categorised by their
leading verb ("Add …", "Fix …", "Remove …"), defaulting to Changed.
"""

from __future__ import annotations

import datetime
import json
import re
import textwrap
from typing import Iterable, Optional

from pydantic import BaseModel, Field

from ci_copilot.agent import Agent
from ci_copilot.base_agent import StageAgent
from ci_copilot.models import (
    Artifact,
    ChangeType,
    Changelog,
    ChangelogEntry,
    CommitInfo,
    RepoContext,
    StageName,
    StageResult,
    StageStatus,
)

INITIAL_VERSION = "0.0.0"

_CONVENTIONAL_RE = re.compile(
    r"^(?P<type>[A-Za-z]+)(?:\((?P<scope>[^)]*)\))?(?P<bang>!)?:\s*(?P<subject>\S.*)$"
)
_BREAKING_FOOTER_RE = re.compile(r"^BREAKING[ -]CHANGE:\s*(?P<note>.+)$", re.MULTILINE)
_MERGE_RE = re.compile(r"^Merge (?:branch|pull request|remote-tracking branch|tag)\b")
_VERSION_RE = re.compile(r"^(\d+)\.(\d+)\.(\d+)")

_TYPE_MAP: dict[str, Optional[ChangeType]] = {
    "feat":      ChangeType.ADDED,
    "feature":   ChangeType.ADDED,
    "fix":       ChangeType.FIXED,
    "bugfix":    ChangeType.FIXED,
    "perf":      ChangeType.CHANGED,
    "refactor":  ChangeType.CHANGED,
    "deprecate": ChangeType.DEPRECATED,
    "remove":    ChangeType.REMOVED,
    "revert":    ChangeType.REMOVED,
    "security":  ChangeType.SECURITY,
    "sec":       ChangeType.SECURITY,
    "docs":      None,
    "style":     None,
    "test":      None,
    "tests":     None,
    "chore":     None,
    "ci":        None,
    "build":     None,
}

_VERB_MAP: list[tuple[re.Pattern, ChangeType]] = [
    (re.compile(r"^(add|adds|added|introduce|implement|support)\b", re.I), ChangeType.ADDED),
    (re.compile(r"^(fix|fixes|fixed|correct|resolve)\b", re.I),           ChangeType.FIXED),
    (re.compile(r"^(remove|removes|removed|delete|drop)\b", re.I),        ChangeType.REMOVED),
    (re.compile(r"^(deprecate|deprecates|deprecated)\b", re.I),           ChangeType.DEPRECATED),
]


class ChangelogEntries(BaseModel):
    """What the model is asked for: entries only, never the version."""
    entries: list[ChangelogEntry] = Field(default_factory=list)


_SYSTEM_PROMPT = textwrap.dedent("""
    You are a release manager writing a Keep a Changelog section.

    Rules:
    1. One entry per user-visible change; merge commits and pure housekeeping
       (formatting, CI tweaks, test-only changes) are left out.
    2. change_type is one of: added, changed, deprecated, removed, fixed, security.
    3. Write each description in the imperative, for users of the software,
       not for its developers. Do not start with the commit type prefix.
    4. Set breaking=true only if the commit is marked "!" or has a
       "BREAKING CHANGE:" footer.
    5. commit is the short SHA you were given.

    Respond with ONLY a valid JSON object matching this schema exactly:
""") + json.dumps({"entries": [{
    "change_type": "added | changed | deprecated | removed | fixed | security",
    "description": "string",
    "scope":       "string (optional component name)",
    "breaking":    "boolean",
    "commit":      "string (short SHA)",
}]}, indent=2) + "\n\nDo NOT include any text outside the JSON."


# ─── Commit parsing ──────────────────────────────────────────────────────────

def parse_commit(commit: CommitInfo) -> Optional[ChangelogEntry]:
    """Categorise one commit; None means it does not belong in the changelog."""
    subject = commit.subject.strip()
    if not subject or _MERGE_RE.match(subject):
        return None

    footer = _BREAKING_FOOTER_RE.search(commit.body or "")
    m = _CONVENTIONAL_RE.match(subject)
    if m:
        ctype = m.group("type").lower()
        breaking = bool(m.group("bang")) or footer is not None
        change_type = _TYPE_MAP.get(ctype, ChangeType.CHANGED)
        if change_type is None:
            if not breaking:
                return None
            change_type = ChangeType.CHANGED
        description = m.group("subject").strip()
        scope = (m.group("scope") or "").strip()
    else:
        breaking = footer is not None
        change_type = next((ct for rx, ct in _VERB_MAP if rx.match(subject)), ChangeType.CHANGED)
        description = subject
        scope = ""

    if footer is not None:
        description = f"{description} ({footer.group('note').strip()})"
    return ChangelogEntry(
        change_type = change_type,
        description = description[:1].upper() + description[1:],
        scope       = scope,
        breaking    = breaking,
        commit      = commit.short_sha,
    )


def parse_commits(commits: Iterable[CommitInfo]) -> list[ChangelogEntry]:
    return [e for e in (parse_commit(c) for c in commits) if e is not None]


# ─── Versioning ──────────────────────────────────────────────────────────────

def current_version(previous_tag: Optional[str]) -> str:
    """The last tag with any ``v`` prefix removed; 0.0.0 when there is none."""
    if not previous_tag:
        return INITIAL_VERSION
    return previous_tag[1:] if previous_tag[:1] in ("v", "V") else previous_tag


def suggest_next_version(current: str, entries: list[ChangelogEntry]) -> str:
    """
    Semantic-version bump implied by *entries*.

    breaking → major (minor while still 0.x), any Added → minor, else patch.
    A *current* that is not X.Y.Z is treated as 0.0.0. No entries: unchanged.
    """
    m = _VERSION_RE.match(current.lstrip("vV"))
    major, minor, patch = (int(g) for g in m.groups()) if m else (0, 0, 0)
    if not entries:
        return f"{major}.{minor}.{patch}"
    if any(e.breaking for e in entries):
        if major == 0:
            return f"0.{minor + 1}.0"
        return f"{major + 1}.0.0"
    if any(e.change_type == ChangeType.ADDED for e in entries):
        return f"{major}.{minor + 1}.0"
    return f"{major}.{minor}.{patch + 1}"


def build_changelog(
    entries: list[ChangelogEntry],
    previous_tag: Optional[str],
    date: Optional[str] = None,
) -> Changelog:
    return Changelog(
        version = suggest_next_version(current_version(previous_tag), entries),
        date    = date or datetime.date.today().isoformat(),
        entries = entries,
    )


def changelog_from_commits(commits: list[CommitInfo], previous_tag: Optional[str]) -> Changelog:
    """Deterministic changelog; used by the release-notes stage when run alone."""
    return build_changelog(parse_commits(commits), previous_tag)


# ─── Rendering ───────────────────────────────────────────────────────────────

def render_entry(entry: ChangelogEntry) -> str:
    text = f"**{entry.scope}:** {entry.description}" if entry.scope else entry.description
    if entry.breaking:
        text = f"**BREAKING:** {text}"
    if entry.commit:
        text += f" ({entry.commit})"
    return f"- {text}"


def render_changelog(changelog: Changelog) -> str:
    lines = [f"## [{changelog.version}] - {changelog.date}", ""]
    groups = changelog.grouped()
    if not groups:
        lines += ["_No user-facing changes._", ""]
    for change_type, entries in groups.items():
        lines += [f"### {change_type.value.capitalize()}", ""]
        lines += [render_entry(e) for e in entries]
        lines.append("")
    return "\n".join(lines)


# ─── Agent ───────────────────────────────────────────────────────────────────

class ChangelogAgent(StageAgent):
    """Builds the changelog section for the commits since the last tag."""

    stage = StageName.CHANGELOG
    instructions = _SYSTEM_PROMPT
    work_label = "commits since the last tag"

    def work_count(self, ctx: RepoContext, **kwargs) -> int:
        return len(ctx.commits)

    def _finish(self, ctx: RepoContext, entries: list[ChangelogEntry], decisions: list[str]) -> StageResult:
        if ctx.previous_tag:
            self.absorb(self.guardrails.check_version(ctx.previous_tag, "previous_tag"))
        changelog = build_changelog(entries, ctx.previous_tag)
        self.absorb(self.guardrails.check_version(changelog.version))

        markdown = render_changelog(changelog)
        self.absorb(self.guardrails.check_text(markdown, "CHANGELOG.md"))
        decisions = decisions + [
            f"{current_version(ctx.previous_tag)} → {changelog.version}"
            + (" (breaking)" if changelog.has_breaking else "")
        ]
        return StageResult(
            stage     = self.stage,
            status    = StageStatus.SUCCESS,
            artifacts = [
                Artifact("CHANGELOG.md", markdown),
                Artifact("changelog.json", changelog.model_dump_json(indent=2)),
            ],
            summary   = f"{len(entries)} entries for {changelog.version}.",
            decisions = decisions,
            data      = changelog,
        )

    def run_live(self, ctx: RepoContext, agent: Agent, **kwargs) -> StageResult:
        commit_lines = []
        for c in ctx.commits:
            commit_lines.append(f"- {c.short_sha} {c.subject}")
            if c.body:
                commit_lines.append(textwrap.indent(c.body, "    "))
        payload = self.guard_payload(
            f"Previous tag: {ctx.previous_tag or 'none'}\n\nCommits (newest first):\n"
            + "\n".join(commit_lines) + "\n\nPlease produce the changelog entries JSON."
        )
        result = agent.run_json(payload, ChangelogEntries)
        return self._finish(ctx, result.entries, [f"Model categorised {len(ctx.commits)} commits"])

    def run_mock(self, ctx: RepoContext, **kwargs) -> StageResult:
        entries = parse_commits(ctx.commits)
        dropped = len(ctx.commits) - len(entries)
        return self._finish(ctx, entries, [
            f"Parsed {len(ctx.commits)} commits as Conventional Commits",
            f"Dropped {dropped} merge / housekeeping commits",
        ])
