"""
vcs.py — git access for the pipeline stages
===========================================
All repository history comes from shelling out to the ``git`` CLI; nothing
here writes to the repository. Output parsing is split into pure functions
(`parse_log`, `parse_diff_files`, `diff_stats`) so it can be tested without a
repository.

Public API
----------
  run_git(args, cwd)              → stdout (raises GitError)
  current_branch(cwd)             → str
  latest_tag(cwd)                 → str | None
  changed_files(base_ref, cwd)    → list[str]
  diff(base_ref, cwd, max_chars)  → str (truncated with a marker)
  commits_since(ref, cwd)         → list[CommitInfo]
  build_context(root, ...)        → RepoContext
"""

from __future__ import annotations

import logging
import re
import subprocess
from pathlib import Path
from typing import Iterator, Optional, Sequence

from ci_copilot.collector import collect_source_files
from ci_copilot.config import default_excludes
from ci_copilot.errors import GitError
from ci_copilot.models import CommitInfo, RepoContext, StageName

logger = logging.getLogger(__name__)

_FIELD_SEP  = "\x1f"
_RECORD_SEP = "\x1e"
_LOG_FORMAT = f"--pretty=format:%H{_FIELD_SEP}%an{_FIELD_SEP}%aI{_FIELD_SEP}%s{_FIELD_SEP}%b{_RECORD_SEP}"

_HUNK_RE = re.compile(r"^@@ -\d+(?:,\d+)? \+(\d+)(?:,\d+)? @@")

TRUNCATION_MARKER = "\n... [diff truncated] ...\n"


def run_git(args: Sequence[str], cwd: Path | str = ".", timeout: float = 60) -> str:
    """Run ``git <args>`` in *cwd* and return stdout."""
    cmd = ["git", *args]
    try:
        proc = subprocess.run(
            cmd, cwd=str(cwd), capture_output=True, text=True,
            timeout=timeout, check=False,
        )
    except FileNotFoundError as exc:
        raise GitError("git executable not found on PATH") from exc
    except subprocess.TimeoutExpired as exc:
        raise GitError(f"`{' '.join(cmd)}` timed out after {timeout}s") from exc
    if proc.returncode != 0:
        raise GitError(
            f"`{' '.join(cmd)}` failed: {proc.stderr.strip()}",
            returncode=proc.returncode, stderr=proc.stderr,
        )
    return proc.stdout


# ─── Pure parsers ────────────────────────────────────────────────────────────

def parse_log(output: str) -> list[CommitInfo]:
    """Parse output produced with ``_LOG_FORMAT`` (newest first)."""
    commits: list[CommitInfo] = []
    for record in output.split(_RECORD_SEP):
        record = record.strip("\n")
        if not record.strip():
            continue
        parts = record.split(_FIELD_SEP)
        if len(parts) < 4:
            logger.debug("Ignoring malformed git log record: %r", record[:80])
            continue
        sha, author, date, subject = parts[:4]
        body = parts[4].strip() if len(parts) > 4 else ""
        commits.append(CommitInfo(sha=sha.strip(), author=author, date=date,
                                  subject=subject.strip(), body=body))
    return commits


def iter_added_lines(diff_text: str) -> Iterator[tuple[str, Optional[int], str]]:
    """
    Walk a unified diff yielding ``(path, line_no, text)`` for every added line.

    A ``(path, None, "")`` marker is yielded once per file so files whose hunks
    only remove lines are still reported. Deleted files (``+++ /dev/null``)
    are skipped.
    """
    current: Optional[str] = None
    new_line = 0
    for line in diff_text.splitlines():
        if line.startswith("+++ "):
            target = line[4:].strip()
            if target == "/dev/null":
                current = None
            else:
                current = target[2:] if target.startswith("b/") else target
                yield current, None, ""
            continue
        if line.startswith("--- ") or line.startswith("diff --git"):
            continue
        m = _HUNK_RE.match(line)
        if m:
            new_line = int(m.group(1))
            continue
        if current is None:
            continue
        if line.startswith("+"):
            yield current, new_line, line[1:]
            new_line += 1
        elif line.startswith(" "):
            new_line += 1
        # "-" lines and "\ No newline at end of file" do not advance the new side


def parse_diff_files(diff_text: str) -> dict[str, set[int]]:
    """Map each file in a unified diff to the new-side line numbers it adds."""
    added: dict[str, set[int]] = {}
    for path, line_no, _ in iter_added_lines(diff_text):
        lines = added.setdefault(path, set())
        if line_no is not None:
            lines.add(line_no)
    return added


def diff_stats(diff_text: str) -> tuple[int, int, int]:
    """Return (files_changed, insertions, deletions) for a unified diff."""
    files = insertions = deletions = 0
    for line in diff_text.splitlines():
        if line.startswith("diff --git"):
            files += 1
        elif line.startswith("+") and not line.startswith("+++"):
            insertions += 1
        elif line.startswith("-") and not line.startswith("---"):
            deletions += 1
    return files, insertions, deletions


def truncate(text: str, max_chars: int) -> tuple[str, bool]:
    if len(text) <= max_chars:
        return text, False
    return text[:max_chars] + TRUNCATION_MARKER, True


# ─── git queries ─────────────────────────────────────────────────────────────

def current_branch(cwd: Path | str = ".") -> str:
    return run_git(["rev-parse", "--abbrev-ref", "HEAD"], cwd).strip()


def latest_tag(cwd: Path | str = ".") -> Optional[str]:
    """Most recent tag reachable from HEAD, or None when the repo has no tags."""
    try:
        return run_git(["describe", "--tags", "--abbrev=0"], cwd).strip() or None
    except GitError:
        return None


def changed_files(base_ref: str, cwd: Path | str = ".") -> list[str]:
    out = run_git(["diff", "--name-only", "--diff-filter=ACMR", f"{base_ref}...HEAD"], cwd)
    return [line.strip() for line in out.splitlines() if line.strip()]


def diff(base_ref: str, cwd: Path | str = ".", max_chars: int = 60_000) -> str:
    out = run_git(["diff", "--unified=3", f"{base_ref}...HEAD"], cwd)
    text, truncated = truncate(out, max_chars)
    if truncated:
        logger.warning("Diff against %s truncated to %d chars", base_ref, max_chars)
    return text


def commits_since(ref: Optional[str], cwd: Path | str = ".", limit: int = 200) -> list[CommitInfo]:
    """Commits in ``ref..HEAD``; the whole history when *ref* is None."""
    rev = f"{ref}..HEAD" if ref else "HEAD"
    out = run_git(["log", _LOG_FORMAT, f"--max-count={limit}", rev], cwd)
    return parse_log(out)


# ─── Context assembly ────────────────────────────────────────────────────────

def build_context(root: Path | str, settings, pipeline_file, base_ref: Optional[str] = None) -> RepoContext:
    """
    Gather files, diff and history for one pipeline run.

    git failures are downgraded to warnings: a checkout without history (or
    without the base ref fetched) can still run the docs and tests stages.
    """
    root = Path(root).resolve()
    base_ref = base_ref or pipeline_file.base_ref or settings.pipeline.base_ref
    ctx = RepoContext(root=root, base_ref=base_ref)

    # Union of the file-based stages' includes; each stage narrows it again.
    include: list[str] = []
    for name in (StageName.DOCS, StageName.TESTS):
        for pattern in pipeline_file.stage(name).include:
            if pattern not in include:
                include.append(pattern)
    ctx.files = collect_source_files(
        root,
        include        = include,
        exclude        = default_excludes(),
        max_files      = settings.pipeline.max_files,
        max_file_bytes = settings.pipeline.max_file_bytes,
    )

    try:
        ctx.branch = current_branch(root)
    except GitError as exc:
        ctx.warnings.append(f"Not a git checkout: {exc.message}")
        logger.warning("Not a git checkout (%s); diff and history stages will skip", exc.message)
        return ctx

    try:
        ctx.changed_paths = changed_files(base_ref, root)
        ctx.diff = diff(base_ref, root, settings.pipeline.max_diff_chars)
    except GitError as exc:
        ctx.warnings.append(f"Diff against {base_ref} unavailable: {exc.message}")
        logger.warning("Diff against %s unavailable: %s", base_ref, exc.message)

    # The max_files cap applies to unchanged files only; changed files are
    # what the diff-driven stages work on.
    present = {f.path for f in ctx.files}
    missing = [p for p in ctx.changed_paths if p not in present]
    if missing:
        extra = collect_source_files(
            root,
            include        = include,
            exclude        = default_excludes(),
            max_files      = len(missing),
            max_file_bytes = settings.pipeline.max_file_bytes,
            only           = missing,
        )
        if extra:
            logger.debug("Added %d changed files beyond the max_files cap", len(extra))
            ctx.files = sorted(ctx.files + extra, key=lambda f: f.path)

    ctx.previous_tag = latest_tag(root)
    try:
        ctx.commits = commits_since(ctx.previous_tag, root)
    except GitError as exc:
        ctx.warnings.append(f"git log unavailable: {exc.message}")
        logger.warning("git log unavailable: %s", exc.message)

    logger.info(
        "Context: %d files, %d changed paths, %d commits since %s",
        len(ctx.files), len(ctx.changed_paths), len(ctx.commits), ctx.previous_tag or "first commit",
    )
    return ctx
