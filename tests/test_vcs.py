"""
Tests for git output parsing and context assembly.
Parsers are tested on literal output; the git_repo fixture (skipped when
git is not installed) exercises the real shell-outs.
"""
import pytest

from factories import make_diff, make_settings
from ci_copilot.config import PipelineFile
from ci_copilot.errors import GitError
from ci_copilot.models import StageName, StageStatus
from ci_copilot.test_gen_agent import TestGenerationAgent
from ci_copilot.vcs import (
    TRUNCATION_MARKER,
    build_context,
    changed_files,
    diff_stats,
    iter_added_lines,
    latest_tag,
    parse_diff_files,
    parse_log,
    run_git,
    truncate,
)

FS, RS = "\x1f", "\x1e"


class TestParseLog:
    def test_two_commits(self):
        out = (
            f"a" * 40 + f"{FS}Ada{FS}2025-01-02T10:00:00+00:00{FS}feat: one{FS}body line{RS}\n"
            + "b" * 40 + f"{FS}Bob{FS}2025-01-01T10:00:00+00:00{FS}fix: two{FS}{RS}"
        )
        commits = parse_log(out)
        assert [c.subject for c in commits] == ["feat: one", "fix: two"]
        assert commits[0].body == "body line"
        assert commits[1].short_sha == "bbbbbbb"

    def test_malformed_record_ignored(self):
        assert parse_log(f"garbage{RS}") == []

    def test_empty_output(self):
        assert parse_log("") == []


class TestDiffParsing:
    def test_added_line_numbers(self):
        diff = make_diff("src/a.py", ["x = 1", "y = 2"], start=5)
        assert parse_diff_files(diff) == {"src/a.py": {5, 6}}

    def test_context_lines_advance_numbering(self):
        diff = (
            "diff --git a/m.py b/m.py\n--- a/m.py\n+++ b/m.py\n"
            "@@ -1,3 +1,4 @@\n keep\n-old\n+new\n keep2\n+tail\n"
        )
        lines = [(p, n, t) for p, n, t in iter_added_lines(diff) if n is not None]
        assert lines == [("m.py", 2, "new"), ("m.py", 4, "tail")]

    def test_removal_only_file_still_listed(self):
        diff = make_diff("gone.py", [], removed=["a", "b"])
        assert parse_diff_files(diff) == {"gone.py": set()}

    def test_deleted_file_skipped(self):
        diff = "diff --git a/d.py b/d.py\n--- a/d.py\n+++ /dev/null\n@@ -1 +0,0 @@\n-x\n"
        assert parse_diff_files(diff) == {}

    def test_stats(self):
        diff = make_diff("a.py", ["1", "2"], removed=["0"]) + make_diff("b.py", ["3"])
        assert diff_stats(diff) == (2, 3, 1)

    def test_truncate(self):
        text, cut = truncate("abcdef", 3)
        assert cut and text == "abc" + TRUNCATION_MARKER
        assert truncate("abc", 3) == ("abc", False)


class TestGit:
    def test_run_git_failure_raises(self, tmp_path):
        with pytest.raises(GitError):
            run_git(["rev-parse", "HEAD"], tmp_path)

    def test_latest_tag_and_changed_files(self, git_repo):
        assert latest_tag(git_repo) == "v0.1.0"
        assert changed_files("base", git_repo) == ["src/calc/core.py"]

    def test_build_context(self, git_repo, tmp_path):
        ctx = build_context(git_repo, make_settings(tmp_path), PipelineFile(), base_ref="base")
        assert ctx.branch == "main"
        assert ctx.previous_tag == "v0.1.0"
        assert [c.subject for c in ctx.commits] == ["feat(core): add Calculator"]
        assert "+class Calculator:" in ctx.diff
        assert {f.path for f in ctx.files} == {"src/calc/__init__.py", "src/calc/core.py"}
        assert ctx.warnings == []

    def test_changed_files_survive_the_file_cap(self, git_repo, tmp_path):
        # core.py sorts after __init__.py, so a cap of one would drop it
        settings = make_settings(tmp_path, max_files=1)
        ctx = build_context(git_repo, settings, PipelineFile(), base_ref="base")
        assert [f.path for f in ctx.files] == ["src/calc/__init__.py", "src/calc/core.py"]

        agent = TestGenerationAgent(settings, PipelineFile().stage(StageName.TESTS))
        result = agent.run(ctx)
        assert result.status == StageStatus.FALLBACK
        assert [a.relative_path for a in result.artifacts] == ["tests/test_core.py"]

    def test_build_context_outside_git(self, tmp_path):
        (tmp_path / "m.py").write_text("x = 1\n")
        ctx = build_context(tmp_path, make_settings(tmp_path), PipelineFile())
        assert [f.path for f in ctx.files] == ["m.py"]
        assert ctx.diff == ""
        assert ctx.warnings and "Not a git checkout" in ctx.warnings[0]
