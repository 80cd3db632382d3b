"""
Tests for stage 3 (code review): mock rules, verdicts and the G-05 filter
on model output.
"""
import pytest

from factories import make_agent, make_context, make_diff
from ci_copilot.config import PipelineFile
from ci_copilot.errors import GuardrailBlockedError
from ci_copilot.models import ReviewComment, Severity, StageName, StageStatus
from ci_copilot.review_agent import CodeReviewAgent, review_line, verdict_for

AWS_KEY = "AKIA" + "ABCDEFGHIJKLMNOP"


def _agent(settings, agent=None):
    return CodeReviewAgent(settings, PipelineFile().stage(StageName.REVIEW), agent=agent)


class TestRules:
    def test_secret_is_critical_and_not_echoed(self):
        comments = review_line("app/settings.py", 3, f'AWS_KEY = "{AWS_KEY}"')
        assert comments[0].severity == Severity.CRITICAL
        assert comments[0].category == "security"
        assert AWS_KEY not in comments[0].message

    def test_python_rules_only_apply_to_python(self):
        assert review_line("scripts/run.sh", 1, "print(x)") == []
        assert review_line("app.py", 1, "print(x)")[0].severity == Severity.MINOR

    def test_method_named_eval_is_fine(self):
        assert review_line("app.py", 1, "model.eval()") == []

    def test_long_line(self):
        comments = review_line("app.py", 1, "x = " + "1" * 130)
        assert [c.category for c in comments] == ["style"]

    def test_verdicts(self):
        minor = ReviewComment(path="a.py", line=1, severity=Severity.MINOR, message="m")
        major = ReviewComment(path="a.py", line=1, severity=Severity.MAJOR, message="m")
        assert verdict_for([]) == "approve"
        assert verdict_for([minor]) == "comment"
        assert verdict_for([minor, major]) == "request_changes"


class TestCodeReviewAgent:
    def test_mock_review_of_feature_diff(self, settings, feature_diff):
        result = _agent(settings).run(make_context(diff=feature_diff))
        assert result.status == StageStatus.FALLBACK
        report = result.data
        assert report.verdict == "request_changes"
        found = {(c.line, c.severity) for c in report.comments}
        assert (12, Severity.MINOR) in found    # print
        assert (14, Severity.MAJOR) in found    # eval
        assert (15, Severity.MAJOR) in found    # bare except
        assert (16, Severity.INFO) in found     # TODO
        assert result.summary.startswith("Verdict request_changes (2 major")
        assert [a.relative_path for a in result.artifacts] == ["review.md", "review.json"]
        assert "`src/calc/core.py:14`" in result.artifacts[0].content

    def test_clean_diff_approves(self, settings):
        diff = make_diff("src/calc/ops.py", ["def triple(x):", "    return 3 * x"])
        result = _agent(settings).run(make_context(diff=diff))
        assert result.data.verdict == "approve"
        assert "found no issues" in result.data.summary
        assert "No findings" in result.artifacts[0].content

    def test_empty_diff_skips(self, settings):
        result = _agent(settings).run(make_context(diff=""))
        assert result.status == StageStatus.SKIPPED

    def test_live_comments_outside_diff_are_dropped(self, settings, feature_diff):
        agent = make_agent({
            "summary": "Adds an eval helper.",
            "verdict": "request_changes",
            "comments": [
                {"path": "src/calc/core.py", "line": 14, "severity": "major", "message": "eval is unsafe"},
                {"path": "src/calc/core.py", "line": 2, "severity": "minor", "message": "unchanged line"},
                {"path": "README.md", "line": 1, "severity": "info", "message": "not in diff"},
            ],
        })
        result = _agent(settings, agent).run(make_context(diff=feature_diff))
        assert result.status == StageStatus.SUCCESS
        assert [c.message for c in result.data.comments] == ["eval is unsafe"]
        assert sum("G-05" in w for w in result.warnings) == 2

    def test_live_comment_echoing_a_secret_is_blocked(self, settings, feature_diff):
        agent = make_agent({
            "summary": "Adds an eval helper.",
            "verdict": "request_changes",
            "comments": [
                {"path": "src/calc/core.py", "line": 14, "severity": "major",
                 "message": f"Do not hard-code {AWS_KEY} here"},
            ],
        })
        with pytest.raises(GuardrailBlockedError) as exc_info:
            _agent(settings, agent).run(make_context(diff=feature_diff))
        assert "G-07" in exc_info.value.message
        assert "review.md" in exc_info.value.message
