"""
End-to-end pipeline integration tests.
Runs the full stage chain in mock mode (no Azure):
docs → tests → review → changelog → release_notes → pr_summary
"""
import json
from types import SimpleNamespace

import pytest

from factories import make_agent
from ci_copilot import database
from ci_copilot.agent import Agent
from ci_copilot.config import PipelineFile
from ci_copilot.models import StageName, StageStatus
from ci_copilot.pipeline import PipelineRunner
from ci_copilot.pr_summary_agent import PullRequestSummaryAgent
from ci_copilot.review_agent import CodeReviewAgent
from ci_copilot.test_gen_agent import TestGenerationAgent


class _ExplodingReview(CodeReviewAgent):
    def run_mock(self, ctx, **kwargs):
        raise RuntimeError("boom")


@pytest.fixture
def full_run(settings, repo_ctx):
    return PipelineRunner(settings).run(repo_ctx)


class TestFullPipeline:
    """All six stages in mock mode against the shared repo context."""

    def test_every_stage_runs_in_order(self, full_run):
        assert [r.stage for r in full_run.results] == list(StageName)
        assert all(r.status == StageStatus.FALLBACK for r in full_run.results)
        assert full_run.exit_code == 0
        assert full_run.status == "success"

    def test_artifacts_written_per_stage(self, full_run, tmp_path):
        out = tmp_path / "ai-artifacts"
        assert full_run.output_dir == out
        assert (out / "docs" / "index.md").exists()
        assert (out / "tests" / "tests" / "test_core.py").exists()
        assert (out / "review" / "review.md").exists()
        assert (out / "changelog" / "CHANGELOG.md").exists()
        assert (out / "release_notes" / "release_notes.pdf").read_bytes()[:4] == b"%PDF"
        assert (out / "pr_summary" / "pr_summary.md").exists()

    def test_release_notes_use_changelog_from_same_run(self, full_run):
        changelog = full_run.result(StageName.CHANGELOG).data
        notes = full_run.result(StageName.RELEASE_NOTES)
        assert notes.data.version == changelog.version == "2.0.0"
        assert notes.decisions[0].startswith("Changelog from changelog stage")

    def test_trace_json(self, full_run, tmp_path):
        trace = json.loads((tmp_path / "ai-artifacts" / "trace.json").read_text())
        assert trace["mode"] == "mock"
        assert [s["stage_id"] for s in trace["steps"]] == [s.value for s in StageName]
        review_step = trace["steps"][2]
        assert review_step["detail"]["artifacts"] == ["review.md", "review.json"]
        assert review_step["output_summary"].startswith("Verdict request_changes")

    def test_run_saved_to_history(self, full_run, settings):
        record = database.get_run(full_run.trace.run_id, settings.pipeline.db_path)
        assert record["status"] == "success"
        assert record["stage_count"] == 6
        assert record["trace"].run_id == full_run.trace.run_id


class TestFailureHandling:
    def test_failed_stage_does_not_stop_the_run(self, settings, repo_ctx):
        runner = PipelineRunner(settings, agents={StageName.REVIEW: _ExplodingReview(settings)})
        run = runner.run(repo_ctx)
        review = run.result(StageName.REVIEW)
        assert review.status == StageStatus.FAILED
        assert review.error == "RuntimeError: boom"
        assert run.result(StageName.PR_SUMMARY).status == StageStatus.FALLBACK
        assert run.exit_code == 0
        assert run.status == "partial"
        assert [s.stage_id for s in run.trace.failed_steps()] == ["review"]

    def test_blocking_stage_sets_exit_code(self, settings, repo_ctx):
        pipeline_file = PipelineFile()
        pipeline_file.stages[StageName.REVIEW].allow_failure = False
        runner = PipelineRunner(settings, pipeline_file,
                                agents={StageName.REVIEW: _ExplodingReview(settings)})
        run = runner.run(repo_ctx)
        assert run.exit_code == 1
        assert run.status == "failed"

    def test_guardrail_block_is_recorded(self, settings, repo_ctx):
        bad = make_agent({"target_path": "x", "test_path": "x", "code": "def test_(:\n"})
        agent = TestGenerationAgent(settings, PipelineFile().stage(StageName.TESTS), agent=bad)
        run = PipelineRunner(settings, agents={StageName.TESTS: agent}).run(repo_ctx)
        tests = run.result(StageName.TESTS)
        assert tests.status == StageStatus.BLOCKED
        assert "G-04" in tests.error
        assert run.exit_code == 0


class TestStageSelection:
    def test_explicit_stages_run_in_pipeline_order(self, settings, repo_ctx):
        run = PipelineRunner(settings, persist=False).run(
            repo_ctx, stages=[StageName.PR_SUMMARY, StageName.REVIEW],
        )
        assert [r.stage for r in run.results] == [StageName.REVIEW, StageName.PR_SUMMARY]
        assert database.get_recent_runs(path=settings.pipeline.db_path) == []

    def test_disabled_stages_are_left_out(self, settings, repo_ctx):
        pipeline_file = PipelineFile()
        pipeline_file.stages[StageName.DOCS].enabled = False
        run = PipelineRunner(settings, pipeline_file).run(repo_ctx)
        assert StageName.DOCS not in [r.stage for r in run.results]

    def test_release_notes_alone_parse_commits(self, settings, repo_ctx):
        run = PipelineRunner(settings).run(repo_ctx, stages=[StageName.RELEASE_NOTES])
        notes = run.result(StageName.RELEASE_NOTES)
        assert notes.data.version == "2.0.0"
        assert notes.decisions[0].startswith("Changelog from commit parser")

    def test_output_dir_from_pipeline_file(self, settings, repo_ctx, tmp_path):
        run = PipelineRunner(settings, PipelineFile(output_dir="build/ai")).run(
            repo_ctx, stages=[StageName.CHANGELOG],
        )
        assert run.output_dir == tmp_path / "build" / "ai"
        assert (tmp_path / "build" / "ai" / "changelog" / "CHANGELOG.md").exists()


class TestRunMode:
    def test_trace_mode_is_first_live_tier(self, settings, repo_ctx):
        review_reply = json.dumps({"summary": "Fine.", "verdict": "approve", "comments": []})
        foundry = SimpleNamespace(run=lambda name, instructions, message: review_reply)
        agents = {
            StageName.REVIEW: CodeReviewAgent(
                settings, PipelineFile().stage(StageName.REVIEW),
                agent=Agent("review", "Review.", foundry=foundry),
            ),
            StageName.PR_SUMMARY: PullRequestSummaryAgent(
                settings, PipelineFile().stage(StageName.PR_SUMMARY),
                agent=make_agent({"title": "Add helper", "overview": "Adds a helper."}),
            ),
        }
        run = PipelineRunner(settings, agents=agents, persist=False).run(
            repo_ctx, stages=[StageName.REVIEW, StageName.PR_SUMMARY],
        )
        assert [r.mode for r in run.results] == ["foundry", "azure_openai"]
        assert run.trace.mode == "foundry"

    def test_mock_run_stays_mock(self, settings, repo_ctx):
        run = PipelineRunner(settings, persist=False).run(repo_ctx, stages=[StageName.REVIEW])
        assert run.trace.mode == "mock"


class TestBlockedStageWarnings:
    def test_warnings_gathered_before_the_block_are_kept(self, settings, repo_ctx):
        bad = make_agent({
            "summary": "Adds an eval helper.",
            "verdict": "request_changes",
            "comments": [
                {"path": "README.md", "line": 1, "severity": "info", "message": "not in diff"},
                {"path": "src/calc/core.py", "line": 14, "severity": "major",
                 "message": "key " + "AKIA" + "ABCDEFGHIJKLMNOP" + " is committed"},
            ],
        })
        agent = CodeReviewAgent(settings, PipelineFile().stage(StageName.REVIEW), agent=bad)
        run = PipelineRunner(settings, agents={StageName.REVIEW: agent}, persist=False).run(
            repo_ctx, stages=[StageName.REVIEW],
        )
        review = run.result(StageName.REVIEW)
        assert review.status == StageStatus.BLOCKED
        assert "G-07" in review.error
        assert any("G-05" in w for w in review.warnings)
        assert review.warnings == agent.warnings

    def test_warnings_property_is_a_copy(self, settings):
        agent = CodeReviewAgent(settings)
        agent.warnings.append("changed")
        assert agent.warnings == []
