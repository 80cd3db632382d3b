"""
Tests for stage 2 (test generation).
"""
import ast

import pytest

from factories import make_agent, make_context, make_file
from ci_copilot.config import PipelineFile
from ci_copilot.errors import GuardrailBlockedError
from ci_copilot.models import StageName, StageStatus
from ci_copilot.test_gen_agent import TestGenerationAgent, proposed_test_path

AWS_KEY = "AKIA" + "ABCDEFGHIJKLMNOP"


def _agent(settings, agent=None):
    return TestGenerationAgent(settings, PipelineFile().stage(StageName.TESTS), agent=agent)


class TestProposedPath:
    def test_simple(self):
        assert proposed_test_path(make_file("src/calc/core.py")) == "tests/test_core.py"

    def test_package_init_uses_package_name(self):
        assert proposed_test_path(make_file("src/calc/__init__.py")) == "tests/test_calc.py"

    def test_collision_uses_module_path(self):
        taken = set()
        first = proposed_test_path(make_file("src/a/util.py"), taken)
        second = proposed_test_path(make_file("src/b/util.py"), taken)
        assert first == "tests/test_util.py"
        assert second == "tests/test_b_util.py"


class TestTestGenerationAgent:
    def test_mock_smoke_tests_parse(self, settings):
        ctx = make_context(changed_paths=["src/calc/core.py"])
        result = _agent(settings).run(ctx)
        assert result.status == StageStatus.FALLBACK
        assert [a.relative_path for a in result.artifacts] == ["tests/test_core.py"]
        code = result.artifacts[0].content
        ast.parse(code)
        assert "pytest.importorskip('calc.core')" in code
        assert "def test_calculator_is_a_class(mod):" in code
        assert "def test_double_is_callable(mod):" in code

    def test_only_changed_files_by_default(self, settings):
        ctx = make_context(
            files=[make_file("src/calc/core.py"), make_file("src/calc/other.py")],
            changed_paths=["src/calc/other.py"],
        )
        result = _agent(settings).run(ctx)
        assert [a.relative_path for a in result.artifacts] == ["tests/test_other.py"]

    def test_unparseable_source_is_skipped(self, settings):
        ctx = make_context(files=[make_file("src/bad.py", "def (:\n")], changed_paths=["src/bad.py"])
        result = _agent(settings).run(ctx)
        assert result.artifacts == []
        assert "skipped" in result.decisions[0]

    def test_no_changed_paths_skips(self, settings):
        ctx = make_context(files=[make_file("src/calc/core.py")], changed_paths=[])
        result = _agent(settings).run(ctx)
        assert result.status == StageStatus.SKIPPED
        assert result.artifacts == []

    def test_live_proposal_that_does_not_parse_is_blocked(self, settings):
        agent = make_agent({"target_path": "x", "test_path": "x", "code": "def test_(:\n"})
        with pytest.raises(GuardrailBlockedError) as exc_info:
            _agent(settings, agent).run(make_context(changed_paths=["src/calc/core.py"]))
        assert "G-04" in exc_info.value.message

    def test_live_proposal_with_secret_is_blocked(self, settings):
        code = f'KEY = "{AWS_KEY}"\n\n\ndef test_key():\n    assert KEY\n'
        agent = make_agent({"target_path": "x", "test_path": "x", "code": code})
        with pytest.raises(GuardrailBlockedError) as exc_info:
            _agent(settings, agent).run(make_context(changed_paths=["src/calc/core.py"]))
        assert "G-07" in exc_info.value.message

    def test_live_bad_proposal_dropped_when_others_survive(self, settings):
        agent = make_agent(
            {"target_path": "x", "test_path": "x", "code": "def test_a():\n    assert True\n"},
            {"target_path": "y", "test_path": "y", "code": "def test_(:\n"},
        )
        ctx = make_context(
            files=[make_file("src/calc/core.py"), make_file("src/calc/ops.py")],
            changed_paths=["src/calc/core.py", "src/calc/ops.py"],
        )
        result = _agent(settings, agent).run(ctx)
        assert result.status == StageStatus.SUCCESS
        assert [a.relative_path for a in result.artifacts] == ["tests/test_core.py"]
        assert any("G-04" in w for w in result.warnings)

    def test_live_proposal_with_secret_dropped_when_others_survive(self, settings):
        agent = make_agent(
            {"target_path": "x", "test_path": "x", "code": f'TOKEN = "{AWS_KEY}"\n'},
            {"target_path": "y", "test_path": "y", "code": "def test_b():\n    assert True\n"},
        )
        ctx = make_context(
            files=[make_file("src/calc/core.py"), make_file("src/calc/ops.py")],
            changed_paths=["src/calc/core.py", "src/calc/ops.py"],
        )
        result = _agent(settings, agent).run(ctx)
        assert result.status == StageStatus.SUCCESS
        assert [a.relative_path for a in result.artifacts] == ["tests/test_ops.py"]
        assert any("G-07" in w for w in result.warnings)
        assert all(AWS_KEY not in a.content for a in result.artifacts)
