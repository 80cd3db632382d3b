"""
Tests for settings loading and the .ci-copilot.yml pipeline file.
Run: python -m pytest tests/ -v
"""
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

import pytest
import yaml

from ci_copilot.config import (
    PipelineFile,
    _is_placeholder,
    dump_pipeline_file,
    get_settings,
    load_pipeline_file,
)
from ci_copilot.errors import ConfigError
from ci_copilot.models import StageName


class TestIsPlaceholder:
    def test_empty_string_is_placeholder(self):
        assert _is_placeholder("")

    def test_angle_bracket_is_placeholder(self):
        assert _is_placeholder("<your-key-here>")

    def test_your_prefix_is_placeholder(self):
        assert _is_placeholder("your-endpoint")

    def test_literal_PLACEHOLDER_is_placeholder(self):
        assert _is_placeholder("PLACEHOLDER")

    def test_real_value_not_placeholder(self):
        assert not _is_placeholder("https://my-resource.openai.azure.com")


class TestSettingsLoading:
    def test_defaults(self, monkeypatch):
        for var in ("CI_COPILOT_MAX_RETRIES", "CI_COPILOT_OUTPUT_DIR", "CI_COPILOT_BASE_REF"):
            monkeypatch.delenv(var, raising=False)
        s = get_settings()
        assert s.llm.max_retries == 3
        assert s.pipeline.output_dir == "ai-artifacts"
        assert s.pipeline.base_ref == "origin/main"

    def test_force_mock_disables_live_mode(self, monkeypatch):
        monkeypatch.setenv("AZURE_OPENAI_ENDPOINT", "https://real.openai.azure.com/")
        monkeypatch.setenv("AZURE_OPENAI_API_KEY", "abc123defgh456")
        monkeypatch.setenv("FORCE_MOCK_MODE", "true")
        s = get_settings()
        assert s.openai.is_configured
        assert s.openai.endpoint == "https://real.openai.azure.com"
        assert not s.live_mode

    def test_live_mode_with_real_credentials(self, monkeypatch):
        monkeypatch.setenv("AZURE_OPENAI_ENDPOINT", "https://real.openai.azure.com")
        monkeypatch.setenv("AZURE_OPENAI_API_KEY", "abc123defgh456")
        monkeypatch.setenv("FORCE_MOCK_MODE", "false")
        assert get_settings().live_mode

    def test_live_mode_false_with_placeholders(self, monkeypatch):
        monkeypatch.setenv("AZURE_OPENAI_ENDPOINT", "<placeholder>")
        monkeypatch.setenv("FORCE_MOCK_MODE", "false")
        assert not get_settings().live_mode

    def test_bad_number_raises_config_error(self, monkeypatch):
        monkeypatch.setenv("CI_COPILOT_MAX_RETRIES", "three")
        with pytest.raises(ConfigError):
            get_settings()

    def test_status_summary_keys(self):
        summary = get_settings().status_summary()
        assert "Azure OpenAI" in summary
        assert "Azure AI Foundry" in summary
        assert summary["Mode"].startswith("Mock")


class TestPipelineFile:
    def test_missing_file_gives_defaults(self, tmp_path):
        pf = load_pipeline_file(tmp_path / "nope.yml")
        assert pf.enabled_stages() == list(StageName)
        assert all(pf.stage(s).allow_failure for s in StageName)
        assert pf.stage(StageName.TESTS).changed_only
        assert "tests/**" in pf.stage(StageName.DOCS).exclude

    def test_overrides_merge_into_defaults(self, tmp_path):
        path = tmp_path / ".ci-copilot.yml"
        path.write_text(yaml.safe_dump({"pipeline": {
            "output_dir": "out",
            "stages": {
                "review": {"allow_failure": False},
                "docs": {"enabled": False},
            },
        }}))
        pf = load_pipeline_file(path)
        assert pf.output_dir == "out"
        assert not pf.stage(StageName.REVIEW).allow_failure
        assert pf.stage(StageName.REVIEW).include == ["**/*.py"]
        assert StageName.DOCS not in pf.enabled_stages()
        # untouched stage keeps its default exclusions
        assert "tests/**" in pf.stage(StageName.TESTS).exclude

    def test_unknown_stage_rejected(self, tmp_path):
        path = tmp_path / ".ci-copilot.yml"
        path.write_text("pipeline:\n  stages:\n    deploy: {enabled: true}\n")
        with pytest.raises(ConfigError) as exc_info:
            load_pipeline_file(path)
        assert "deploy" in exc_info.value.message
        assert "release_notes" in exc_info.value.hint

    def test_invalid_yaml_rejected(self, tmp_path):
        path = tmp_path / ".ci-copilot.yml"
        path.write_text("pipeline: [unclosed\n")
        with pytest.raises(ConfigError):
            load_pipeline_file(path)

    def test_wrong_type_rejected(self, tmp_path):
        path = tmp_path / ".ci-copilot.yml"
        path.write_text("pipeline:\n  stages:\n    docs: {enabled: sometimes}\n")
        with pytest.raises(ConfigError):
            load_pipeline_file(path)

    def test_stages_list_rejected(self, tmp_path):
        path = tmp_path / ".ci-copilot.yml"
        path.write_text("pipeline:\n  stages: [docs]\n")
        with pytest.raises(ConfigError) as exc_info:
            load_pipeline_file(path)
        assert "'stages'" in exc_info.value.message

    @pytest.mark.parametrize("value", ["true", "false", "docs", "[1, 2]"])
    def test_scalar_stage_settings_rejected(self, tmp_path, value):
        path = tmp_path / ".ci-copilot.yml"
        path.write_text(f"pipeline:\n  stages:\n    docs: {value}\n")
        with pytest.raises(ConfigError) as exc_info:
            load_pipeline_file(path)
        assert "docs" in exc_info.value.message

    def test_empty_stage_settings_keep_defaults(self, tmp_path):
        path = tmp_path / ".ci-copilot.yml"
        path.write_text("pipeline:\n  stages:\n    docs:\n")
        pf = load_pipeline_file(path)
        assert pf.stage(StageName.DOCS) == PipelineFile().stage(StageName.DOCS)

    def test_missing_pipeline_key_rejected(self, tmp_path):
        path = tmp_path / ".ci-copilot.yml"
        path.write_text("stages: {}\n")
        with pytest.raises(ConfigError):
            load_pipeline_file(path)

    def test_dump_then_load(self, tmp_path):
        pf = PipelineFile(base_ref="origin/develop")
        path = dump_pipeline_file(pf, tmp_path / "cfg" / ".ci-copilot.yml")
        loaded = load_pipeline_file(path)
        assert loaded.base_ref == "origin/develop"
        assert loaded.stages == pf.stages
