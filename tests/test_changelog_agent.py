"""
Tests for stage 4 (changelog): commit parsing, version bumps and rendering.
"""
import pytest

from factories import make_agent, make_commit, make_context
from ci_copilot.changelog_agent import (
    ChangelogAgent,
    build_changelog,
    current_version,
    parse_commit,
    render_changelog,
    render_entry,
    suggest_next_version,
)
from ci_copilot.config import PipelineFile
from ci_copilot.models import ChangeType, ChangelogEntry, StageName, StageStatus


def _agent(settings, agent=None):
    return ChangelogAgent(settings, PipelineFile().stage(StageName.CHANGELOG), agent=agent)


def _entry(change_type=ChangeType.FIXED, breaking=False):
    return ChangelogEntry(change_type=change_type, description="x", breaking=breaking)


class TestParseCommit:
    def test_conventional_with_scope(self):
        entry = parse_commit(make_commit("feat(api): add /health endpoint", sha="abcdef1234567890"))
        assert entry.change_type == ChangeType.ADDED
        assert entry.scope == "api"
        assert entry.description == "Add /health endpoint"
        assert entry.commit == "abcdef1"
        assert not entry.breaking

    def test_bang_and_footer(self):
        entry = parse_commit(make_commit(
            "refactor!: drop Python 3.8 support",
            body="BREAKING CHANGE: Python 3.9+ is now required",
        ))
        assert entry.breaking
        assert entry.change_type == ChangeType.CHANGED
        assert entry.description == "Drop Python 3.8 support (Python 3.9+ is now required)"

    def test_housekeeping_and_merges_are_dropped(self):
        assert parse_commit(make_commit("chore: bump deps")) is None
        assert parse_commit(make_commit("docs: fix typo")) is None
        assert parse_commit(make_commit("Merge branch 'feature/x' into main")) is None

    def test_breaking_housekeeping_is_kept(self):
        entry = parse_commit(make_commit("build!: require setuptools 70"))
        assert entry.change_type == ChangeType.CHANGED
        assert entry.breaking

    def test_free_form_subjects(self):
        assert parse_commit(make_commit("Fix crash on empty input")).change_type == ChangeType.FIXED
        assert parse_commit(make_commit("Remove legacy flag")).change_type == ChangeType.REMOVED
        assert parse_commit(make_commit("Tweak wording")).change_type == ChangeType.CHANGED

    def test_unknown_type_defaults_to_changed(self):
        assert parse_commit(make_commit("ux: tidy the form")).change_type == ChangeType.CHANGED


class TestVersioning:
    def test_current_version(self):
        assert current_version("v1.2.3") == "1.2.3"
        assert current_version("1.2.3") == "1.2.3"
        assert current_version(None) == "0.0.0"

    @pytest.mark.parametrize("current, entries, expected", [
        ("1.2.3", [], "1.2.3"),
        ("1.2.3", [_entry(ChangeType.FIXED)], "1.2.4"),
        ("1.2.3", [_entry(ChangeType.ADDED), _entry(ChangeType.FIXED)], "1.3.0"),
        ("1.2.3", [_entry(ChangeType.FIXED, breaking=True)], "2.0.0"),
        ("0.4.1", [_entry(ChangeType.REMOVED, breaking=True)], "0.5.0"),
        ("release-7", [_entry(ChangeType.FIXED)], "0.0.1"),
    ])
    def test_suggest_next_version(self, current, entries, expected):
        assert suggest_next_version(current, entries) == expected

    def test_build_changelog_uses_date(self):
        changelog = build_changelog([_entry()], "v0.1.0", date="2025-03-01")
        assert changelog.version == "0.1.1"
        assert changelog.date == "2025-03-01"


class TestRendering:
    def test_entry(self):
        entry = ChangelogEntry(change_type=ChangeType.CHANGED, description="Drop 3.8",
                               scope="core", breaking=True, commit="abc1234")
        assert render_entry(entry) == "- **BREAKING:** **core:** Drop 3.8 (abc1234)"

    def test_empty_changelog(self):
        markdown = render_changelog(build_changelog([], "v1.0.0", date="2025-03-01"))
        assert markdown.startswith("## [1.0.0] - 2025-03-01")
        assert "_No user-facing changes._" in markdown

    def test_sections_in_order(self):
        changelog = build_changelog(
            [_entry(ChangeType.FIXED), _entry(ChangeType.ADDED)], "v1.0.0", date="2025-03-01",
        )
        markdown = render_changelog(changelog)
        assert markdown.index("### Added") < markdown.index("### Fixed")


class TestChangelogAgent:
    def test_mock_changelog(self, settings, repo_ctx):
        result = _agent(settings).run(repo_ctx)
        assert result.status == StageStatus.FALLBACK
        changelog = result.data
        assert changelog.version == "2.0.0"
        assert len(changelog.entries) == 3
        assert "1.2.3 → 2.0.0 (breaking)" in result.decisions
        assert "Dropped 2 merge / housekeeping commits" in result.decisions
        assert [a.relative_path for a in result.artifacts] == ["CHANGELOG.md", "changelog.json"]
        assert "### Added" in result.artifacts[0].content

    def test_no_commits_skips(self, settings):
        result = _agent(settings).run(make_context(commits=[]))
        assert result.status == StageStatus.SKIPPED

    def test_non_semver_tag_warns(self, settings):
        ctx = make_context(commits=[make_commit("fix: x")], previous_tag="nightly")
        result = _agent(settings).run(ctx)
        assert result.data.version == "0.0.1"
        assert any("G-06" in w for w in result.warnings)

    def test_live_version_is_computed_not_taken_from_model(self, settings, repo_ctx):
        agent = make_agent({"entries": [
            {"change_type": "added", "description": "Add health endpoint", "scope": "api",
             "breaking": False, "commit": "abc1234"},
        ]})
        result = _agent(settings, agent).run(repo_ctx)
        assert result.status == StageStatus.SUCCESS
        assert result.data.version == "1.3.0"
