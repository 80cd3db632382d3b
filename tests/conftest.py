"""
Shared pytest fixtures for the ci-copilot test suite.
All fixtures use mock mode; no Azure credentials required.
Factory helpers live in tests/factories.py so they can be imported
directly by test modules as well as being used here.
"""
import sys
import os

_tests_dir = os.path.dirname(__file__)
_src_dir   = os.path.join(_tests_dir, "..", "src")
for _p in (_tests_dir, _src_dir):
    if _p not in sys.path:
        sys.path.insert(0, _p)

# Force mock mode: tests never call Azure
os.environ["FORCE_MOCK_MODE"] = "true"
os.environ.setdefault("AZURE_OPENAI_ENDPOINT", "<placeholder>")
os.environ.setdefault("AZURE_OPENAI_API_KEY",  "<placeholder>")


import shutil
import subprocess

import pytest

from factories import make_commit, make_context, make_diff, make_file, make_settings


# ─── pytest fixtures ──────────────────────────────────────────────────────────

@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def feature_diff():
    return make_diff("src/calc/core.py", [
        "import os",
        "def risky(expr):",
        "    print(expr)",
        "    try:",
        "        return eval(expr)",
        "    except:",
        "        return None  # TODO handle properly",
    ], start=10)


@pytest.fixture
def commits():
    return [
        make_commit("feat(api): add /health endpoint"),
        make_commit("fix: handle empty config file"),
        make_commit("chore: bump dev dependencies"),
        make_commit("Merge branch 'feature/x' into main"),
        make_commit("refactor!: drop Python 3.8 support",
                    body="BREAKING CHANGE: Python 3.9+ is now required"),
    ]


@pytest.fixture
def repo_ctx(tmp_path, feature_diff, commits):
    return make_context(
        root          = tmp_path,
        files         = [make_file("src/calc/core.py"), make_file("src/calc/__init__.py", '"""Calc."""\n')],
        diff          = feature_diff,
        commits       = commits,
        previous_tag  = "v1.2.3",
        changed_paths = ["src/calc/core.py"],
    )


def _git(cwd, *args):
    subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True, text=True)


@pytest.fixture
def git_repo(tmp_path):
    """A real repository: tagged v0.1.0 on main, one feature commit on top."""
    if shutil.which("git") is None:
        pytest.skip("git not installed")
    repo = tmp_path / "repo"
    (repo / "src" / "calc").mkdir(parents=True)
    _git(repo, "init", "-q", "-b", "main")
    _git(repo, "config", "user.email", "test@example.com")
    _git(repo, "config", "user.name", "Test User")
    _git(repo, "config", "commit.gpgsign", "false")
    (repo / "src" / "calc" / "__init__.py").write_text('"""Calc package."""\n')
    _git(repo, "add", ".")
    _git(repo, "commit", "-q", "-m", "chore: initial commit")
    _git(repo, "tag", "v0.1.0")
    _git(repo, "branch", "base")

    (repo / "src" / "calc" / "core.py").write_text(make_file().content)
    _git(repo, "add", ".")
    _git(repo, "commit", "-q", "-m", "feat(core): add Calculator")
    return repo
