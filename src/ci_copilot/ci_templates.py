"""
ci_templates.py — CI configuration for the six stages
======================================================
Renders one job per enabled stage for GitLab CI or GitHub Actions. Every job
runs ``ci-copilot stage <name>``, publishes ``<output_dir>/<name>/`` as a
build artefact, and is non-blocking unless the stage sets
``allow_failure: false`` in .ci-copilot.yml.

When each stage runs
--------------------
  docs, changelog, release_notes    default branch and tags
  tests, review, pr_summary         merge / pull requests only

Credentials are never written into the generated file: GitLab reads them
from masked CI/CD variables, GitHub from repository secrets.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Union

import yaml

from ci_copilot.config import PipelineFile
from ci_copilot.models import StageName

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = ("gitlab", "github")

DEFAULT_INSTALL = "pip install ci-copilot"
DEFAULT_PYTHON = "3.12"

REQUEST_STAGES = {StageName.TESTS, StageName.REVIEW, StageName.PR_SUMMARY}

SECRET_VARIABLES = [
    "AZURE_OPENAI_ENDPOINT",
    "AZURE_OPENAI_API_KEY",
    "AZURE_OPENAI_DEPLOYMENT",
    "AZURE_AI_PROJECT_ENDPOINT",
]


class _Dumper(yaml.SafeDumper):
    """Indent block sequences under their key, the way CI docs show them."""

    def increase_indent(self, flow=False, indentless=False):
        return super().increase_indent(flow, False)


def _dump(data: dict[str, Any], header: str) -> str:
    body = yaml.dump(data, Dumper=_Dumper, default_flow_style=False, sort_keys=False,
                     width=120, allow_unicode=True)
    return header + body


def _output_dir(pipeline: PipelineFile, output_dir: str | None) -> str:
    return (output_dir or pipeline.output_dir or "ai-artifacts").rstrip("/")


# ─── GitLab CI ───────────────────────────────────────────────────────────────

def render_gitlab_ci(
    pipeline: PipelineFile,
    output_dir: str | None = None,
    install: str = DEFAULT_INSTALL,
    python_version: str = DEFAULT_PYTHON,
) -> str:
    """Return a .gitlab-ci.yml fragment with one job per enabled stage."""
    out = _output_dir(pipeline, output_dir)
    doc: dict[str, Any] = {
        "stages": ["ai"],
        ".ci-copilot": {
            "stage": "ai",
            "image": f"python:{python_version}",
            "variables": {"GIT_DEPTH": "0"},
            "cache": {"key": "ci-copilot", "paths": [".ci-copilot/"]},
            "before_script": [
                install,
                'git fetch origin "$CI_DEFAULT_BRANCH" --tags',
            ],
        },
    }
    for stage in pipeline.enabled_stages():
        settings = pipeline.stage(stage)
        if stage in REQUEST_STAGES:
            rules = [{"if": '$CI_PIPELINE_SOURCE == "merge_request_event"'}]
            base = 'origin/$CI_MERGE_REQUEST_TARGET_BRANCH_NAME'
        else:
            rules = [{"if": "$CI_COMMIT_BRANCH == $CI_DEFAULT_BRANCH"}, {"if": "$CI_COMMIT_TAG"}]
            base = "origin/$CI_DEFAULT_BRANCH"
        doc[f"ci-copilot:{stage.value}"] = {
            "extends": ".ci-copilot",
            "script": [f'ci-copilot stage {stage.value} --base-ref "{base}"'],
            "allow_failure": settings.allow_failure,
            "rules": rules,
            "artifacts": {
                "when": "always",
                "expire_in": "1 week",
                "paths": [f"{out}/{stage.value}/", f"{out}/trace.json"],
            },
        }
    return _dump(doc, "# Generated by `ci-copilot ci-config gitlab`.\n"
                      "# Set AZURE_OPENAI_* as masked CI/CD variables; without them stages run in mock mode.\n")


# ─── GitHub Actions ──────────────────────────────────────────────────────────

def render_github_actions(
    pipeline: PipelineFile,
    output_dir: str | None = None,
    install: str = DEFAULT_INSTALL,
    python_version: str = DEFAULT_PYTHON,
    default_branch: str = "main",
) -> str:
    """Return a workflow file with one job per enabled stage."""
    out = _output_dir(pipeline, output_dir)
    env = {name: "${{ secrets.%s }}" % name for name in SECRET_VARIABLES}
    jobs: dict[str, Any] = {}
    for stage in pipeline.enabled_stages():
        settings = pipeline.stage(stage)
        if stage in REQUEST_STAGES:
            condition = "github.event_name == 'pull_request'"
            base = "origin/${{ github.base_ref }}"
        else:
            condition = "github.event_name == 'push'"
            base = f"origin/{default_branch}"
        jobs[stage.value.replace("_", "-")] = {
            "if": condition,
            "runs-on": "ubuntu-latest",
            "continue-on-error": settings.allow_failure,
            "steps": [
                {"uses": "actions/checkout@v4", "with": {"fetch-depth": 0}},
                {"uses": "actions/setup-python@v5", "with": {"python-version": python_version}},
                {"run": install},
                {"run": f'ci-copilot stage {stage.value} --base-ref "{base}"', "env": env},
                {
                    "uses": "actions/upload-artifact@v4",
                    "if": "always()",
                    "with": {
                        "name": f"ci-copilot-{stage.value}",
                        "path": f"{out}/{stage.value}/",
                        "if-no-files-found": "ignore",
                    },
                },
            ],
        }
    doc = {
        "name": "ci-copilot",
        "on": {
            "pull_request": {},
            "push": {"branches": [default_branch], "tags": ["v*"]},
        },
        "jobs": jobs,
    }
    return _dump(doc, "# Generated by `ci-copilot ci-config github`.\n"
                      "# Add AZURE_OPENAI_* as repository secrets; without them stages run in mock mode.\n")


def render_ci_config(provider: str, pipeline: PipelineFile, **kwargs) -> str:
    if provider == "gitlab":
        return render_gitlab_ci(pipeline, **kwargs)
    if provider == "github":
        return render_github_actions(pipeline, **kwargs)
    raise ValueError(f"Unknown CI provider '{provider}'; expected one of {SUPPORTED_PROVIDERS}")


def default_ci_path(provider: str) -> Path:
    return Path(".gitlab-ci.yml") if provider == "gitlab" else Path(".github/workflows/ci-copilot.yml")


def write_ci_config(provider: str, pipeline: PipelineFile, path: Union[str, Path, None] = None,
                    **kwargs) -> Path:
    path = Path(path) if path else default_ci_path(provider)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(render_ci_config(provider, pipeline, **kwargs), encoding="utf-8")
    logger.info("%s CI configuration written to %s", provider, path)
    return path
