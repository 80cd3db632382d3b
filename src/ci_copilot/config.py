"""
config.py — Central settings for ci-copilot
============================================
Runtime configuration is loaded from environment variables / .env file.
Copy .env.example → .env and fill in your values; in CI the same names are
provided as masked pipeline variables.

Live mode activates automatically when AZURE_OPENAI_ENDPOINT and
AZURE_OPENAI_API_KEY contain real (non-placeholder) values.

Per-repository stage selection lives in an optional ``.ci-copilot.yml``::

    pipeline:
      stages:
        docs:    {enabled: true, include: ["src/**/*.py"]}
        review:  {allow_failure: false}
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

from ci_copilot.errors import ConfigError
from ci_copilot.models import StageName

# Load .env into os.environ (no-op if already set, safe to call multiple times)
load_dotenv(override=False)

logger = logging.getLogger(__name__)

PIPELINE_FILE_NAME = ".ci-copilot.yml"


# ─── Helpers ────────────────────────────────────────────────────────────────

def _is_placeholder(value: str) -> bool:
    """Return True if the value looks like an unfilled template placeholder."""
    return not value or "<" in value or value.startswith("your-") or value == "PLACEHOLDER"


# ─── Azure OpenAI ────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class AzureOpenAIConfig:
    endpoint:    str
    api_key:     str
    deployment:  str
    api_version: str

    @property
    def is_configured(self) -> bool:
        """True when both endpoint and key are real (non-placeholder) values."""
        return (
            bool(self.endpoint)
            and bool(self.api_key)
            and not _is_placeholder(self.endpoint)
            and not _is_placeholder(self.api_key)
        )


# ─── Azure AI Foundry ────────────────────────────────────────────────────────

@dataclass(frozen=True)
class AzureFoundryConfig:
    project_endpoint: str

    @property
    def is_configured(self) -> bool:
        return bool(self.project_endpoint) and not _is_placeholder(self.project_endpoint)


# ─── Model call behaviour ────────────────────────────────────────────────────

@dataclass(frozen=True)
class LLMConfig:
    request_timeout: float   # seconds, per HTTP request
    max_retries:     int     # retries on 429 / timeout / 5xx
    backoff_base:    float   # delay = backoff_base ** attempt
    backoff_max:     float   # cap on a single delay
    temperature:     float
    max_tokens:      int
    cache_enabled:   bool


# ─── Pipeline defaults ───────────────────────────────────────────────────────

@dataclass(frozen=True)
class PipelineConfig:
    output_dir:      str
    base_ref:        str
    max_files:       int
    max_file_bytes:  int
    max_diff_chars:  int
    db_path:         str
    redact_secrets:  bool


# ─── App-level settings ──────────────────────────────────────────────────────

@dataclass(frozen=True)
class AppConfig:
    force_mock_mode: bool
    log_level:       str


# ─── Master settings object ──────────────────────────────────────────────────

@dataclass(frozen=True)
class Settings:
    openai:   AzureOpenAIConfig
    foundry:  AzureFoundryConfig
    llm:      LLMConfig
    pipeline: PipelineConfig
    app:      AppConfig

    @property
    def live_mode(self) -> bool:
        """True when Azure OpenAI creds are real and FORCE_MOCK_MODE is false."""
        return self.openai.is_configured and not self.app.force_mock_mode

    def status_summary(self) -> dict[str, str]:
        """Return a dict of service → status badge for `ci-copilot doctor`."""
        def badge(ok: bool) -> str:
            return "🟢 Live" if ok else "⚪ Not configured"

        return {
            "Azure OpenAI":     badge(self.openai.is_configured),
            "Azure AI Foundry": badge(self.foundry.is_configured),
            "Response cache":   "🟢 On" if self.llm.cache_enabled else "⚪ Off",
            "Mode":             "Live" if self.live_mode else "Mock (rule-based)",
        }


def get_settings() -> Settings:
    """Load all configuration from environment variables."""
    _str   = lambda k, d="": os.getenv(k, d).strip()
    _int   = lambda k, d=0: int(os.getenv(k, str(d)) or d)
    _float = lambda k, d=0.0: float(os.getenv(k, str(d)) or d)
    _bool  = lambda k, d=False: os.getenv(k, str(d)).lower() in ("1", "true", "yes")

    try:
        return Settings(
            openai=AzureOpenAIConfig(
                endpoint    = _str("AZURE_OPENAI_ENDPOINT").rstrip("/"),
                api_key     = _str("AZURE_OPENAI_API_KEY"),
                deployment  = _str("AZURE_OPENAI_DEPLOYMENT", "gpt-4o"),
                api_version = _str("AZURE_OPENAI_API_VERSION", "2024-12-01-preview"),
            ),
            foundry=AzureFoundryConfig(
                project_endpoint = _str("AZURE_AI_PROJECT_ENDPOINT").rstrip("/"),
            ),
            llm=LLMConfig(
                request_timeout = _float("CI_COPILOT_REQUEST_TIMEOUT", 60.0),
                max_retries     = _int("CI_COPILOT_MAX_RETRIES", 3),
                backoff_base    = _float("CI_COPILOT_BACKOFF_BASE", 2.0),
                backoff_max     = _float("CI_COPILOT_BACKOFF_MAX", 30.0),
                temperature     = _float("CI_COPILOT_TEMPERATURE", 0.2),
                max_tokens      = _int("CI_COPILOT_MAX_TOKENS", 2000),
                cache_enabled   = _bool("CI_COPILOT_CACHE", True),
            ),
            pipeline=PipelineConfig(
                output_dir      = _str("CI_COPILOT_OUTPUT_DIR", "ai-artifacts"),
                base_ref        = _str("CI_COPILOT_BASE_REF", "origin/main"),
                max_files       = _int("CI_COPILOT_MAX_FILES", 25),
                max_file_bytes  = _int("CI_COPILOT_MAX_FILE_BYTES", 40_000),
                max_diff_chars  = _int("CI_COPILOT_MAX_DIFF_CHARS", 60_000),
                db_path         = _str("CI_COPILOT_DB_PATH", ".ci-copilot/ci_copilot.db"),
                redact_secrets  = _bool("CI_COPILOT_REDACT_SECRETS", False),
            ),
            app=AppConfig(
                force_mock_mode = _bool("FORCE_MOCK_MODE", False),
                log_level       = _str("CI_COPILOT_LOG_LEVEL", "INFO").upper(),
            ),
        )
    except ValueError as exc:
        raise ConfigError(f"Invalid numeric setting in environment: {exc}") from exc


# ─── .ci-copilot.yml ─────────────────────────────────────────────────────────

_DEFAULT_EXCLUDES = [
    "**/.git/**", "**/.venv/**", "**/venv/**", "**/node_modules/**",
    "**/__pycache__/**", "**/build/**", "**/dist/**", "**/*.egg-info/**",
]


class StageSettings(BaseModel):
    """Per-stage switches read from the pipeline file."""
    enabled:       bool = True
    allow_failure: bool = True
    include:       list[str] = Field(default_factory=lambda: ["**/*.py"])
    exclude:       list[str] = Field(default_factory=lambda: list(_DEFAULT_EXCLUDES))
    changed_only:  bool = False   # restrict to files changed against base_ref


def _default_stage_settings() -> dict[StageName, StageSettings]:
    stages = {name: StageSettings() for name in StageName}
    # Generated docs / tests describe the product code, not its own tests.
    for name in (StageName.DOCS, StageName.TESTS):
        stages[name].exclude.extend(["tests/**", "**/test_*.py", "**/conftest.py"])
    stages[StageName.TESTS].changed_only = True
    return stages


def default_excludes() -> list[str]:
    return list(_DEFAULT_EXCLUDES)


class PipelineFile(BaseModel):
    """Validated contents of .ci-copilot.yml (the ``pipeline:`` section)."""
    output_dir: Optional[str] = None
    base_ref:   Optional[str] = None
    stages:     dict[StageName, StageSettings] = Field(default_factory=_default_stage_settings)

    def stage(self, name: StageName) -> StageSettings:
        return self.stages.get(name) or _default_stage_settings()[name]

    def enabled_stages(self) -> list[StageName]:
        """Enabled stages in pipeline order."""
        return [name for name in StageName if self.stage(name).enabled]


def load_pipeline_file(path: Union[str, Path, None] = None) -> PipelineFile:
    """
    Read and validate a pipeline file.

    A missing file yields the defaults (all six stages enabled, all
    non-blocking). Stages listed in the file override only the keys they set.

    Raises:
        ConfigError – unreadable file, invalid YAML, or schema mismatch.
    """
    path = Path(path or PIPELINE_FILE_NAME)
    if not path.exists():
        logger.debug("No pipeline file at %s; using defaults", path)
        return PipelineFile()

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"Could not read {path}: {exc}") from exc

    if not raw:
        return PipelineFile()
    if not isinstance(raw, dict) or not isinstance(raw.get("pipeline"), dict):
        raise ConfigError(f"{path} must contain a 'pipeline' mapping")

    data = dict(raw["pipeline"])
    merged = _default_stage_settings()
    stages = data.pop("stages", None)
    if stages is None:
        stages = {}
    if not isinstance(stages, dict):
        raise ConfigError(
            f"'stages' in {path} must be a mapping of stage name to settings",
            hint="Write e.g. `stages: {docs: {enabled: false}}`.",
        )
    for key, overrides in stages.items():
        try:
            name = StageName(key)
        except ValueError as exc:
            raise ConfigError(
                f"Unknown stage '{key}' in {path}",
                hint=f"Valid stages: {', '.join(s.value for s in StageName)}",
            ) from exc
        if overrides is not None and not isinstance(overrides, dict):
            raise ConfigError(
                f"Settings for stage '{key}' in {path} must be a mapping, got {overrides!r}",
                hint=f"Write e.g. `{key}: {{enabled: false}}`.",
            )
        base = merged[name].model_dump()
        base.update(overrides or {})
        merged[name] = base

    try:
        return PipelineFile.model_validate({**data, "stages": merged})
    except ValidationError as exc:
        raise ConfigError(f"Invalid pipeline file {path}:\n{exc}") from exc


def dump_pipeline_file(pipeline: PipelineFile, path: Union[str, Path]) -> Path:
    """Write a pipeline file; used by `ci-copilot init`."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = {"pipeline": pipeline.model_dump(mode="json", exclude_none=True)}
    with path.open("w", encoding="utf-8") as fh:
        yaml.safe_dump(payload, fh, default_flow_style=False, sort_keys=False, indent=2)
    logger.info("Pipeline file written to %s", path)
    return path
