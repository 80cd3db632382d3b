"""
ci_copilot — AI-assisted CI/CD automation stages
================================================
Package containing the stage agents, language-model access, repository
access, guardrails, tracing and persistence for the ci-copilot pipeline.

Module map
----------
  config.py                 Settings loaded from .env + optional .ci-copilot.yml.
  errors.py                 Exception hierarchy rooted at CiCopilotError.
  models.py                 Shared dataclasses, enums and Pydantic output contracts.
  collector.py              Source-file globbing and artefact writing.
  vcs.py                    git shell-outs (diff, log, tags) + pure parsers.
  llm_client.py             Azure OpenAI chat client with backoff + response cache.
  agent.py                  Agent wrapper (optional tools) + Foundry agent runner.
  guardrails.py             Input / output guardrail checks (G-01 .. G-08).
  agent_trace.py            StageStep / RunTrace audit log.
  database.py               SQLite run history + LLM response cache.
  base_agent.py             StageAgent: live / mock routing shared by the six stages.
  code_outline.py           AST outline of a Python module (mock docs / tests).

  docs_agent.py             Stage 1: API reference documentation.
  test_gen_agent.py         Stage 2: pytest module generation.
  review_agent.py           Stage 3: code-review comments on the diff.
  changelog_agent.py        Stage 4: Keep-a-Changelog section + version bump.
  release_notes_agent.py    Stage 5: user-facing release notes (Markdown + PDF).
  pr_summary_agent.py       Stage 6: pull-request summary.

  pipeline.py               Runs enabled stages in order, non-blocking by default.
  ci_templates.py           GitLab CI / GitHub Actions YAML rendering.
  cli.py                    `ci-copilot` click entry point.

Pipeline order
--------------
  build_context (files, diff, commits)
  → docs → tests → review → changelog → release_notes → pr_summary
  Each stage: input guardrails → agent (live or mock) → output guardrails
  → artefacts under <output_dir>/<stage>/ → StageStep in the RunTrace.
"""
__version__ = "0.1.0"
