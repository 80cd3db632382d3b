"""
Stage 1: Documentation
======================
DocumentationAgent writes one Markdown reference page per source file plus an
``index.md`` linking them.

Live path
    One JSON-mode call per file with a schema-anchored system prompt; the
    agent may call ``read_file`` / ``list_files`` to look at imported modules.
    Returns: ModuleDoc per file.

Mock path
    AST outline of each Python file (module docstring, public classes and
    methods, functions with signatures). Non-Python files get a short stub.
"""

from __future__ import annotations

import json
import textwrap
from pathlib import Path

from ci_copilot.agent import Agent
from ci_copilot.base_agent import StageAgent
from ci_copilot.code_outline import ModuleOutline, outline_module
from ci_copilot.models import (
    Artifact,
    ModuleDoc,
    RepoContext,
    SourceFile,
    StageName,
    StageResult,
    StageStatus,
)

_DOC_JSON_SCHEMA = {
    "path":     "string (the file path you were given)",
    "title":    "string (module name or short title)",
    "markdown": "string (full Markdown page, starting with a level-1 heading)",
}

_SYSTEM_PROMPT = textwrap.dedent("""
    You are a senior technical writer documenting a software repository.

    For the single source file you are given, write a concise reference page:
    1. A level-1 heading with the module name, then a 1–3 sentence overview.
    2. A "Usage" section with one short, realistic example if the module has a public API.
    3. An "API" section: one level-3 heading per public class / function with its
       signature in a code block and a one-paragraph description.
    4. Only document behaviour that is visible in the code. Do not invent parameters.
    5. You may call read_file or list_files to inspect modules this file imports.

    Respond with ONLY a valid JSON object matching this schema exactly:
""") + json.dumps(_DOC_JSON_SCHEMA, indent=2) + "\n\nDo NOT include any text outside the JSON."


def doc_path_for(source_path: str) -> str:
    """``src/pkg/mod.py`` → ``src/pkg/mod.md``."""
    return Path(source_path).with_suffix(".md").as_posix()


# ─── Mock rendering ──────────────────────────────────────────────────────────

def render_outline(file: SourceFile, outline: ModuleOutline) -> str:
    title = file.module_name or file.path
    lines = [f"# `{title}`", ""]
    lines.append(outline.summary or "_No module docstring._")
    lines += ["", f"Source: `{file.path}`", ""]

    if outline.syntax_error:
        lines += [f"> ⚠ Could not parse this file ({outline.syntax_error}).", ""]
        return "\n".join(lines)

    if outline.classes:
        lines += ["## Classes", ""]
        for cls in outline.classes:
            bases = f"({', '.join(cls.bases)})" if cls.bases else ""
            lines += [f"### class `{cls.name}{bases}`", ""]
            if cls.summary:
                lines += [cls.summary, ""]
            for m in cls.methods:
                lines += [f"- `{m.signature}`" + (f" — {m.summary}" if m.summary else "")]
            lines.append("")

    if outline.functions:
        lines += ["## Functions", ""]
        for fn in outline.functions:
            lines += [f"### `{fn.name}`", "", "```python", fn.signature, "```", ""]
            if fn.summary:
                lines += [fn.summary, ""]

    if not outline.classes and not outline.functions:
        lines += ["_No public API._", ""]
    return "\n".join(lines)


def render_stub(file: SourceFile) -> str:
    n_lines = file.content.count("\n") + 1
    return f"# `{file.path}`\n\n{file.language} source, {n_lines} lines.\n"


def render_index(docs: list[ModuleDoc]) -> str:
    lines = ["# API reference", ""]
    for d in sorted(docs, key=lambda d: d.path):
        lines.append(f"- [{d.title}]({doc_path_for(d.path)}) — `{d.path}`")
    return "\n".join(lines) + "\n"


# ─── Agent ───────────────────────────────────────────────────────────────────

class DocumentationAgent(StageAgent):
    """Generates Markdown reference documentation for the selected files."""

    stage = StageName.DOCS
    instructions = _SYSTEM_PROMPT
    work_label = "source files"
    use_repo_tools = True

    def work_count(self, ctx: RepoContext, **kwargs) -> int:
        return len(self.select_files(ctx))

    def _build_user_message(self, file: SourceFile) -> str:
        return (
            f"File: {file.path}\nLanguage: {file.language}\n\n"
            f"```{file.language}\n{file.content}\n```\n\nPlease produce the documentation JSON."
        )

    def _finish(self, docs: list[ModuleDoc], decisions: list[str]) -> StageResult:
        artifacts = []
        for d in docs:
            self.absorb(self.guardrails.check_text(d.markdown, doc_path_for(d.path)))
            artifacts.append(Artifact(doc_path_for(d.path), d.markdown))
        artifacts.append(Artifact("index.md", render_index(docs)))
        return StageResult(
            stage     = self.stage,
            status    = StageStatus.SUCCESS,
            artifacts = artifacts,
            summary   = f"{len(docs)} documentation pages generated.",
            decisions = decisions,
        )

    def run_live(self, ctx: RepoContext, agent: Agent, **kwargs) -> StageResult:
        docs: list[ModuleDoc] = []
        for file in self.select_files(ctx):
            payload = self.guard_payload(self._build_user_message(file))
            doc = agent.run_json(payload, ModuleDoc)
            docs.append(doc.model_copy(update={"path": file.path}))
        return self._finish(docs, [f"Documented {d.path}" for d in docs])

    def run_mock(self, ctx: RepoContext, **kwargs) -> StageResult:
        docs: list[ModuleDoc] = []
        decisions: list[str] = []
        for file in self.select_files(ctx):
            if file.language == "python":
                outline = outline_module(file.content, file.path)
                markdown = render_outline(file, outline)
                decisions.append(
                    f"{file.path}: {len(outline.classes)} classes, {len(outline.functions)} functions"
                )
            else:
                markdown = render_stub(file)
                decisions.append(f"{file.path}: stub page ({file.language})")
            docs.append(ModuleDoc(path=file.path, title=file.module_name or file.path, markdown=markdown))
        return self._finish(docs, decisions)
