"""
Stage 5: Release notes
======================
ReleaseNotesAgent rewrites a changelog for end users: highlights first,
friendly section headings, and explicit upgrade notes for breaking changes.

Input is the Changelog produced by stage 4 in the same run (passed as the
``changelog`` keyword). When the changelog stage did not run, the
deterministic commit parser from changelog_agent builds one.

Artefacts: RELEASE_NOTES.md, release_notes.pdf (reportlab), release_notes.json
"""

from __future__ import annotations

import io
import json
import textwrap
from datetime import date
from typing import Optional
from xml.sax.saxutils import escape

from ci_copilot.agent import Agent
from ci_copilot.base_agent import StageAgent
from ci_copilot.changelog_agent import changelog_from_commits, render_changelog
from ci_copilot.models import (
    Artifact,
    ChangeType,
    Changelog,
    ReleaseNotes,
    ReleaseNotesSection,
    RepoContext,
    StageName,
    StageResult,
    StageStatus,
)

MAX_HIGHLIGHTS = 5

SECTION_HEADINGS: dict[ChangeType, str] = {
    ChangeType.ADDED:      "New features",
    ChangeType.CHANGED:    "Improvements",
    ChangeType.FIXED:      "Bug fixes",
    ChangeType.SECURITY:   "Security",
    ChangeType.DEPRECATED: "Deprecations",
    ChangeType.REMOVED:    "Removals",
}

_NOTES_JSON_SCHEMA = {
    "version":       "string (use exactly the version you were given)",
    "title":         "string (short, e.g. 'Release 1.4.0: faster imports')",
    "highlights":    ["string (at most 5, most important first)"],
    "sections":      [{"heading": "string", "items": ["string"]}],
    "upgrade_notes": ["string (one per breaking change: what to change and how)"],
}

_SYSTEM_PROMPT = textwrap.dedent("""
    You are a product writer turning a developer changelog into release notes
    for the people who use this software.

    Rules:
    1. Lead with what users can now do; leave out internal refactors.
    2. Group items under friendly headings (New features, Improvements,
       Bug fixes, Security, Deprecations, Removals). Omit empty groups.
    3. Every breaking change needs an upgrade note saying what to change.
    4. Do not invent changes that are not in the changelog.

    Respond with ONLY a valid JSON object matching this schema exactly:
""") + json.dumps(_NOTES_JSON_SCHEMA, indent=2) + "\n\nDo NOT include any text outside the JSON."


# ─── Mock generation ─────────────────────────────────────────────────────────

def notes_from_changelog(changelog: Changelog) -> ReleaseNotes:
    """Rule-based release notes: breaking and new features become highlights."""
    breaking = [e for e in changelog.entries if e.breaking]
    added = [e for e in changelog.entries if e.change_type == ChangeType.ADDED and not e.breaking]
    highlights = [e.description for e in breaking + added][:MAX_HIGHLIGHTS]
    if not highlights:
        highlights = [e.description for e in changelog.entries[:3]]

    sections = []
    for change_type in SECTION_HEADINGS:
        entries = changelog.grouped().get(change_type, [])
        if entries:
            sections.append(ReleaseNotesSection(
                heading = SECTION_HEADINGS[change_type],
                items   = [f"{e.scope}: {e.description}" if e.scope else e.description for e in entries],
            ))

    upgrade_notes = [
        f"{e.description}. Review usages{f' of {e.scope}' if e.scope else ''} before upgrading."
        for e in breaking
    ]
    return ReleaseNotes(
        version       = changelog.version,
        title         = f"Release {changelog.version}",
        highlights    = highlights,
        sections      = sections,
        upgrade_notes = upgrade_notes,
    )


# ─── Rendering ───────────────────────────────────────────────────────────────

def render_release_notes(notes: ReleaseNotes) -> str:
    lines = [f"# {notes.title}", ""]
    if notes.highlights:
        lines += ["## Highlights", ""]
        lines += [f"- {h}" for h in notes.highlights]
        lines.append("")
    if notes.upgrade_notes:
        lines += ["## ⚠ Upgrade notes", ""]
        lines += [f"- {n}" for n in notes.upgrade_notes]
        lines.append("")
    for section in notes.sections:
        lines += [f"## {section.heading}", ""]
        lines += [f"- {item}" for item in section.items]
        lines.append("")
    return "\n".join(lines)


def _rl_colour(hex_str: str):
    """Convert a CSS hex colour string to a reportlab Color."""
    from reportlab.lib import colors as rl_colors
    h = hex_str.lstrip("#")
    if len(h) == 3:
        h = "".join(c * 2 for c in h)
    r, g, b = int(h[0:2], 16) / 255, int(h[2:4], 16) / 255, int(h[4:6], 16) / 255
    return rl_colors.Color(r, g, b)


def generate_release_notes_pdf(notes: ReleaseNotes, repo: str = "") -> bytes:
    """
    Build a one-document PDF of the release notes.
    Returns raw PDF bytes.
    """
    from reportlab.lib.pagesizes import A4
    from reportlab.lib import colors as rl_colors
    from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
    from reportlab.lib.units import cm
    from reportlab.lib.enums import TA_CENTER
    from reportlab.platypus import (
        SimpleDocTemplate, Paragraph, Spacer, Table, TableStyle,
        HRFlowable, ListFlowable, ListItem,
    )

    buf = io.BytesIO()
    doc = SimpleDocTemplate(
        buf, pagesize=A4,
        leftMargin=1.8 * cm, rightMargin=1.8 * cm,
        topMargin=1.8 * cm, bottomMargin=1.8 * cm,
        title=notes.title,
    )

    styles = getSampleStyleSheet()
    BLUE   = _rl_colour("#0078d4")
    DARK   = _rl_colour("#1f2937")
    MUTED  = _rl_colour("#6b7280")
    AMBER  = _rl_colour("#ca5010")
    WHITE  = rl_colors.white
    LIGHT  = _rl_colour("#fff4ce")

    h1 = ParagraphStyle("H1", parent=styles["Heading1"],
                         textColor=WHITE, fontSize=16, leading=20, spaceAfter=4)
    h2 = ParagraphStyle("H2", parent=styles["Heading2"],
                         textColor=BLUE, fontSize=12, leading=15, spaceBefore=12, spaceAfter=4)
    body = ParagraphStyle("Body", parent=styles["Normal"],
                           textColor=DARK, fontSize=9, leading=13)

    def bullets(items: list[str]) -> ListFlowable:
        return ListFlowable(
            [ListItem(Paragraph(escape(i), body), leftIndent=12) for i in items],
            bulletType="bullet", start="•", leftIndent=10,
        )

    story = []
    today = date.today().strftime("%B %d, %Y")

    # ── Header banner ─────────────────────────────────────────────────────────
    subtitle = " · ".join(p for p in (repo, f"v{notes.version}", today) if p)
    banner = Table([[Paragraph(
        f"<b>{escape(notes.title)}</b><br/><font size='10'>{escape(subtitle)}</font>", h1,
    )]], colWidths=[doc.width])
    banner.setStyle(TableStyle([
        ("BACKGROUND",    (0, 0), (-1, -1), BLUE),
        ("TOPPADDING",    (0, 0), (-1, -1), 12),
        ("BOTTOMPADDING", (0, 0), (-1, -1), 12),
        ("LEFTPADDING",   (0, 0), (-1, -1), 10),
    ]))
    story.append(banner)
    story.append(Spacer(1, 0.4 * cm))

    if notes.highlights:
        story.append(Paragraph("Highlights", h2))
        story.append(bullets(notes.highlights))

    # ── Upgrade notes callout ─────────────────────────────────────────────────
    if notes.upgrade_notes:
        story.append(Paragraph("Upgrade notes", h2))
        callout = Table(
            [[Paragraph(escape(n), body)] for n in notes.upgrade_notes],
            colWidths=[doc.width],
        )
        callout.setStyle(TableStyle([
            ("BACKGROUND",  (0, 0), (-1, -1), LIGHT),
            ("LINEBEFORE",  (0, 0), (0, -1), 3, AMBER),
            ("TOPPADDING",  (0, 0), (-1, -1), 4),
            ("BOTTOMPADDING", (0, 0), (-1, -1), 4),
        ]))
        story.append(callout)

    for section in notes.sections:
        story.append(Paragraph(escape(section.heading), h2))
        story.append(bullets(section.items))

    # ── Footer ─────────────────────────────────────────────────────────────────
    story.append(Spacer(1, 0.6 * cm))
    story.append(HRFlowable(width="100%", thickness=0.5, color=rl_colors.lightgrey))
    story.append(Paragraph(
        f"Generated by <b>ci-copilot</b> · {today}",
        ParagraphStyle("Footer", parent=styles["Normal"],
                       textColor=MUTED, fontSize=7.5, alignment=TA_CENTER),
    ))

    doc.build(story)
    return buf.getvalue()


# ─── Agent ───────────────────────────────────────────────────────────────────

class ReleaseNotesAgent(StageAgent):
    """Turns the changelog into user-facing release notes."""

    stage = StageName.RELEASE_NOTES
    instructions = _SYSTEM_PROMPT
    work_label = "changelog entries"

    def _changelog(self, ctx: RepoContext, changelog: Optional[Changelog] = None) -> Changelog:
        if changelog is not None:
            return changelog
        return changelog_from_commits(ctx.commits, ctx.previous_tag)

    def work_count(self, ctx: RepoContext, changelog: Optional[Changelog] = None, **kwargs) -> int:
        return len(self._changelog(ctx, changelog).entries)

    def _finish(self, ctx: RepoContext, notes: ReleaseNotes, decisions: list[str]) -> StageResult:
        self.absorb(self.guardrails.check_version(notes.version))
        markdown = render_release_notes(notes)
        self.absorb(self.guardrails.check_text(markdown, "RELEASE_NOTES.md"))
        pdf = generate_release_notes_pdf(notes, repo=ctx.root.name)
        return StageResult(
            stage     = self.stage,
            status    = StageStatus.SUCCESS,
            artifacts = [
                Artifact("RELEASE_NOTES.md", markdown),
                Artifact("release_notes.pdf", "", binary=pdf),
                Artifact("release_notes.json", notes.model_dump_json(indent=2)),
            ],
            summary   = f"{notes.title}: {len(notes.highlights)} highlights, "
                        f"{len(notes.upgrade_notes)} upgrade notes.",
            decisions = decisions,
            data      = notes,
        )

    def run_live(self, ctx: RepoContext, agent: Agent, changelog: Optional[Changelog] = None,
                 **kwargs) -> StageResult:
        changelog = self._changelog(ctx, changelog)
        payload = self.guard_payload(
            f"Version: {changelog.version}\n\nChangelog:\n{render_changelog(changelog)}\n\n"
            "Please produce the release notes JSON."
        )
        notes = agent.run_json(payload, ReleaseNotes)
        if notes.version != changelog.version:
            self._warnings.append(
                f"Model proposed version {notes.version}; kept {changelog.version} from the changelog."
            )
            notes = notes.model_copy(update={"version": changelog.version})
        return self._finish(ctx, notes, [f"Rewrote {len(changelog.entries)} changelog entries"])

    def run_mock(self, ctx: RepoContext, changelog: Optional[Changelog] = None, **kwargs) -> StageResult:
        source = "changelog stage" if changelog is not None else "commit parser"
        changelog = self._changelog(ctx, changelog)
        notes = notes_from_changelog(changelog)
        return self._finish(ctx, notes, [
            f"Changelog from {source}: {len(changelog.entries)} entries",
            f"{len(notes.sections)} sections, {len(notes.upgrade_notes)} breaking changes",
        ])
