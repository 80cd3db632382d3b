"""
streamlit_app.py – ci-copilot run history dashboard
===================================================
Browse the pipeline runs recorded in the SQLite run history: one table of
recent runs, then a stage timeline and per-stage detail for the selected run.

    streamlit run streamlit_app.py

The database path comes from CI_COPILOT_DB_PATH (default
.ci-copilot/ci_copilot.db), the same file `ci-copilot history` reads.
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

# make src/ importable without installing the package
sys.path.insert(0, str(Path(__file__).parent / "src"))

import pandas as pd
import plotly.graph_objects as go
import streamlit as st

from ci_copilot.config import get_settings
from ci_copilot.database import cache_stats, get_recent_runs, get_run

# ─── Page config ─────────────────────────────────────────────────────────────
st.set_page_config(
    page_title="ci-copilot – Run history",
    page_icon="🤖",
    layout="wide",
)

# ─── Theme constants ─────────────────────────────────────────────────────────
CARD_BG   = "#FFFFFF"
BLUE      = "#0078D4"
PURPLE    = "#5C2D91"
GREEN     = "#107C10"
ORANGE    = "#CA5010"
RED       = "#D13438"
GREY      = "#616161"

STATUS_COLORS = {
    "success":  GREEN,
    "fallback": BLUE,
    "skipped":  GREY,
    "blocked":  ORANGE,
    "failed":   RED,
    "partial":  ORANGE,
}


# ─── Helpers ──────────────────────────────────────────────────────────────────

def _card(label: str, value: str, color: str = BLUE) -> str:
    return f"""
    <div style="background:{CARD_BG};border-left:4px solid {color};border-radius:4px;
                padding:10px 16px;width:100%;margin-bottom:8px;box-sizing:border-box;
                border:1px solid #E1DFDD;box-shadow:0 1px 2px rgba(0,0,0,0.04);">
      <div style="color:{GREY};font-size:0.7rem;font-weight:600;text-transform:uppercase;
                  letter-spacing:.06em;margin-bottom:3px;">{label}</div>
      <div style="color:#1B1B1B;font-size:1rem;font-weight:700;">{value}</div>
    </div>"""


def _section_header(title: str, icon: str = "") -> None:
    st.markdown(
        f"""<h3 style="color:#1B1B1B;border-bottom:1px solid #E1DFDD;
                        padding-bottom:6px;margin-top:28px;">{icon} {title}</h3>""",
        unsafe_allow_html=True,
    )


# ─── Data ─────────────────────────────────────────────────────────────────────

settings = get_settings()
db_path = settings.pipeline.db_path

with st.sidebar:
    st.markdown("## 🤖 ci-copilot")
    st.caption(f"Run history: `{db_path}`")
    limit = st.slider("Runs to show", min_value=5, max_value=200, value=25, step=5)
    st.markdown("---")
    for service, status in settings.status_summary().items():
        st.markdown(f"**{service}:** {status}")

runs = get_recent_runs(limit, db_path)

st.title("Pipeline runs")
if not runs:
    st.info("No runs recorded yet. Run `ci-copilot run` in a repository to populate the history.")
    st.stop()

runs_df = pd.DataFrame(runs)

# ═════════════════════════════════════════════════════════════════════════════
# SECTION 1 – Summary KPIs
# ═════════════════════════════════════════════════════════════════════════════
_kc1, _kc2, _kc3, _kc4 = st.columns(4)
with _kc1:
    st.markdown(_card("Runs", str(len(runs_df)), BLUE), unsafe_allow_html=True)
with _kc2:
    _ok = int((runs_df["status"] == "success").sum())
    st.markdown(_card("Fully successful", f"{_ok} / {len(runs_df)}", GREEN), unsafe_allow_html=True)
with _kc3:
    st.markdown(_card("Median run time", f"{runs_df['total_ms'].median():.0f} ms", PURPLE),
                unsafe_allow_html=True)
with _kc4:
    _cache = cache_stats(db_path)
    st.markdown(_card("Cached completions", f"{_cache['entries']} ({_cache['hits']} hits)", ORANGE),
                unsafe_allow_html=True)

st.dataframe(
    runs_df.rename(columns={
        "run_id": "Run", "created_at": "When", "repo": "Repo", "branch": "Branch",
        "mode": "Mode", "status": "Status", "stage_count": "Stages", "total_ms": "ms",
    })[["Run", "When", "Repo", "Branch", "Mode", "Status", "Stages", "ms"]],
    use_container_width=True,
    hide_index=True,
)

# ═════════════════════════════════════════════════════════════════════════════
# SECTION 2 – Stage timeline for one run
# ═════════════════════════════════════════════════════════════════════════════
_section_header("Stage timeline", "⏱️")

run_id = st.selectbox(
    "Run",
    options=list(runs_df["run_id"]),
    format_func=lambda rid: next(
        f"{r['run_id']} · {r['repo']}@{r['branch']} · {r['status']}" for r in runs if r["run_id"] == rid
    ),
)
record = get_run(run_id, db_path)
if record is None:
    st.error(f"Run {run_id} is no longer in the history.")
    st.stop()
trace = record["trace"]

timeline_fig = go.Figure()
for step in trace.steps:
    label = f"{step.icon} {step.stage_name}"
    timeline_fig.add_trace(go.Bar(
        x             = [step.duration_ms],
        y             = [label],
        base          = step.start_ms,
        orientation   = "h",
        marker_color  = STATUS_COLORS.get(step.status, BLUE),
        text          = f"{step.duration_ms:.0f} ms",
        textposition  = "auto",
        showlegend    = False,
        hovertemplate = (
            f"<b>{label}</b><br>"
            f"Start: {step.start_ms:.0f} ms<br>"
            f"Duration: {step.duration_ms:.0f} ms<br>"
            f"Status: {step.status}<extra></extra>"
        ),
    ))
timeline_fig.update_layout(
    barmode       = "stack",
    paper_bgcolor = CARD_BG,
    plot_bgcolor  = CARD_BG,
    font          = dict(color="#1B1B1B", size=11),
    height        = max(220, len(trace.steps) * 52),
    margin        = dict(l=10, r=20, t=10, b=40),
    xaxis         = dict(title="Time (ms from run start)", color=GREY, gridcolor="#E1DFDD", zeroline=False),
    yaxis         = dict(color="#1B1B1B", gridcolor="#E1DFDD", autorange="reversed"),
)
st.plotly_chart(timeline_fig, use_container_width=True)

# ═════════════════════════════════════════════════════════════════════════════
# SECTION 3 – Per-stage detail
# ═════════════════════════════════════════════════════════════════════════════
_section_header("Stage detail", "🗂️")
st.caption(f"Run {trace.run_id} · {trace.repo}@{trace.branch} · {trace.mode} · {trace.timestamp}")

for step in trace.steps:
    color = STATUS_COLORS.get(step.status, BLUE)
    st.markdown(
        f"**{step.icon} {step.stage_name}** "
        f"<span style='color:{color};font-weight:600;'>{step.status}</span> · "
        f"{step.duration_ms:.0f} ms",
        unsafe_allow_html=True,
    )
    st.markdown(f"- **Input:** {step.input_summary}\n- **Output:** {step.output_summary}")
    for w in step.warnings:
        st.warning(w, icon="⚠️")
    if step.decisions or step.detail:
        with st.expander(f"🔍 {step.stage_name}: decisions and artefacts", expanded=False):
            for d in step.decisions:
                st.markdown(f"- {d}")
            st.code(json.dumps(step.detail, indent=2, default=str), language="json")
