"""Narrative report: tables, figures, Markdown and Word output."""
from __future__ import annotations
import os
import re
import json
import logging
from typing import Dict, Iterable, Optional
import numpy as np
import pandas as pd

import matplotlib

matplotlib.use("Agg")  # headless
import matplotlib.pyplot as plt  # noqa: E402
from docx import Document  # noqa: E402
from docx.enum.style import WD_STYLE_TYPE  # noqa: E402
from docx.oxml import parse_xml  # noqa: E402
from docx.oxml.ns import nsdecls  # noqa: E402
from docx.shared import Inches, Pt, RGBColor  # noqa: E402
from sksurv.nonparametric import kaplan_meier_estimator  # noqa: E402

from complaint_survival.config import DataConfig  # noqa: E402
from complaint_survival.data import DataSplit  # noqa: E402
from complaint_survival.metrics import METRIC_DIRECTIONS  # noqa: E402
from complaint_survival.selection import LastFitResult, show_best  # noqa: E402
from complaint_survival.utils import ensure_dir  # noqa: E402

logger = logging.getLogger("complaint_survival.report")

FAMILY_LABELS = {
    "weibull_aft": "Weibull AFT",
    "coxnet": "Penalized Cox (Coxnet)",
    "forest": "Random survival forest",
}


# ============================================================================
# Tables
# ============================================================================

def km_median(event, time) -> float:
    """Kaplan-Meier median time, NaN if survival never falls to 0.5."""
    event = np.asarray(event, dtype=bool)
    time = np.asarray(time, dtype=float)
    if time.size == 0:
        return np.nan
    km_times, km_surv = kaplan_meier_estimator(event, time)
    below = km_surv <= 0.5
    return float(km_times[below][0]) if below.any() else np.nan


def summarize_by_group(df: pd.DataFrame, y: np.ndarray, column: str, unknown_level: str = "unknown") -> pd.DataFrame:
    """Count, resolved share and Kaplan-Meier median days per level.

    Args:
        df: Cleaned complaint records aligned with y
        y: Structured survival array
        column: Grouping column
        unknown_level: Label for missing values

    Returns:
        DataFrame with columns column, n, resolved_share, median_days,
        sorted by descending n

    Example:
        >>> summarize_by_group(df, y, "borough").iloc[0]["borough"]
        'BROOKLYN'
    """
    groups = df[column].astype(object).where(df[column].notna(), unknown_level).to_numpy()
    rows = []
    for level in pd.unique(groups):
        mask = groups == level
        rows.append({
            column: level,
            "n": int(mask.sum()),
            "resolved_share": float(y["event"][mask].mean()),
            "median_days": km_median(y["event"][mask], y["time"][mask]),
        })
    return (
        pd.DataFrame(rows)
        .sort_values(["n", column], ascending=[False, True], kind="mergesort")
        .reset_index(drop=True)
    )


def markdown_table(df: pd.DataFrame, float_format: str = "{:.4f}") -> str:
    """Render a DataFrame as a pipe table."""
    def fmt(v):
        if isinstance(v, (float, np.floating)):
            return "NA" if np.isnan(v) else float_format.format(v)
        return str(v).replace("|", "/")

    header = "| " + " | ".join(str(c) for c in df.columns) + " |"
    sep = "|" + "|".join(" --- " for _ in df.columns) + "|"
    body = ["| " + " | ".join(fmt(v) for v in row) + " |" for row in df.itertuples(index=False)]
    return "\n".join([header, sep, *body])


# ============================================================================
# Figures
# ============================================================================

def plot_km_overview(y: np.ndarray, out_path: str, title: str = "Time to resolution (training data)"):
    """Kaplan-Meier curve with a 95% log-log confidence band."""
    times, surv, conf_int = kaplan_meier_estimator(y["event"], y["time"], conf_type="log-log")
    plt.figure(figsize=(8, 5))
    plt.step(times, surv, where="post", label="Kaplan-Meier")
    plt.fill_between(times, conf_int[0], conf_int[1], alpha=0.25, step="post", label="95% CI")
    plt.ylim(0, 1)
    plt.xlabel("Days since complaint entered")
    plt.ylabel("Share of complaints still open")
    plt.title(title)
    plt.legend()
    plt.grid(True, alpha=0.3)
    plt.tight_layout()
    plt.savefig(out_path, dpi=150)
    plt.close()


def plot_metric_over_time(
    results: pd.DataFrame,
    best: pd.DataFrame,
    metric: str,
    out_path: str,
    ylabel: str,
    title: str,
):
    """Validation metric per evaluation time for each family's best configuration."""
    plt.figure(figsize=(8, 5))
    for _, row in best.iterrows():
        curve = results[
            (results["family"] == row["family"])
            & (results["config_id"] == row["config_id"])
            & (results["metric"] == metric)
        ].sort_values("eval_time")
        plt.plot(curve["eval_time"], curve["value"], marker="o",
                 label=FAMILY_LABELS.get(row["family"], row["family"]))
    plt.xlabel("Days since complaint entered")
    plt.ylabel(ylabel)
    plt.title(title)
    plt.legend()
    plt.grid(True, alpha=0.3)
    plt.tight_layout()
    plt.savefig(out_path, dpi=150)
    plt.close()


def plot_brier_curve(times, brier_scores, out_path: str, title: str = "Test Brier score"):
    plt.figure(figsize=(8, 5))
    plt.plot(times, brier_scores, marker="o", label="Brier score")
    plt.xlabel("Days since complaint entered")
    plt.ylabel("Brier score")
    plt.title(title)
    plt.legend()
    plt.grid(True, alpha=0.3)
    plt.tight_layout()
    plt.savefig(out_path, dpi=150)
    plt.close()


def plot_survival_curves(survival: np.ndarray, times, out_path: str, n_curves: int = 5,
                         title: str = "Predicted probability a complaint is still open"):
    """Predicted survival curves for evenly spaced test complaints."""
    n = survival.shape[0]
    rows = np.unique(np.linspace(0, n - 1, min(n_curves, n)).astype(int))
    plt.figure(figsize=(8, 5))
    for i in rows:
        plt.step(times, survival[i], where="post", label=f"Complaint {i}")
    plt.ylim(0, 1.02)
    plt.xlabel("Days since complaint entered")
    plt.ylabel("Predicted S(t)")
    plt.title(title)
    plt.legend()
    plt.grid(True, alpha=0.3)
    plt.tight_layout()
    plt.savefig(out_path, dpi=150)
    plt.close()


def plot_complaint_map(df: pd.DataFrame, y: np.ndarray, out_path: str,
                       title: str = "Complaint locations by status"):
    """Scatter of complaint coordinates colored by resolution status."""
    coords = df[["latitude", "longitude"]].to_numpy(dtype=float)
    ok = np.isfinite(coords).all(axis=1)
    event = y["event"].astype(bool)

    plt.figure(figsize=(7, 7))
    for mask, label, color in ((ok & event, "Closed", "tab:blue"), (ok & ~event, "Active", "tab:red")):
        plt.scatter(coords[mask, 1], coords[mask, 0], s=4, alpha=0.5, c=color, label=label)
    plt.xlabel("Longitude")
    plt.ylabel("Latitude")
    plt.title(title)
    plt.legend(markerscale=3)
    plt.tight_layout()
    plt.savefig(out_path, dpi=150)
    plt.close()


# ============================================================================
# Markdown report
# ============================================================================

def _pick_times(times: np.ndarray, wanted: Iterable[float] = (30.0, 90.0, 180.0, 300.0)) -> np.ndarray:
    picked = [t for t in wanted if t in set(times.tolist())]
    return np.asarray(picked if picked else times[-1:], dtype=float)


def write_report(
    report_dir: str,
    df: pd.DataFrame,
    y: np.ndarray,
    split: DataSplit,
    results: pd.DataFrame,
    best: pd.DataFrame,
    final: LastFitResult,
    data_config: Optional[DataConfig] = None,
    write_docx: bool = True,
    n_curves: int = 5,
    metric: str = "brier_survival_integrated",
) -> Dict[str, str]:
    """Render figures and the narrative report.

    Args:
        report_dir: Output directory for report.md, report.docx and figures
        df: Cleaned complaint records
        y: Structured survival array for every record
        split: Training / validation / test assignment
        results: Validation metric frame from tuning
        best: Best configuration per family (from select_family)
        final: Result of the final refit
        data_config: Column layout
        write_docx: Also render report.docx
        n_curves: Number of predicted survival curves to draw
        metric: Selection metric

    Returns:
        Dictionary of written file paths keyed by short name
    """
    cfg = data_config or DataConfig()
    ensure_dir(report_dir)
    fig = lambda name: os.path.join(report_dir, name)  # noqa: E731
    paths = {
        "km": fig("km_overview.png"),
        "map": fig("complaint_map.png"),
        "val_brier": fig("validation_brier.png"),
        "val_auc": fig("validation_roc_auc.png"),
        "test_brier": fig("test_brier.png"),
        "curves": fig("predicted_survival.png"),
    }

    y_train = y[split.train]
    plot_km_overview(y_train, paths["km"])
    plot_complaint_map(df, y, paths["map"])
    plot_metric_over_time(results, best, "brier_survival", paths["val_brier"],
                          "Brier score", "Validation Brier score by family")
    plot_metric_over_time(results, best, "roc_auc_survival", paths["val_auc"],
                          "ROC-AUC", "Validation time-dependent ROC-AUC by family")
    test_brier = final.metrics[final.metrics["metric"] == "brier_survival"].sort_values("eval_time")
    plot_brier_curve(test_brier["eval_time"], test_brier["value"], paths["test_brier"])
    plot_survival_curves(final.survival, final.eval_times, paths["curves"], n_curves=n_curves)

    times = final.eval_times
    shown = _pick_times(times)
    test_scalar = final.metrics[final.metrics["eval_time"].isna()][["metric", "value"]]
    test_dynamic = (
        final.metrics[final.metrics["eval_time"].isin(shown)]
        .pivot(index="eval_time", columns="metric", values="value")
        .reset_index()
    )
    test_dynamic.columns.name = None

    best_table = best.assign(family=best["family"].map(lambda f: FAMILY_LABELS.get(f, f)))
    winner_label = FAMILY_LABELS.get(final.family, final.family)
    better = "lower" if METRIC_DIRECTIONS[metric] == "minimize" else "higher"

    lines = [
        "# Time to resolution of building complaints",
        "",
        "## Data",
        "",
        f"The analysis covers **{len(df):,}** complaints, of which "
        f"**{int(y['event'].sum()):,}** ({y['event'].mean():.1%}) were closed at the snapshot. "
        "Complaints still active are treated as right-censored at their elapsed days.",
        "",
        f"Median time to resolution (Kaplan-Meier, all complaints): {km_median(y['event'], y['time']):.0f} days.",
        "",
        "### Split",
        "",
        markdown_table(split.summary(y)),
        "",
        "### Resolution by borough",
        "",
        markdown_table(summarize_by_group(df, y, "borough", cfg.unknown_level)),
        "",
        "### Resolution by priority",
        "",
        markdown_table(summarize_by_group(df, y, "complaint_priority", cfg.unknown_level)),
        "",
        f"![Kaplan-Meier overview]({os.path.basename(paths['km'])})",
        "",
        f"![Complaint map]({os.path.basename(paths['map'])})",
        "",
        "## Model comparison on the validation subset",
        "",
        f"Each family was tuned on the training subset and scored on the validation subset. "
        f"Configurations are ranked by `{metric}` ({better} is better).",
        "",
        markdown_table(best_table),
        "",
        "### Top configurations",
        "",
        markdown_table(show_best(results, metric=metric, n=5)),
        "",
        f"![Validation Brier score]({os.path.basename(paths['val_brier'])})",
        "",
        f"![Validation ROC-AUC]({os.path.basename(paths['val_auc'])})",
        "",
        "## Final model",
        "",
        f"The selected model is the **{winner_label}**, refitted on training and validation "
        f"data and scored once on the **{len(split.test):,}** test complaints.",
        "",
        "```",
        json.dumps(final.params, indent=2, sort_keys=True),
        "```",
        "",
        markdown_table(test_scalar),
        "",
        markdown_table(test_dynamic),
        "",
        f"![Test Brier score]({os.path.basename(paths['test_brier'])})",
        "",
        f"![Predicted survival curves]({os.path.basename(paths['curves'])})",
        "",
    ]

    md_path = os.path.join(report_dir, "report.md")
    with open(md_path, "w", encoding="utf-8") as f:
        f.write("\n".join(lines))
    paths["markdown"] = md_path
    logger.info(f"Report written to: {md_path}")

    if write_docx:
        docx_path = os.path.join(report_dir, "report.docx")
        convert_md_to_docx(md_path, docx_path)
        paths["docx"] = docx_path

    return paths


# ============================================================================
# Word conversion
# ============================================================================

def setup_styles(doc):
    """Configure document styles for consistent formatting."""
    style = doc.styles["Normal"]
    style.font.name = "Calibri"
    style.font.size = Pt(11)

    for i, size in zip(range(1, 4), (18, 14, 12)):
        heading_font = doc.styles[f"Heading {i}"].font
        heading_font.name = "Calibri"
        heading_font.bold = True
        heading_font.color.rgb = RGBColor(31, 73, 125)
        heading_font.size = Pt(size)

    try:
        code_style = doc.styles["Code"]
    except KeyError:
        code_style = doc.styles.add_style("Code", WD_STYLE_TYPE.PARAGRAPH)
    code_style.font.name = "Consolas"
    code_style.font.size = Pt(9)
    code_style.paragraph_format.left_indent = Inches(0.5)


def parse_markdown_line(line: str):
    """Classify a Markdown line.

    Returns:
        Tuple of (line_type, content, level) where line_type is one of
        'heading', 'code_fence', 'image', 'bullet', 'table_sep', 'table',
        'text', 'blank'
    """
    line = line.rstrip()
    if not line:
        return ("blank", "", 0)

    heading_match = re.match(r"^(#{1,6})\s+(.+)$", line)
    if heading_match:
        return ("heading", heading_match.group(2), len(heading_match.group(1)))

    if line.strip().startswith("```"):
        return ("code_fence", line.strip()[3:], 0)

    image_match = re.match(r"^!\[([^\]]*)\]\(([^)]+)\)\s*$", line.strip())
    if image_match:
        return ("image", image_match.group(2), 0)

    bullet_match = re.match(r"^(\s*)([-*+])\s+(.+)$", line)
    if bullet_match:
        return ("bullet", bullet_match.group(3), len(bullet_match.group(1)) // 2)

    if re.match(r"^\s*\|[-:\s|]+\|\s*$", line):
        return ("table_sep", "", 0)

    if line.strip().startswith("|"):
        return ("table", line, 0)

    return ("text", line, 0)


def add_formatted_paragraph(doc, text: str, style_name: str = "Normal"):
    """Add a paragraph, rendering **bold** and `code` spans."""
    para = doc.add_paragraph(style=style_name)
    for part in re.split(r"(\*\*.*?\*\*|`[^`]*`)", text):
        if not part:
            continue
        if part.startswith("**") and part.endswith("**"):
            para.add_run(part[2:-2]).bold = True
        elif part.startswith("`") and part.endswith("`"):
            run = para.add_run(part[1:-1])
            run.font.name = "Consolas"
            run.font.size = Pt(9)
        else:
            para.add_run(part)
    return para


def process_table(doc, table_lines):
    """Add a pipe table to the document, header row in bold."""
    rows = []
    for line in table_lines:
        cells = [cell.strip() for cell in line.strip().strip("|").split("|")]
        rows.append(cells)
    if not rows:
        return

    num_cols = len(rows[0])
    table = doc.add_table(rows=len(rows), cols=num_cols)
    table.style = "Light Grid Accent 1"
    for i, row_data in enumerate(rows):
        for j, cell_text in enumerate(row_data[:num_cols]):
            cell = table.rows[i].cells[j]
            cell.text = cell_text
            if i == 0:
                for paragraph in cell.paragraphs:
                    for run in paragraph.runs:
                        run.bold = True


def convert_md_to_docx(md_path: str, docx_path: str, title: str = "Time to resolution of building complaints") -> str:
    """Convert the Markdown report to a Word document.

    Headings, bullets, pipe tables, fenced code and images (relative to the
    Markdown file) are supported.

    Args:
        md_path: Path to input markdown file
        docx_path: Path to output docx file
        title: Document title property

    Returns:
        docx_path
    """
    with open(md_path, "r", encoding="utf-8") as f:
        lines = f.readlines()
    base_dir = os.path.dirname(os.path.abspath(md_path))

    doc = Document()
    setup_styles(doc)
    doc.core_properties.title = title

    in_code_block = False
    code_buffer = []
    table_buffer = []

    for line in lines:
        line_type, content, level = parse_markdown_line(line)

        if line_type == "code_fence":
            if in_code_block:
                para = doc.add_paragraph("\n".join(code_buffer), style="Code")
                para._element.get_or_add_pPr().append(
                    parse_xml(r'<w:shd {} w:fill="F0F0F0"/>'.format(nsdecls("w")))
                )
                code_buffer = []
            in_code_block = not in_code_block
            continue
        if in_code_block:
            code_buffer.append(line.rstrip())
            continue

        if line_type in ("table", "table_sep"):
            if line_type == "table":
                table_buffer.append(content)
            continue
        if table_buffer:
            process_table(doc, table_buffer)
            table_buffer = []

        if line_type == "heading":
            doc.add_heading(content, level=min(level, 3))
        elif line_type == "image":
            image_path = content if os.path.isabs(content) else os.path.join(base_dir, content)
            if os.path.exists(image_path):
                doc.add_picture(image_path, width=Inches(6))
            else:
                logger.warning(f"Image not found, skipping: {image_path}")
        elif line_type == "bullet":
            add_formatted_paragraph(doc, content, "List Bullet")
        elif line_type == "text":
            add_formatted_paragraph(doc, content)

    if table_buffer:
        process_table(doc, table_buffer)

    doc.save(docx_path)
    logger.info(f"Converted {md_path} -> {docx_path}")
    return docx_path
