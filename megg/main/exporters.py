"""Serialise dashboard tables into downloadable report files.

Every export shares the letterhead from :mod:`config.report`.  Record-level
tables list one row per inspection event; metric tables are simple
``Metric``/``Value`` pairs.  Both can be written as CSV, XLSX, PDF, DOCX or a
PNG snapshot.
"""

from __future__ import annotations

import base64
import csv
import io
import re
from dataclasses import dataclass, field
from datetime import datetime, tzinfo
from typing import Any, Callable, Iterable, Mapping, Sequence

from docx import Document
from docx.enum.text import WD_ALIGN_PARAGRAPH
from docx.shared import Inches, Pt
from flask import current_app, render_template
from openpyxl import Workbook
from openpyxl.styles import Alignment, Font, PatternFill
from openpyxl.utils import get_column_letter

from config.report import GENERATED_AT_FORMAT, ORGANIZATION_LINES, REPORT_FOOTER
from megg.cancellation import CancellationToken, OperationCancelled, check
from megg.main import charts
from megg.main.pdf_utils import render_html_to_pdf

IMAGE_PLACEHOLDER = "Failed to load image"
NO_IMAGE = "No image"

XLSX_MIN_WIDTH = 10
XLSX_MAX_WIDTH = 50
SNAPSHOT_ROWS = 25

EXPORT_FORMATS: dict[str, str] = {
    "csv": "text/csv",
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "pdf": "application/pdf",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "png": "image/png",
}


class ExportError(RuntimeError):
    """Raised when an export cannot be produced."""


def header_lines(generated_at: datetime) -> list[str]:
    """Return the letterhead block printed above every export."""

    return [
        *ORGANIZATION_LINES,
        f"Report Generated: {generated_at.strftime(GENERATED_AT_FORMAT)}",
    ]


@dataclass(frozen=True)
class ExportColumn:
    key: str
    label: str


RECORD_COLUMNS: dict[str, tuple[ExportColumn, ...]] = {
    "defect": (
        ExportColumn("created_at", "Timestamp"),
        ExportColumn("batch_id", "Batch ID"),
        ExportColumn("confidence", "Confidence"),
        ExportColumn("quality", "Defect Type"),
        ExportColumn("machine_id", "Machine ID"),
    ),
    "sort": (
        ExportColumn("created_at", "Timestamp"),
        ExportColumn("batch_id", "Batch ID"),
        ExportColumn("size", "Size"),
        ExportColumn("weight", "Weight (g)"),
        ExportColumn("machine_id", "Machine ID"),
    ),
}


BATCH_COLUMNS: dict[str, tuple[ExportColumn, ...]] = {
    "defect": (
        ExportColumn("id", "Batch Number"),
        ExportColumn("total", "Total Eggs"),
        ExportColumn("defectCount", "Defects"),
        ExportColumn("defectPercentage", "Defect Rate"),
        ExportColumn("primaryDefect", "Primary Defect"),
        ExportColumn("timeRange", "Time Range"),
    ),
    "sort": (
        ExportColumn("id", "Batch Number"),
        ExportColumn("total", "Total Sort"),
        ExportColumn("size_small", "Small"),
        ExportColumn("size_medium", "Medium"),
        ExportColumn("size_large", "Large"),
        ExportColumn("mostCommonSize", "Most Common Size"),
        ExportColumn("timeRange", "Time Range"),
    ),
}


@dataclass(frozen=True)
class RecordImage:
    """Image embedded next to one exported record."""

    data: bytes | None = None
    error: str | None = None

    @property
    def placeholder(self) -> str:
        return IMAGE_PLACEHOLDER if self.error else NO_IMAGE


@dataclass
class ReportTable:
    title: str
    columns: list[str]
    rows: list[list[str]]
    generated_at: datetime
    variant: str = "records"
    subtitle: str | None = None
    summary: list[tuple[str, str]] = field(default_factory=list)
    images: list[RecordImage] | None = None
    chart_png: bytes | None = None

    @property
    def header(self) -> list[str]:
        return header_lines(self.generated_at)


def format_cell(key: str, value: Any, tz: tzinfo) -> str:
    if value is None or value == "":
        return ""
    if isinstance(value, datetime):
        return value.astimezone(tz).strftime("%Y-%m-%d %H:%M:%S")
    if key == "confidence" and isinstance(value, (int, float)):
        percent = value * 100 if value <= 1 else value
        return f"{percent:.1f}%"
    if key == "weight" and isinstance(value, (int, float)):
        return f"{value:.1f}"
    if key == "defectPercentage":
        return f"{value}%"
    if key in ("primaryDefect", "mostCommonSize"):
        return str(value).title()
    return str(value)


def flatten_record(
    record: Mapping[str, Any], columns: Sequence[ExportColumn], tz: tzinfo
) -> list[str]:
    return [format_cell(column.key, record.get(column.key), tz) for column in columns]


def record_table(
    records: Sequence[Mapping[str, Any]],
    kind: str,
    *,
    title: str,
    tz: tzinfo,
    generated_at: datetime,
    summary: Iterable[tuple[str, Any]] = (),
    images: list[RecordImage] | None = None,
) -> ReportTable:
    columns = RECORD_COLUMNS[kind]
    return ReportTable(
        title=title,
        columns=[column.label for column in columns],
        rows=[flatten_record(record, columns, tz) for record in records],
        generated_at=generated_at,
        summary=[(label, str(value)) for label, value in summary],
        images=images,
    )


def batch_table(
    batches: Sequence[Mapping[str, Any]],
    kind: str,
    *,
    title: str,
    tz: tzinfo,
    generated_at: datetime,
    summary: Iterable[tuple[str, Any]] = (),
) -> ReportTable:
    """One row per batch summary from :func:`megg.metrics.summarize_batch`."""

    columns = BATCH_COLUMNS[kind]
    rows = []
    for batch in batches:
        values = dict(batch)
        values.update(
            {f"size_{name}": count for name, count in (batch.get("sizeCounts") or {}).items()}
        )
        rows.append(flatten_record(values, columns, tz))
    return ReportTable(
        title=title,
        columns=[column.label for column in columns],
        rows=rows,
        generated_at=generated_at,
        summary=[(label, str(value)) for label, value in summary],
    )


def metrics_table(
    metrics: Iterable[tuple[str, Any]],
    *,
    title: str,
    generated_at: datetime,
    subtitle: str | None = None,
    chart_png: bytes | None = None,
) -> ReportTable:
    return ReportTable(
        title=title,
        columns=["Metric", "Value"],
        rows=[[label, "" if value is None else str(value)] for label, value in metrics],
        generated_at=generated_at,
        variant="metrics",
        subtitle=subtitle,
        chart_png=chart_png,
    )


def collect_record_images(
    records: Sequence[Mapping[str, Any]],
    fetch: Callable[[Mapping[str, Any]], bytes],
    *,
    cancel: CancellationToken | None = None,
) -> list[RecordImage]:
    """Fetch one image per record; failures become per-record placeholders."""

    images: list[RecordImage] = []
    for record in records:
        check(cancel)
        try:
            data = fetch(record)
        except OperationCancelled:
            raise
        except LookupError:
            images.append(RecordImage())
            continue
        except Exception as exc:
            current_app.logger.warning(
                "Failed to load image for record %s: %s", record.get("id"), exc
            )
            images.append(RecordImage(error=str(exc) or exc.__class__.__name__))
            continue
        images.append(RecordImage(data=data))
    return images


def image_data_uri(data: bytes | None) -> str:
    if not data:
        return ""
    if data.startswith(b"\x89PNG"):
        mimetype = "image/png"
    elif data.startswith(b"GIF8"):
        mimetype = "image/gif"
    elif data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        mimetype = "image/webp"
    else:
        mimetype = "image/jpeg"
    return f"data:{mimetype};base64," + base64.b64encode(data).decode("ascii")


# ---------------------------------------------------------------------------
# Delimited text
# ---------------------------------------------------------------------------


def export_csv(table: ReportTable) -> bytes:
    """Return the table as UTF-8 CSV with a byte order mark for Excel."""

    buffer = io.StringIO(newline="")
    writer = csv.writer(buffer, quoting=csv.QUOTE_MINIMAL)
    for line in table.header:
        writer.writerow([line])
    writer.writerow([])
    writer.writerow(table.columns)
    writer.writerows(table.rows)
    return buffer.getvalue().encode("utf-8-sig")


# ---------------------------------------------------------------------------
# Spreadsheet
# ---------------------------------------------------------------------------

_SHEET_TITLE_INVALID = re.compile(r"[\[\]:*?/\\]")
_HEADER_FILL = PatternFill("solid", fgColor="1F4E79")


def export_xlsx(table: ReportTable) -> bytes:
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = _SHEET_TITLE_INVALID.sub(" ", table.title)[:31] or "Report"
    width = max(len(table.columns), 1)

    row_index = 1
    for position, line in enumerate(table.header):
        cell = sheet.cell(row=row_index, column=1, value=line)
        cell.font = Font(bold=position < len(ORGANIZATION_LINES), size=12 if position == 1 else 11)
        cell.alignment = Alignment(horizontal="center")
        if width > 1:
            sheet.merge_cells(start_row=row_index, start_column=1, end_row=row_index, end_column=width)
        row_index += 1

    row_index += 1
    sheet.cell(row=row_index, column=1, value=table.title).font = Font(bold=True, size=13)
    row_index += 1
    if table.subtitle:
        sheet.cell(row=row_index, column=1, value=table.subtitle)
        row_index += 1

    header_row = row_index
    for column_index, label in enumerate(table.columns, start=1):
        cell = sheet.cell(row=header_row, column=column_index, value=label)
        cell.font = Font(bold=True, color="FFFFFF")
        cell.fill = _HEADER_FILL
        cell.alignment = Alignment(horizontal="center")
    for values in table.rows:
        row_index += 1
        for column_index, value in enumerate(values, start=1):
            sheet.cell(row=row_index, column=column_index, value=value)
    sheet.freeze_panes = sheet.cell(row=header_row + 1, column=1)

    if table.summary:
        row_index += 2
        sheet.cell(row=row_index, column=1, value="Summary").font = Font(bold=True)
        for label, value in table.summary:
            row_index += 1
            sheet.cell(row=row_index, column=1, value=label)
            sheet.cell(row=row_index, column=2, value=value)

    for column_index in range(1, width + 1):
        lengths = [len(table.columns[column_index - 1])] if table.columns else [0]
        lengths.extend(
            len(values[column_index - 1])
            for values in table.rows
            if column_index <= len(values)
        )
        sheet.column_dimensions[get_column_letter(column_index)].width = min(
            max(max(lengths) + 2, XLSX_MIN_WIDTH), XLSX_MAX_WIDTH
        )

    output = io.BytesIO()
    workbook.save(output)
    return output.getvalue()


# ---------------------------------------------------------------------------
# Paginated document
# ---------------------------------------------------------------------------


def render_report_html(table: ReportTable) -> str:
    """Render the HTML that is converted into the PDF export."""

    entries = []
    for position, values in enumerate(table.rows):
        image = None
        if table.images is not None:
            image = table.images[position] if position < len(table.images) else RecordImage()
        entries.append(
            {
                "cells": values,
                "image_uri": image_data_uri(image.data) if image else "",
                "placeholder": image.placeholder if image else "",
            }
        )
    template = "report/records.html" if table.variant == "records" else "report/metrics.html"
    return render_template(
        template,
        table=table,
        header_lines=table.header,
        organization_lines=ORGANIZATION_LINES,
        footer=REPORT_FOOTER,
        entries=entries,
        show_images=table.images is not None,
        chart_uri=image_data_uri(table.chart_png),
    )


def export_pdf(table: ReportTable, base_url: str | None = None) -> bytes:
    return render_html_to_pdf(render_report_html(table), base_url=base_url)


# ---------------------------------------------------------------------------
# Word processor document
# ---------------------------------------------------------------------------


def _add_docx_image(cell, image: RecordImage) -> None:
    paragraph = cell.paragraphs[0]
    if image.data:
        try:
            paragraph.add_run().add_picture(io.BytesIO(image.data), width=Inches(1.2))
            return
        except Exception as exc:
            current_app.logger.warning("Unable to embed image in DOCX export: %s", exc)
            paragraph.text = IMAGE_PLACEHOLDER
            return
    paragraph.text = image.placeholder


def export_docx(table: ReportTable) -> bytes:
    document = Document()
    section = document.sections[0]

    for position, line in enumerate(table.header):
        paragraph = document.add_paragraph()
        paragraph.alignment = WD_ALIGN_PARAGRAPH.CENTER
        paragraph.paragraph_format.space_after = Pt(0)
        run = paragraph.add_run(line)
        run.bold = position < len(ORGANIZATION_LINES)
        run.font.size = Pt(13 if position == 1 else 10)

    document.add_heading(table.title, level=1)
    if table.subtitle:
        document.add_paragraph(table.subtitle)

    if table.summary:
        summary = document.add_table(rows=0, cols=2)
        summary.style = "Table Grid"
        for label, value in table.summary:
            cells = summary.add_row().cells
            cells[0].text = label
            cells[1].text = value
        document.add_paragraph()

    labels = list(table.columns)
    if table.images is not None:
        labels.append("Image")
    grid = document.add_table(rows=1, cols=len(labels))
    grid.style = "Table Grid"
    for cell, label in zip(grid.rows[0].cells, labels):
        cell.text = ""
        cell.paragraphs[0].add_run(label).bold = True

    for position, values in enumerate(table.rows):
        cells = grid.add_row().cells
        for cell, value in zip(cells, values):
            cell.text = value
        if table.images is not None:
            image = table.images[position] if position < len(table.images) else RecordImage()
            _add_docx_image(cells[-1], image)

    if table.chart_png:
        document.add_picture(io.BytesIO(table.chart_png), width=Inches(6))

    footer = section.footer.paragraphs[0]
    footer.text = REPORT_FOOTER
    footer.alignment = WD_ALIGN_PARAGRAPH.CENTER

    output = io.BytesIO()
    document.save(output)
    return output.getvalue()


# ---------------------------------------------------------------------------
# Image snapshot
# ---------------------------------------------------------------------------


def export_png(table: ReportTable, draw: Callable[[Any], None] | None = None) -> bytes:
    """Render the chart (or visible table rows) under the letterhead as PNG."""

    plt = charts.plt
    if plt is None:
        raise ExportError("Image exports require matplotlib to be installed.")

    fig = plt.figure(figsize=(10, 7.5))
    fig.text(0.5, 0.98, "\n".join(table.header), ha="center", va="top", fontsize=9)
    fig.text(0.5, 0.80, table.title, ha="center", va="top", fontsize=13, weight="bold")
    ax = fig.add_axes([0.07, 0.08, 0.86, 0.66])
    if draw is not None:
        draw(ax)
    else:
        ax.axis("off")
        visible = table.rows[:SNAPSHOT_ROWS]
        if visible:
            grid = ax.table(
                cellText=visible,
                colLabels=table.columns,
                loc="upper center",
                cellLoc="center",
            )
            grid.auto_set_font_size(False)
            grid.set_fontsize(8)
            grid.scale(1, 1.3)
        else:
            ax.text(0.5, 0.5, "No records to display", ha="center", va="center", color="#64748b")
    fig.text(0.5, 0.01, REPORT_FOOTER, ha="center", fontsize=7, color="#64748b")
    return charts.fig_to_png(fig)


def export_table(
    table: ReportTable,
    fmt: str,
    *,
    draw: Callable[[Any], None] | None = None,
    base_url: str | None = None,
) -> bytes:
    if fmt == "csv":
        return export_csv(table)
    if fmt == "xlsx":
        return export_xlsx(table)
    if fmt == "pdf":
        return export_pdf(table, base_url=base_url)
    if fmt == "docx":
        return export_docx(table)
    if fmt == "png":
        return export_png(table, draw=draw)
    raise ExportError(f"Unsupported format: {fmt}")
