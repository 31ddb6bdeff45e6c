"""
Export Service - Multi-format report export.

Renders a ReportResult as PDF, HTML, Markdown, JSON, CSV, XML, YAML or
plain text.
"""

import csv
import html
import io
import json
import logging
import xml.etree.ElementTree as ET
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Union

import yaml
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4, landscape, legal, letter
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from ..errors import ExportError, ExportFormatError, ExportRenderError
from ..models import ExportFormat, ReportResult, to_jsonable, utcnow

logger = logging.getLogger(__name__)

FILE_EXTENSIONS: Dict[ExportFormat, str] = {
    ExportFormat.PDF: "pdf",
    ExportFormat.EXCEL: "xlsx",
    ExportFormat.CSV: "csv",
    ExportFormat.JSON: "json",
    ExportFormat.XML: "xml",
    ExportFormat.HTML: "html",
    ExportFormat.YAML: "yaml",
    ExportFormat.TEXT: "txt",
    ExportFormat.MARKDOWN: "md",
}

PAGE_SIZES = {"letter": letter, "a4": A4, "legal": legal}


@dataclass
class ExportOptions:
    """Options for export operation."""
    title: Optional[str] = None
    generated_at: Optional[datetime] = None
    parameters: Dict[str, Any] = field(default_factory=dict)
    include_metadata: bool = True
    pretty_print: bool = True
    page_size: str = "letter"  # For PDF: letter, a4, legal
    orientation: str = "portrait"  # portrait, landscape


@dataclass
class ExportResult:
    """Result of an export operation."""
    format: ExportFormat
    content: Union[str, bytes]
    filename: str
    content_type: str
    size_bytes: int
    exported_at: datetime = field(default_factory=utcnow)

    def as_bytes(self) -> bytes:
        if isinstance(self.content, bytes):
            return self.content
        return self.content.encode("utf-8")


def _columns(rows: Sequence[Dict[str, Any]]) -> List[str]:
    """Union of row keys in first-seen order."""
    columns: List[str] = []
    for row in rows:
        for key in row:
            if key not in columns:
                columns.append(key)
    return columns


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


# ============================================
# Format Exporters
# ============================================

class BaseExporter(ABC):
    """Abstract base class for format exporters."""

    @property
    @abstractmethod
    def format(self) -> ExportFormat:
        """Return the export format."""
        pass

    @property
    @abstractmethod
    def content_type(self) -> str:
        """Return the MIME content type."""
        pass

    @property
    def file_extension(self) -> str:
        return FILE_EXTENSIONS[self.format]

    @abstractmethod
    def render(self, result: ReportResult, options: ExportOptions) -> Union[str, bytes]:
        pass

    def export(self, result: ReportResult, options: ExportOptions) -> ExportResult:
        """Render the result and wrap it with file metadata."""
        content = self.render(result, options)
        size = len(content) if isinstance(content, bytes) else len(content.encode("utf-8"))
        stamp = (options.generated_at or result.generated_at).strftime("%Y%m%d_%H%M%S")
        base = (options.title or result.report_name or "report").replace(" ", "_")
        return ExportResult(
            format=self.format,
            content=content,
            filename=f"{base}_{stamp}.{self.file_extension}",
            content_type=self.content_type,
            size_bytes=size,
        )

    def _title(self, result: ReportResult, options: ExportOptions) -> str:
        return options.title or result.report_name or "Report"

    def _generated(self, result: ReportResult, options: ExportOptions) -> str:
        return (options.generated_at or result.generated_at).strftime("%Y-%m-%d %H:%M:%S")


class JSONExporter(BaseExporter):
    """Export a result to JSON."""

    @property
    def format(self) -> ExportFormat:
        return ExportFormat.JSON

    @property
    def content_type(self) -> str:
        return "application/json"

    def render(self, result: ReportResult, options: ExportOptions) -> str:
        export_data: Any = result.data
        if options.include_metadata:
            export_data = {
                "report": self._title(result, options),
                "report_id": result.report_id,
                "generated_at": (options.generated_at or result.generated_at).isoformat(),
                "parameters": options.parameters or result.parameters,
                "row_count": result.row_count,
                "data": result.data,
                "visualizations": result.visualizations,
            }
        indent = 2 if options.pretty_print else None
        return json.dumps(to_jsonable(export_data), indent=indent, default=str)


class CSVExporter(BaseExporter):
    """Export datasets to CSV, one section per dataset."""

    @property
    def format(self) -> ExportFormat:
        return ExportFormat.CSV

    @property
    def content_type(self) -> str:
        return "text/csv"

    def render(self, result: ReportResult, options: ExportOptions) -> str:
        output = io.StringIO()
        multiple = len(result.data) > 1

        for index, (name, rows) in enumerate(result.data.items()):
            if multiple:
                if index:
                    output.write("\n")
                output.write(f"# {name}\n")
            columns = _columns(rows)
            if not columns:
                continue
            writer = csv.DictWriter(output, fieldnames=columns, lineterminator="\n")
            writer.writeheader()
            for row in rows:
                writer.writerow({c: _cell(row.get(c)) for c in columns})

        return output.getvalue()


class MarkdownExporter(BaseExporter):
    """Export a result to Markdown."""

    @property
    def format(self) -> ExportFormat:
        return ExportFormat.MARKDOWN

    @property
    def content_type(self) -> str:
        return "text/markdown"

    def render(self, result: ReportResult, options: ExportOptions) -> str:
        lines = [f"# {self._title(result, options)}", ""]

        if options.include_metadata:
            lines.append(f"**Generated:** {self._generated(result, options)}")
            lines.append(f"**Rows:** {result.row_count}")
            for key, value in (options.parameters or result.parameters).items():
                lines.append(f"**{key}:** {_cell(value)}")
            lines.extend(["", "---", ""])

        for name, rows in result.data.items():
            lines.append(f"## {name}")
            lines.append("")
            lines.extend(self._table_to_md(rows))

        return "\n".join(lines)

    def _table_to_md(self, rows: List[Dict[str, Any]]) -> List[str]:
        """Convert list of dicts to markdown table."""
        headers = _columns(rows)
        if not headers:
            return ["_No rows_", ""]

        lines = [
            "| " + " | ".join(headers) + " |",
            "| " + " | ".join(["---"] * len(headers)) + " |",
        ]
        for row in rows:
            values = [_cell(row.get(h)).replace("|", "\\|") for h in headers]
            lines.append("| " + " | ".join(values) + " |")

        lines.append("")
        return lines


class HTMLExporter(BaseExporter):
    """Export a result to HTML."""

    @property
    def format(self) -> ExportFormat:
        return ExportFormat.HTML

    @property
    def content_type(self) -> str:
        return "text/html"

    def render(self, result: ReportResult, options: ExportOptions) -> str:
        title = html.escape(self._title(result, options))

        html_parts = [
            "<!DOCTYPE html>",
            "<html>",
            "<head>",
            f"<title>{title}</title>",
            "<style>",
            "body { font-family: Arial, sans-serif; margin: 40px; }",
            "table { border-collapse: collapse; width: 100%; margin-bottom: 24px; }",
            "th, td { border: 1px solid #ddd; padding: 8px; text-align: left; }",
            "th { background-color: #2f5597; color: white; }",
            "tr:nth-child(even) { background-color: #f2f2f2; }",
            ".metadata { color: #666; font-size: 0.9em; margin-bottom: 20px; }",
            "</style>",
            "</head>",
            "<body>",
            f"<h1>{title}</h1>",
        ]

        if options.include_metadata:
            html_parts.append('<div class="metadata">')
            html_parts.append(f"<p><strong>Generated:</strong> {self._generated(result, options)}</p>")
            html_parts.append(f"<p><strong>Rows:</strong> {result.row_count}</p>")
            html_parts.append("</div>")

        for name, rows in result.data.items():
            html_parts.append(f"<h2>{html.escape(name)}</h2>")
            html_parts.extend(self._table_to_html(rows))

        html_parts.extend(["</body>", "</html>"])
        return "\n".join(html_parts)

    def _table_to_html(self, rows: List[Dict[str, Any]]) -> List[str]:
        """Convert list of dicts to HTML table."""
        headers = _columns(rows)
        if not headers:
            return ["<p>No rows</p>"]

        lines = ["<table>", "<thead><tr>"]
        lines.extend(f"<th>{html.escape(h)}</th>" for h in headers)
        lines.append("</tr></thead><tbody>")

        for row in rows:
            lines.append("<tr>")
            lines.extend(f"<td>{html.escape(_cell(row.get(h)))}</td>" for h in headers)
            lines.append("</tr>")

        lines.extend(["</tbody>", "</table>"])
        return lines


class TextExporter(BaseExporter):
    """Export a result to plain text."""

    @property
    def format(self) -> ExportFormat:
        return ExportFormat.TEXT

    @property
    def content_type(self) -> str:
        return "text/plain"

    def render(self, result: ReportResult, options: ExportOptions) -> str:
        title = self._title(result, options)
        lines = [title, "=" * len(title), ""]

        if options.include_metadata:
            lines.append(f"Generated: {self._generated(result, options)}")
            lines.append(f"Rows: {result.row_count}")
            lines.extend(["", "-" * 40, ""])

        for name, rows in result.data.items():
            lines.append(f"{name} ({len(rows)} rows)")
            for row in rows:
                lines.append("  " + ", ".join(f"{k}={_cell(v)}" for k, v in row.items()))
            lines.append("")

        return "\n".join(lines)


class YAMLExporter(BaseExporter):
    """Export a result to YAML."""

    @property
    def format(self) -> ExportFormat:
        return ExportFormat.YAML

    @property
    def content_type(self) -> str:
        return "application/x-yaml"

    def render(self, result: ReportResult, options: ExportOptions) -> str:
        document: Dict[str, Any] = {"data": to_jsonable(result.data)}
        if options.include_metadata:
            document = {
                "report": self._title(result, options),
                "generated_at": (options.generated_at or result.generated_at).isoformat(),
                "parameters": to_jsonable(options.parameters or result.parameters),
                "row_count": result.row_count,
                **document,
            }
        return yaml.safe_dump(document, sort_keys=False, default_flow_style=False)


class XMLExporter(BaseExporter):
    """Export a result to XML."""

    @property
    def format(self) -> ExportFormat:
        return ExportFormat.XML

    @property
    def content_type(self) -> str:
        return "application/xml"

    def render(self, result: ReportResult, options: ExportOptions) -> str:
        root = ET.Element("report", {
            "id": result.report_id,
            "name": self._title(result, options),
            "rowCount": str(result.row_count),
        })

        if options.include_metadata:
            ET.SubElement(root, "generatedAt").text = (
                options.generated_at or result.generated_at
            ).isoformat()
            params = ET.SubElement(root, "parameters")
            for key, value in (options.parameters or result.parameters).items():
                ET.SubElement(params, "parameter", {"name": str(key)}).text = _cell(value)

        for name, rows in result.data.items():
            dataset = ET.SubElement(root, "dataset", {"name": name})
            for row in rows:
                row_el = ET.SubElement(dataset, "row")
                for key, value in row.items():
                    ET.SubElement(row_el, "field", {"name": str(key)}).text = _cell(value)

        body = ET.tostring(root, encoding="unicode")
        return '<?xml version="1.0" encoding="UTF-8"?>\n' + body


class PDFExporter(BaseExporter):
    """Export a result to PDF with reportlab."""

    @property
    def format(self) -> ExportFormat:
        return ExportFormat.PDF

    @property
    def content_type(self) -> str:
        return "application/pdf"

    def render(self, result: ReportResult, options: ExportOptions) -> bytes:
        buffer = io.BytesIO()
        pagesize = PAGE_SIZES.get(options.page_size.lower(), letter)
        if options.orientation == "landscape":
            pagesize = landscape(pagesize)

        doc = SimpleDocTemplate(
            buffer,
            pagesize=pagesize,
            rightMargin=0.5 * inch,
            leftMargin=0.5 * inch,
            topMargin=0.5 * inch,
            bottomMargin=0.5 * inch,
            title=self._title(result, options),
        )
        styles = getSampleStyleSheet()
        elements = [Paragraph(html.escape(self._title(result, options)), styles["Title"])]

        if options.include_metadata:
            elements.append(Paragraph(
                f"Generated {self._generated(result, options)} | {result.row_count} rows",
                styles["Normal"],
            ))
        elements.append(Spacer(1, 12))

        for name, rows in result.data.items():
            elements.append(Paragraph(html.escape(name), styles["Heading2"]))
            headers = _columns(rows)
            if not headers:
                elements.append(Paragraph("No rows", styles["Normal"]))
                continue
            table = Table(
                [headers] + [[_cell(row.get(h)) for h in headers] for row in rows],
                repeatRows=1,
            )
            table.setStyle(TableStyle([
                ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#2f5597")),
                ("TEXTCOLOR", (0, 0), (-1, 0), colors.white),
                ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
                ("FONTSIZE", (0, 0), (-1, -1), 8),
                ("GRID", (0, 0), (-1, -1), 0.25, colors.grey),
                ("ROWBACKGROUNDS", (0, 1), (-1, -1), [colors.white, colors.HexColor("#f2f2f2")]),
            ]))
            elements.append(table)
            elements.append(Spacer(1, 12))

        doc.build(elements)
        return buffer.getvalue()


# ============================================
# Export Service
# ============================================

class ExportService:
    """
    Service for exporting report results in various formats.

    Provides:
    - Multi-format export
    - Batch export to several formats
    - Export history tracking
    """

    def __init__(self, max_history: int = 500):
        self._exporters: Dict[ExportFormat, BaseExporter] = {}
        for exporter in (
            JSONExporter(),
            CSVExporter(),
            MarkdownExporter(),
            HTMLExporter(),
            TextExporter(),
            YAMLExporter(),
            XMLExporter(),
            PDFExporter(),
        ):
            self._exporters[exporter.format] = exporter

        self._history: List[Dict[str, Any]] = []
        self._max_history = max_history

        logger.info("ExportService initialized")

    @property
    def supported_formats(self) -> List[ExportFormat]:
        """Return list of supported export formats."""
        return list(self._exporters.keys())

    def register_exporter(self, exporter: BaseExporter) -> None:
        """Register a custom exporter, replacing any for the same format."""
        self._exporters[exporter.format] = exporter
        logger.info(f"Registered exporter for format: {exporter.format.value}")

    @staticmethod
    def normalize_format(format: Union[ExportFormat, str]) -> ExportFormat:
        if isinstance(format, ExportFormat):
            return format
        try:
            return ExportFormat(str(format).lower())
        except ValueError:
            raise ExportFormatError(f"Unsupported format: {format}")

    @staticmethod
    def file_extension(format: Union[ExportFormat, str]) -> str:
        try:
            return FILE_EXTENSIONS[ExportService.normalize_format(format)]
        except ExportFormatError:
            return "bin"

    def export(
        self,
        result: ReportResult,
        format: Union[ExportFormat, str] = ExportFormat.JSON,
        options: Optional[ExportOptions] = None,
    ) -> ExportResult:
        """
        Export a result to the specified format.

        Raises:
            ExportFormatError: If format is not supported
            ExportRenderError: If rendering fails
        """
        format = self.normalize_format(format)

        if format not in self._exporters:
            raise ExportFormatError(f"No exporter registered for format: {format.value}")

        options = options or ExportOptions()

        try:
            exported = self._exporters[format].export(result, options)
        except Exception as e:
            logger.error(f"Export failed: {e}")
            raise ExportRenderError(f"Failed to export to {format.value}: {e}") from e

        self._history.append({
            "format": format.value,
            "report_id": result.report_id,
            "filename": exported.filename,
            "size_bytes": exported.size_bytes,
            "exported_at": exported.exported_at.isoformat(),
        })
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history:]

        logger.info(f"Exported {result.report_id} to {format.value}: {exported.filename}")
        return exported

    def export_many(
        self,
        result: ReportResult,
        formats: Sequence[Union[ExportFormat, str]],
        options: Optional[ExportOptions] = None,
    ) -> Dict[ExportFormat, ExportResult]:
        """Export to several formats; a failing format is logged and skipped."""
        results = {}

        for format in formats:
            try:
                normalized = self.normalize_format(format)
                results[normalized] = self.export(result, normalized, options)
            except ExportError as e:
                logger.warning(f"Batch export failed for {format}: {e}")

        return results

    def get_history(self, limit: int = 100) -> List[Dict[str, Any]]:
        return self._history[-limit:]

    def clear_history(self) -> None:
        self._history = []
