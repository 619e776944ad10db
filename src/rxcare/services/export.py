"""
Intervention Export

Renders a tenant's filtered interventions as a downloadable document:
- csv
- json
- excel (SpreadsheetML 2003 workbook)
- pdf (plain single-font text pages)
"""

import csv
import io
import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable
from xml.sax.saxutils import escape

import structlog

from rxcare.audit.service import AuditService, RequestMeta
from rxcare.collaborators import PatientDirectory, UserDirectory
from rxcare.db.store import InterventionStore, SortSpec
from rxcare.errors import ValidationError
from rxcare.models.audit import SYSTEM_TARGET
from rxcare.models.base import utcnow
from rxcare.models.intervention import ClinicalIntervention
from rxcare.services.base import service_errors
from rxcare.services.reporting import build_filter
from rxcare.tenancy import scope_for

logger = structlog.get_logger(__name__)

EXPORT_COLUMNS = (
    ("intervention_number", "Intervention Number"),
    ("patient_name", "Patient Name"),
    ("category", "Category"),
    ("priority", "Priority"),
    ("status", "Status"),
    ("issue_description", "Issue Description"),
    ("identified_by", "Identified By"),
    ("identified_date", "Identified Date"),
    ("completed_date", "Completed Date"),
    ("patient_response", "Patient Response"),
    ("strategies_count", "Strategies Count"),
    ("assignments_count", "Assignments Count"),
)

EXPORT_FORMATS = {
    "csv": ("text/csv", "csv"),
    "json": ("application/json", "json"),
    "excel": ("application/vnd.ms-excel", "xls"),
    "pdf": ("application/pdf", "pdf"),
}


@dataclass
class ExportResult:
    content: bytes
    media_type: str
    filename: str


# =============================================================================
# Renderers
# =============================================================================

def render_csv(rows: list[dict[str, Any]]) -> bytes:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow([title for _, title in EXPORT_COLUMNS])
    for row in rows:
        writer.writerow([row[key] for key, _ in EXPORT_COLUMNS])
    return buffer.getvalue().encode("utf-8")


def render_json(rows: list[dict[str, Any]]) -> bytes:
    return json.dumps(rows, indent=2, default=str).encode("utf-8")


def render_spreadsheet(rows: list[dict[str, Any]]) -> bytes:
    """SpreadsheetML 2003 workbook with one worksheet."""

    def cell(value: Any) -> str:
        kind = "Number" if isinstance(value, (int, float)) and not isinstance(value, bool) else "String"
        text = "" if value is None else str(value)
        return f'<Cell><Data ss:Type="{kind}">{escape(text)}</Data></Cell>'

    out = [
        '<?xml version="1.0" encoding="UTF-8"?>',
        '<?mso-application progid="Excel.Sheet"?>',
        '<Workbook xmlns="urn:schemas-microsoft-com:office:spreadsheet" '
        'xmlns:ss="urn:schemas-microsoft-com:office:spreadsheet">',
        '<Worksheet ss:Name="Interventions"><Table>',
        "<Row>" + "".join(cell(title) for _, title in EXPORT_COLUMNS) + "</Row>",
    ]
    for row in rows:
        out.append("<Row>" + "".join(cell(row[key]) for key, _ in EXPORT_COLUMNS) + "</Row>")
    out.append("</Table></Worksheet></Workbook>")
    return "\n".join(out).encode("utf-8")


def _pdf_text(text: str) -> str:
    return text.replace("\\", "\\\\").replace("(", "\\(").replace(")", "\\)")


def render_pdf(rows: list[dict[str, Any]], title: str = "Clinical Interventions",
               lines_per_page: int = 48) -> bytes:
    """
    Text-only PDF, Helvetica 9pt, one line per intervention field group.

    Characters outside Latin-1 are replaced.
    """
    lines = [title, ""]
    for row in rows:
        lines.append(
            f"{row['intervention_number']}  {row['patient_name']}  "
            f"{row['category']} / {row['priority']} / {row['status']}"
        )
        lines.append(
            f"    identified {row['identified_date']} by {row['identified_by']}, "
            f"completed {row['completed_date'] or '-'}, response {row['patient_response']}"
        )
        lines.append(f"    {row['issue_description'][:110]}")
    pages = [lines[i:i + lines_per_page] for i in range(0, len(lines), lines_per_page)] or [[title]]

    # 1 catalog, 2 pages tree, 3 font, then a page/content pair per page
    objects: list[bytes] = []
    kids = []
    for index, page_lines in enumerate(pages):
        page_id, content_id = 4 + index * 2, 5 + index * 2
        kids.append(f"{page_id} 0 R")
        body = ["BT", "/F1 9 Tf", "11 TL", "40 800 Td"]
        for line in page_lines:
            body.append(f"({_pdf_text(line)}) Tj T*")
        body.append("ET")
        stream = "\n".join(body).encode("latin-1", errors="replace")
        objects.append(
            f"<< /Type /Page /Parent 2 0 R /MediaBox [0 0 595 842] "
            f"/Resources << /Font << /F1 3 0 R >> >> /Contents {content_id} 0 R >>".encode()
        )
        objects.append(
            f"<< /Length {len(stream)} >>\nstream\n".encode() + stream + b"\nendstream"
        )
    head = [
        b"<< /Type /Catalog /Pages 2 0 R >>",
        f"<< /Type /Pages /Kids [{' '.join(kids)}] /Count {len(pages)} >>".encode(),
        b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>",
    ]
    objects = head + objects

    out = bytearray(b"%PDF-1.4\n")
    offsets = []
    for number, obj in enumerate(objects, start=1):
        offsets.append(len(out))
        out += f"{number} 0 obj\n".encode() + obj + b"\nendobj\n"
    xref = len(out)
    out += f"xref\n0 {len(objects) + 1}\n0000000000 65535 f \n".encode()
    for offset in offsets:
        out += f"{offset:010d} 00000 n \n".encode()
    out += f"trailer\n<< /Size {len(objects) + 1} /Root 1 0 R >>\nstartxref\n{xref}\n%%EOF\n".encode()
    return bytes(out)


_RENDERERS = {
    "csv": render_csv,
    "json": render_json,
    "excel": render_spreadsheet,
    "pdf": render_pdf,
}


# =============================================================================
# Service
# =============================================================================

class ExportService:
    def __init__(
        self,
        store: InterventionStore,
        patients: PatientDirectory,
        users: UserDirectory,
        audit: AuditService,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.patients = patients
        self.users = users
        self.audit = audit
        self.clock = clock

    async def _row(self, item: ClinicalIntervention, names: dict[str, str]) -> dict[str, Any]:
        if item.patient_id not in names:
            patient = await self.patients.find_by_id(item.patient_id, item.tenant_id)
            names[item.patient_id] = patient.full_name if patient else "Unknown"
        if item.identified_by not in names:
            user = await self.users.find_by_id(item.identified_by)
            names[item.identified_by] = user.display_name if user else "Unknown"
        return {
            "intervention_number": item.intervention_number,
            "patient_name": names[item.patient_id],
            "category": item.category.value,
            "priority": item.priority.value,
            "status": item.status.value,
            "issue_description": item.issue_description,
            "identified_by": names[item.identified_by],
            "identified_date": item.identified_date.date().isoformat(),
            "completed_date": item.completed_at.date().isoformat() if item.completed_at else "",
            "patient_response": item.outcomes.patient_response.value if item.outcomes else "N/A",
            "strategies_count": len(item.strategies),
            "assignments_count": len(item.assignments),
        }

    async def export(
        self,
        tenant_id: str,
        filters: dict[str, Any] | None = None,
        format: str = "csv",
        user_id: str | None = None,
        request: RequestMeta | None = None,
    ) -> ExportResult:
        """
        Export every intervention matching the filters.

        Raises:
            ValidationError: Unsupported format or bad filter value
        """
        scope = scope_for(tenant_id)
        if format not in EXPORT_FORMATS:
            raise ValidationError(
                f"Unsupported export format: {format!r}",
                field="format",
            )
        query = build_filter(filters or {})

        async with service_errors("export_interventions", tenant_id=scope.tenant_id, format=format):
            items = await self.store.find(scope, query, sort=SortSpec("identified_date", descending=True))
            names: dict[str, str] = {}
            rows = [await self._row(item, names) for item in items]
            content = _RENDERERS[format](rows)

        media_type, extension = EXPORT_FORMATS[format]
        filename = f"clinical-interventions-{self.clock():%Y%m%d}.{extension}"
        logger.info(
            "Interventions exported",
            tenant_id=scope.tenant_id,
            format=format,
            rows=len(rows),
        )
        if user_id:
            await self.audit.log_access(
                SYSTEM_TARGET, user_id, scope.tenant_id, "export",
                request=request,
                details={"format": format, "rows": len(rows)},
            )
        return ExportResult(content=content, media_type=media_type, filename=filename)
