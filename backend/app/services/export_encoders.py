"""
Submission Export Encoders

Serialise a stream of submissions into CSV, JSON or XLSX.

All encoders consume the record stream incrementally. CSV and JSON never
hold more than one row in memory (CSV rows are spooled to a temporary file
until the header is final); XLSX has to know every column before the sheet
can be written, so it buffers the flattened rows and should only be used for
capped row counts.

Values a format cannot represent are replaced with a placeholder and
reported as warnings; they never abort an export.
"""

from __future__ import annotations

import asyncio
import csv
import io
import json
import math
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, AsyncIterable, BinaryIO, Optional, Sequence

from openpyxl import Workbook
from openpyxl.cell.cell import ERROR_CODES, ILLEGAL_CHARACTERS_RE, WriteOnlyCell

from app.core.exceptions import EncodingError, UnsupportedFormatError, ValidationError
from app.services.snapshot_service import derive_snapshot_name
from app.services.submission_repository import SubmissionRecord


class ExportFormat(str, Enum):
    CSV = "csv"
    JSON = "json"
    XLSX = "xlsx"

    @classmethod
    def parse(cls, value: "ExportFormat | str | None") -> "ExportFormat":
        if isinstance(value, ExportFormat):
            return value
        text = str(value or "").strip().lower()
        text = _FORMAT_ALIASES.get(text, text)
        try:
            return cls(text)
        except ValueError:
            supported = ", ".join(f.value for f in cls)
            raise UnsupportedFormatError(f"Unsupported export format '{value}'. Supported: {supported}") from None


_FORMAT_ALIASES = {"tabular-binary": "xlsx", "excel": "xlsx"}


class CsvTemplate(str, Enum):
    """Row layout for tabular (CSV and XLSX) exports.

    ``unflattened`` writes one row per submission and indexes list items
    (``grid.0.name``). The ``flattened*`` layouts unwind lists into one row
    per item (``grid.name``); values repeated from the parent submission are
    either left blank after their first row or filled in on every row.
    """

    UNFLATTENED = "unflattened"
    FLATTENED_WITH_BLANK_OUT = "flattenedWithBlankOut"
    FLATTENED_WITH_FILLED = "flattenedWithFilled"

    @property
    def unwinds(self) -> bool:
        return self != CsvTemplate.UNFLATTENED

    @classmethod
    def parse(cls, value: "CsvTemplate | str | None") -> "CsvTemplate":
        if isinstance(value, CsvTemplate):
            return value
        text = str(value or "").strip().lower()
        if not text:
            return cls.UNFLATTENED
        for member in cls:
            if member.value.lower() == text:
                return member
        supported = ", ".join(t.value for t in cls)
        raise ValidationError(f"Unsupported export template '{value}'. Supported: {supported}")


MEDIA_TYPES = {
    ExportFormat.CSV: "text/csv",
    ExportFormat.JSON: "application/json",
    ExportFormat.XLSX: "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
}

METADATA_COLUMNS = (
    "form.confirmationId",
    "form.version",
    "form.createdAt",
    "form.submitter",
    "form.status",
)

PLACEHOLDER = "[unrepresentable:{type}]"

# Excel's per-cell character limit.
XLSX_MAX_CELL_CHARS = 32767


def export_filename(form_name: str, fmt: ExportFormat | str) -> str:
    fmt = ExportFormat.parse(fmt)
    stem = derive_snapshot_name(form_name or "") or "form"
    return f"{stem}_submissions.{fmt.value}"


@dataclass(frozen=True)
class EncodingWarning:
    submission_id: Optional[str]
    field: Optional[str]
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"submission_id": self.submission_id, "field": self.field, "message": self.message}


@dataclass
class EncodeResult:
    rows: int = 0
    bytes_written: int = 0
    warnings: list[EncodingWarning] = field(default_factory=list)


def flatten(value: Any, prefix: str = "") -> dict[str, Any]:
    """Flatten nested mappings / lists into ``parent.child`` / ``list.0`` keys.

    Key order follows the source data, so the result is deterministic for a
    given submission.
    """
    out: dict[str, Any] = {}
    if isinstance(value, dict):
        for key, child in value.items():
            out.update(flatten(child, f"{prefix}.{key}" if prefix else str(key)))
    elif isinstance(value, (list, tuple)):
        for index, child in enumerate(value):
            out.update(flatten(child, f"{prefix}.{index}" if prefix else str(index)))
    else:
        out[prefix] = value
    return out


UnwoundCell = tuple[str, Any]


def unwind(value: Any, prefix: str = "", source: str = "") -> list[dict[str, UnwoundCell]]:
    """Expand lists into one row per item.

    Each row maps a column (``grid.name``) to ``(source path, value)``. The
    source path keeps list indexes (``grid.1.name``) so a value repeated
    across rows can be told apart from a fresh one. Sibling lists multiply.
    Address lists stay indexed on a single row.
    """
    if isinstance(value, dict):
        rows: list[dict[str, UnwoundCell]] = [{}]
        for key, child in value.items():
            column = f"{prefix}.{key}" if prefix else str(key)
            origin = f"{source}.{key}" if source else str(key)
            child_rows = unwind(child, column, origin)
            rows = [{**row, **extra} for row in rows for extra in child_rows]
        return rows
    if isinstance(value, (list, tuple)):
        if not value:
            return [{}]
        if "address" in prefix.rsplit(".", 1)[-1]:
            return [{column: (source + column[len(prefix):], v) for column, v in flatten(value, prefix).items()}]
        rows = []
        for index, item in enumerate(value):
            rows.extend(unwind(item, prefix, f"{source}.{index}" if source else str(index)))
        return rows
    return [{prefix: (source, value)}]


def _iso(value: date | datetime | time) -> str:
    if isinstance(value, datetime) and value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.isoformat()


def metadata_values(record: SubmissionRecord) -> dict[str, Any]:
    return {
        "form.confirmationId": record.confirmation_id,
        "form.version": record.version,
        "form.createdAt": _iso(record.created_at) if record.created_at else None,
        "form.submitter": record.submitter,
        "form.status": record.status,
    }


class _CountingSink:
    def __init__(self, sink: BinaryIO):
        self.sink = sink
        self.bytes_written = 0

    def write(self, data: bytes) -> int:
        self.sink.write(data)
        self.bytes_written += len(data)
        return len(data)


class SubmissionEncoder(ABC):
    """Base class: one encoder instance per export."""

    format: ExportFormat

    def __init__(
        self,
        *,
        columns: Sequence[str] = (),
        include_metadata: bool = False,
        template: CsvTemplate | str | None = None,
    ):
        self.seed_columns = list(columns)
        self.include_metadata = include_metadata
        self.template = CsvTemplate.parse(template)

    @property
    def media_type(self) -> str:
        return MEDIA_TYPES[self.format]

    @abstractmethod
    def convert(self, value: Any, path: str) -> Any:
        """Convert one leaf value or raise EncodingError."""

    def safe_convert(self, record: SubmissionRecord, path: str, value: Any, warnings: list[EncodingWarning]) -> Any:
        try:
            return self.convert(value, path)
        except EncodingError as e:
            warnings.append(EncodingWarning(submission_id=record.id, field=path, message=e.detail))
            return PLACEHOLDER.format(type=e.value_type or type(value).__name__)

    def flat_row(self, record: SubmissionRecord, warnings: list[EncodingWarning]) -> dict[str, Any]:
        flat: dict[str, Any] = {}
        if self.include_metadata:
            for path, value in metadata_values(record).items():
                flat[path] = self.safe_convert(record, path, value, warnings)
        for path, value in flatten(record.data).items():
            flat[path] = self.safe_convert(record, path, value, warnings)
        return flat

    def flat_rows(self, record: SubmissionRecord, warnings: list[EncodingWarning]) -> list[dict[str, Any]]:
        """Tabular rows for one submission, laid out per ``self.template``."""
        if not self.template.unwinds:
            return [self.flat_row(record, warnings)]

        blank_out = self.template == CsvTemplate.FLATTENED_WITH_BLANK_OUT
        meta: dict[str, UnwoundCell] = (
            {path: (path, value) for path, value in metadata_values(record).items()} if self.include_metadata else {}
        )
        converted: dict[str, Any] = {}
        rows: list[dict[str, Any]] = []
        for index, cells in enumerate(unwind(record.data)):
            row: dict[str, Any] = {}
            for column, (source, value) in {**meta, **cells}.items():
                if source in converted:
                    if blank_out:
                        continue
                else:
                    converted[source] = self.safe_convert(record, source, value, warnings)
                row[column] = converted[source]
            # Blanking can empty a cross-product row entirely; keep the first.
            if row or index == 0:
                rows.append(row)
        return rows

    def initial_columns(self) -> list[str]:
        columns = list(METADATA_COLUMNS) if self.include_metadata else []
        columns.extend(c for c in self.seed_columns if c not in columns)
        return columns

    @abstractmethod
    async def encode(self, records: AsyncIterable[SubmissionRecord], sink: BinaryIO) -> EncodeResult:
        """Consume ``records`` and write the encoded artifact to ``sink``."""


class CsvSubmissionEncoder(SubmissionEncoder):
    format = ExportFormat.CSV

    # Rows spill to disk past this many bytes.
    SPOOL_MAX_BYTES = 8 * 1024 * 1024

    def convert(self, value: Any, path: str) -> str:
        if value is None:
            return ""
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, str):
            return value
        if isinstance(value, (int, float, Decimal)):
            return str(value)
        if isinstance(value, (datetime, date, time)):
            return _iso(value)
        raise EncodingError(
            f"{type(value).__name__} values cannot be written to CSV",
            field=path,
            value_type=type(value).__name__,
        )

    @staticmethod
    def _line(row: Sequence[Any]) -> bytes:
        buf = io.StringIO()
        csv.writer(buf).writerow(row)
        return buf.getvalue().encode("utf-8")

    async def encode(self, records: AsyncIterable[SubmissionRecord], sink: BinaryIO) -> EncodeResult:
        result = EncodeResult()
        out = _CountingSink(sink)
        columns: dict[str, None] = dict.fromkeys(self.initial_columns())

        with tempfile.SpooledTemporaryFile(
            max_size=self.SPOOL_MAX_BYTES, mode="w+", newline="", encoding="utf-8"
        ) as spool:
            writer = csv.writer(spool)
            async for record in records:
                for flat in self.flat_rows(record, result.warnings):
                    for key in flat:
                        if key not in columns:
                            columns[key] = None
                    # Columns only ever grow, so every spooled row is a prefix
                    # of the final header.
                    writer.writerow([flat.get(c, "") for c in columns])
                result.rows += 1

            header = list(columns)
            out.write(self._line(header))

            spool.seek(0)
            for index, row in enumerate(csv.reader(spool)):
                if len(row) < len(header):
                    row.extend([""] * (len(header) - len(row)))
                out.write(self._line(row))
                if index % 1000 == 999:
                    await asyncio.sleep(0)

        result.bytes_written = out.bytes_written
        return result


class JsonSubmissionEncoder(SubmissionEncoder):
    format = ExportFormat.JSON

    def convert(self, value: Any, path: str) -> Any:
        if value is None or isinstance(value, (bool, int, str)):
            return value
        if isinstance(value, float):
            if not math.isfinite(value):
                raise EncodingError(f"{value} is not valid JSON", field=path, value_type="float")
            return value
        if isinstance(value, Decimal):
            return str(value)
        if isinstance(value, (datetime, date, time)):
            return _iso(value)
        raise EncodingError(
            f"{type(value).__name__} values cannot be written to JSON",
            field=path,
            value_type=type(value).__name__,
        )

    def _safe_tree(self, record: SubmissionRecord, value: Any, path: str, warnings: list[EncodingWarning]) -> Any:
        if isinstance(value, dict):
            return {
                str(k): self._safe_tree(record, v, f"{path}.{k}" if path else str(k), warnings)
                for k, v in value.items()
            }
        if isinstance(value, (list, tuple)):
            return [self._safe_tree(record, v, f"{path}.{i}" if path else str(i), warnings) for i, v in enumerate(value)]
        return self.safe_convert(record, path, value, warnings)

    def document(self, record: SubmissionRecord, warnings: list[EncodingWarning]) -> dict[str, Any]:
        return {
            "id": record.id,
            "confirmationId": record.confirmation_id,
            "version": record.version,
            "createdAt": _iso(record.created_at) if record.created_at else None,
            "submitter": record.submitter,
            "status": record.status,
            "data": self._safe_tree(record, record.data, "", warnings),
        }

    async def encode(self, records: AsyncIterable[SubmissionRecord], sink: BinaryIO) -> EncodeResult:
        result = EncodeResult()
        out = _CountingSink(sink)

        out.write(b"[")
        async for record in records:
            doc = self.document(record, result.warnings)
            chunk = json.dumps(doc, ensure_ascii=False, allow_nan=False, separators=(",", ":"))
            out.write((b"," if result.rows else b"") + chunk.encode("utf-8"))
            result.rows += 1
        out.write(b"]")

        result.bytes_written = out.bytes_written
        return result


class XlsxSubmissionEncoder(SubmissionEncoder):
    format = ExportFormat.XLSX

    SHEET_TITLE = "Submissions"

    def convert(self, value: Any, path: str) -> Any:
        if value is None or isinstance(value, (bool, int, float)):
            if isinstance(value, float) and not math.isfinite(value):
                raise EncodingError(f"{value} cannot be stored in a spreadsheet cell", field=path, value_type="float")
            return value
        if isinstance(value, Decimal):
            return float(value)
        if isinstance(value, datetime):
            if value.tzinfo is not None:
                # Excel has no timezone support; store UTC wall time.
                return value.astimezone(timezone.utc).replace(tzinfo=None)
            return value
        if isinstance(value, (date, time)):
            return value
        if isinstance(value, str):
            if ILLEGAL_CHARACTERS_RE.search(value):
                raise EncodingError("string contains control characters", field=path, value_type="str")
            if len(value) > XLSX_MAX_CELL_CHARS:
                raise EncodingError("string exceeds the spreadsheet cell limit", field=path, value_type="str")
            return value
        raise EncodingError(
            f"{type(value).__name__} values cannot be written to a spreadsheet",
            field=path,
            value_type=type(value).__name__,
        )

    @staticmethod
    def _cell(sheet, value: Any) -> Any:
        """Strings openpyxl would read as formulas or error codes are stored as literal text."""
        if isinstance(value, str) and (value.startswith("=") or value in ERROR_CODES):
            cell = WriteOnlyCell(sheet, value=value)
            cell.data_type = "s"
            return cell
        return value

    async def encode(self, records: AsyncIterable[SubmissionRecord], sink: BinaryIO) -> EncodeResult:
        result = EncodeResult()
        columns: dict[str, None] = dict.fromkeys(self.initial_columns())
        rows: list[dict[str, Any]] = []

        async for record in records:
            for flat in self.flat_rows(record, result.warnings):
                for key in flat:
                    if key not in columns:
                        columns[key] = None
                rows.append(flat)
            result.rows += 1

        header = list(columns)
        workbook = Workbook(write_only=True)
        sheet = workbook.create_sheet(title=self.SHEET_TITLE)
        sheet.append([self._cell(sheet, c) for c in header])
        for index, flat in enumerate(rows):
            sheet.append([self._cell(sheet, flat.get(c)) for c in header])
            if index % 1000 == 999:
                await asyncio.sleep(0)

        buffer = io.BytesIO()
        workbook.save(buffer)
        out = _CountingSink(sink)
        out.write(buffer.getvalue())

        result.bytes_written = out.bytes_written
        return result


_ENCODERS: dict[ExportFormat, type[SubmissionEncoder]] = {
    ExportFormat.CSV: CsvSubmissionEncoder,
    ExportFormat.JSON: JsonSubmissionEncoder,
    ExportFormat.XLSX: XlsxSubmissionEncoder,
}


def encoder_for(
    fmt: ExportFormat | str,
    *,
    columns: Sequence[str] = (),
    include_metadata: bool = False,
    template: CsvTemplate | str | None = None,
) -> SubmissionEncoder:
    return _ENCODERS[ExportFormat.parse(fmt)](columns=columns, include_metadata=include_metadata, template=template)
