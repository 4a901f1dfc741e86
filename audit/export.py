"""
audit/export.py -- CSV rendering of audit entries.

Column order and quoting are part of the export contract: an unquoted header
line, then one row per entry with every field quoted.

User-controlled text (user agents, ids echoed from requests) may start with a
character that spreadsheet applications treat as a formula. Such cells are
prefixed with a tab so they open as plain text (CWE-1236).
"""

import csv
import io

from audit.models import AuditLogEntry

EXPORT_HEADER = "ID,Entity Type,Entity ID,Action,Performed By,Timestamp,IP Address,User Agent"

_FORMULA_PREFIXES = ("=", "+", "-", "@")


def _sanitize_csv_cell(value) -> str:
    text = "" if value is None else str(value)
    if text.startswith(_FORMULA_PREFIXES):
        return "\t" + text
    return text


def to_csv(entries: list[AuditLogEntry]) -> str:
    """Render entries as CSV text with a trailing newline after every row."""
    buf = io.StringIO()
    buf.write(EXPORT_HEADER + "\n")
    writer = csv.writer(buf, quoting=csv.QUOTE_ALL, lineterminator="\n")
    for e in entries:
        writer.writerow(
            [
                _sanitize_csv_cell(e.id),
                _sanitize_csv_cell(e.entity_type),
                _sanitize_csv_cell(e.entity_id),
                _sanitize_csv_cell(e.action),
                _sanitize_csv_cell(e.performed_by),
                _sanitize_csv_cell(e.timestamp),
                _sanitize_csv_cell(e.ip_address),
                _sanitize_csv_cell(e.user_agent),
            ]
        )
    return buf.getvalue()
