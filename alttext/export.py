"""CSV export of the result list."""

from __future__ import annotations

import csv
import io
from decimal import Decimal
from typing import Iterable

from .schema import ProcessedItem

CSV_HEADERS = ["ID", "Type", "Alt Text", "Keywords", "Taxonomy", "Confidence"]
EXPORT_FILENAME = "alt-text-export.csv"


def export_csv(items: Iterable[ProcessedItem]) -> str:
    """Serialize items to CSV text, one row per item, rows joined by ``\\n``.

    Text columns are always double-quoted (embedded quotes doubled); the
    position and the confidence percentage are written bare.
    """
    buf = io.StringIO()
    buf.write(",".join(CSV_HEADERS) + "\n")
    writer = csv.writer(buf, quoting=csv.QUOTE_NONNUMERIC, lineterminator="\n")
    for item in items:
        writer.writerow([
            item.page_number,
            item.type,
            item.alt_text,
            ", ".join(item.keywords),
            " > ".join(item.taxonomy),
            # Decimal keeps the two places and counts as numeric (unquoted).
            Decimal(f"{item.confidence * 100:.2f}"),
        ])
    return buf.getvalue().rstrip("\n")
