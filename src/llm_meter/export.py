import csv
import io
import json
from typing import Sequence

from llm_meter.errors import UnsupportedExportFormatError
from llm_meter.models import CostRecord
from llm_meter.storage import SnapshotStore

CSV_HEADER = [
    "provider",
    "model",
    "window",
    "input_cost",
    "output_cost",
    "total_cost",
    "currency",
    "timestamp",
]


def _row(record: "CostRecord") -> "dict[str, object]":
    return {
        "provider": record.provider,
        "model": record.model,
        "window": record.window.label,
        "input_cost": record.input_cost,
        "output_cost": record.output_cost,
        "total_cost": record.total_cost,
        "currency": record.currency,
        "timestamp": record.timestamp.isoformat(),
    }


def to_json(records: "Sequence[CostRecord]") -> "str":
    return json.dumps([_row(r) for r in records], indent=2)


def to_csv(records: "Sequence[CostRecord]") -> "str":
    """
    renders cost rows as CSV with a header line. Costs keep eight
    decimals, text fields are quoted only when needed.
    """
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for r in records:
        writer.writerow(
            [
                r.provider,
                r.model,
                r.window.label,
                f"{r.input_cost:.8f}",
                f"{r.output_cost:.8f}",
                f"{r.total_cost:.8f}",
                r.currency,
                r.timestamp.isoformat(),
            ]
        )
    return buf.getvalue()


def export_costs(store: "SnapshotStore", fmt: "str") -> "str":
    """
    serializes every stored cost row. Reads only, never writes.
    """
    fmt = fmt.strip().lower()
    if fmt == "json":
        return to_json(store.read_all())
    if fmt == "csv":
        return to_csv(store.read_all())
    raise UnsupportedExportFormatError(fmt)
