import csv
import io
import json

import pytest

from conftest import make_cost
from llm_meter.errors import UnsupportedExportFormatError
from llm_meter.export import CSV_HEADER, export_costs, to_csv, to_json
from llm_meter.models import TimeWindow
from llm_meter.storage import SnapshotStore


class TestExport:
    def test_empty_json_is_empty_array(self) -> "None":
        assert json.loads(to_json([])) == []
        assert to_json([]).strip() == "[]"

    def test_empty_csv_is_header_only(self) -> "None":
        assert to_csv([]) == ",".join(CSV_HEADER) + "\n"

    def test_json_fields(self) -> "None":
        [row] = json.loads(to_json([make_cost(input_cost=0.5, output_cost=0.25)]))
        assert row == {
            "provider": "openai",
            "model": "gpt-4o",
            "window": "7d",
            "input_cost": 0.5,
            "output_cost": 0.25,
            "total_cost": 0.75,
            "currency": "USD",
            "timestamp": "2026-01-05T00:00:00+00:00",
        }

    def test_csv_escapes_fields(self) -> "None":
        model = 'ft:gpt-4o,"custom"'
        text = to_csv([make_cost(model=model, input_cost=0.1, output_cost=0.2)])

        rows = list(csv.reader(io.StringIO(text)))
        assert rows[0] == CSV_HEADER
        assert rows[1][1] == model
        assert rows[1][3:6] == ["0.10000000", "0.20000000", "0.30000000"]

    def test_export_reads_store_without_mutating(
        self,
        store: "SnapshotStore",
    ) -> "None":
        store.replace(
            "openai",
            TimeWindow.SEVEN_DAYS,
            [],
            [make_cost(), make_cost(model="gpt-4o-mini")],
        )

        text = export_costs(store, "CSV")

        assert len(text.splitlines()) == 3
        assert store.count("openai", TimeWindow.SEVEN_DAYS) == (0, 2)

    def test_unknown_format_rejected(self, store: "SnapshotStore") -> "None":
        with pytest.raises(UnsupportedExportFormatError):
            export_costs(store, "xml")
