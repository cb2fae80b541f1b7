from __future__ import annotations

import csv
from pathlib import Path

from ..normalize.frame import Frame, json_value


def write_csv(frame: Frame, path: Path) -> None:
    """
    Write a CSV file with the frame's field names as header. Nulls become empty cells.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8", newline="") as f:
        writer = csv.writer(f)
        writer.writerow(frame.field_names())
        for row in frame.rows():
            writer.writerow(["" if v is None else json_value(v) for v in row])
