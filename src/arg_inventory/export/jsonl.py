from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from ..normalize.frame import Frame, json_value


def stable_json_dumps(obj: Any) -> str:
    """
    Dump JSON with sort_keys=True and compact separators for stable output.
    """
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def write_jsonl(frame: Frame, path: Path) -> None:
    """
    Write one JSON object per frame row, keyed by field name, in row order.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        for record in frame.records():
            f.write(stable_json_dumps({k: json_value(v) for k, v in record.items()}))
            f.write("\n")
