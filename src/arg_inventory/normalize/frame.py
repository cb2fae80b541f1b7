from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

PORTAL_LINK_TITLE = "View in Azure Portal"

FIELD_TYPES = ("string", "int", "float", "bool", "time")


@dataclass(frozen=True)
class DataLink:
    title: str
    url: str
    target_blank: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {"title": self.title, "url": self.url, "targetBlank": self.target_blank}


@dataclass(frozen=True)
class Field:
    name: str
    type: str = "string"
    values: Tuple[Any, ...] = ()
    links: Tuple[DataLink, ...] = ()


@dataclass(frozen=True)
class Frame:
    name: str
    fields: Tuple[Field, ...] = ()
    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def row_count(self) -> int:
        return len(self.fields[0].values) if self.fields else 0

    def field_names(self) -> List[str]:
        return [f.name for f in self.fields]

    def rows(self) -> List[Tuple[Any, ...]]:
        return list(zip(*(f.values for f in self.fields))) if self.fields else []

    def records(self) -> List[Dict[str, Any]]:
        names = self.field_names()
        return [dict(zip(names, row)) for row in self.rows()]


def add_config_links(frame: Frame, url: str, title: str = PORTAL_LINK_TITLE) -> Frame:
    """
    Return a copy of the frame where every field carries a single portal link.
    """
    link = DataLink(title=title, url=url, target_blank=True)
    return replace(frame, fields=tuple(replace(f, links=(link,)) for f in frame.fields))


def _arrow_type(pa: Any, field_type: str) -> Any:
    if field_type == "int":
        return pa.int64()
    if field_type == "float":
        return pa.float64()
    if field_type == "bool":
        return pa.bool_()
    if field_type == "time":
        return pa.timestamp("ms", tz="UTC")
    return pa.string()


def _arrow_metadata(f: Field) -> Optional[Dict[bytes, bytes]]:
    if not f.links:
        return None
    return {b"links": json.dumps([link.to_dict() for link in f.links]).encode("utf-8")}


def frame_to_arrow(frame: Frame) -> Any:
    """
    Convert a Frame into a pyarrow.Table. Portal links are kept as per-field
    metadata under the 'links' key; frame meta goes to schema metadata.
    """
    from ..export.parquet import require_pyarrow

    pa = require_pyarrow()
    arrow_fields = [
        pa.field(f.name, _arrow_type(pa, f.type), nullable=True, metadata=_arrow_metadata(f)) for f in frame.fields
    ]
    schema = pa.schema(
        arrow_fields,
        metadata={b"name": frame.name.encode("utf-8"), b"meta": json.dumps(frame.meta, default=str).encode("utf-8")},
    )
    arrays = [pa.array(list(f.values), type=_arrow_type(pa, f.type)) for f in frame.fields]
    return pa.Table.from_arrays(arrays, schema=schema)


def json_value(value: Any) -> Any:
    """
    JSON-friendly form of a frame cell.
    """
    if isinstance(value, datetime):
        return value.isoformat()
    return value
