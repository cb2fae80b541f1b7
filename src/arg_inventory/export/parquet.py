from __future__ import annotations

from pathlib import Path
from typing import Any

from ..logging import get_logger
from ..normalize.frame import Frame, frame_to_arrow

LOG = get_logger(__name__)


class ParquetNotAvailable(RuntimeError):
    pass


def require_pyarrow() -> Any:
    try:
        import pyarrow as pa  # type: ignore
    except ImportError as e:  # pragma: no cover
        raise ParquetNotAvailable(
            "pyarrow is required for Arrow/Parquet output. Install with: pip install .[parquet]"
        ) from e
    return pa


def write_parquet(frame: Frame, path: Path) -> None:
    """
    Write a frame to Parquet. Portal links travel as per-field metadata.
    """
    require_pyarrow()
    import pyarrow.parquet as pq  # type: ignore

    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        table = frame_to_arrow(frame)
    except Exception as exc:
        LOG.error(
            "Frame failed Arrow conversion",
            extra={"step": "export", "phase": "error", "artifact": "parquet", "ref_id": frame.name, "error": str(exc)},
        )
        raise
    pq.write_table(table, path)
