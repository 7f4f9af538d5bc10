"""Append-only history containers for per-step diagnostics."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import pandas as pd
import pyarrow as pa


class ColumnarBuffer:
    """Column-oriented record buffer; columns appear as records introduce them."""

    def __init__(self, columns: Iterable[str] | None = None) -> None:
        self._columns: Dict[str, List[Any]] = {}
        self._column_order: List[str] = []
        self._row_count = 0
        if columns:
            for name in columns:
                self._columns[name] = []
                self._column_order.append(name)

    @property
    def row_count(self) -> int:
        return self._row_count

    def __len__(self) -> int:
        return self._row_count

    def columns(self) -> List[str]:
        return list(self._column_order)

    def append_row(self, record: Mapping[str, Any]) -> None:
        for key in record:
            if key not in self._columns:
                self._columns[key] = [None] * self._row_count
                self._column_order.append(key)
        for name in self._column_order:
            self._columns[name].append(record.get(name))
        self._row_count += 1

    def column(self, name: str) -> List[Any]:
        return list(self._columns[name])

    def to_records(self) -> List[Dict[str, Any]]:
        return [
            {name: self._columns[name][idx] for name in self._column_order}
            for idx in range(self._row_count)
        ]

    def to_table(self, ensure_columns: Iterable[str] | None = None) -> pa.Table:
        ensure_list = list(ensure_columns) if ensure_columns is not None else []
        ordered = ensure_list + [name for name in self._column_order if name not in set(ensure_list)]
        data = {name: self._columns.get(name, [None] * self._row_count) for name in ordered}
        return pa.Table.from_pydict(data)


@dataclass
class DiagnosticsHistory:
    """Immutable step records plus their flattened columnar view.

    Records are only ever appended.  ``dt_history`` keeps the accepted
    timesteps, which the adaptive controller uses as ``previous_dt``.
    """

    records: List[Any] = field(default_factory=list)
    dt_history: List[float] = field(default_factory=list)
    buffer: ColumnarBuffer = field(default_factory=ColumnarBuffer)

    def append(self, record: Any) -> None:
        self.records.append(record)
        self.buffer.append_row(record.to_record())
        if getattr(record, "converged", False) and getattr(record, "dt", None):
            self.dt_history.append(float(record.dt))

    def __len__(self) -> int:
        return len(self.records)

    @property
    def latest(self) -> Optional[Any]:
        return self.records[-1] if self.records else None

    @property
    def last_dt(self) -> Optional[float]:
        return self.dt_history[-1] if self.dt_history else None

    def snapshot(self) -> Tuple[Any, ...]:
        return tuple(self.records)

    def to_table(self) -> pa.Table:
        return self.buffer.to_table()

    def to_frame(self) -> pd.DataFrame:
        return self.buffer.to_table().to_pandas()


__all__ = ["ColumnarBuffer", "DiagnosticsHistory"]
