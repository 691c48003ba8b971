"""
mapprior.backends.polars.io
===========================

Pluggable persistence of tabular data via **sinks/sources**.

- Historical trial summaries in (CSV or Parquet file -> `pl.DataFrame`)
- Ledger frames, study summaries and operating-characteristic grids out

This module contains no statistical semantics, just I/O.

Doctest (smoke):
>>> import polars as pl
>>> from mapprior.backends.polars.io import ParquetFileSink, ParquetFileSource
>>> df = pl.DataFrame({"study": ["A"], "n": [20], "r": [4]})
>>> ParquetFileSink("_tmp.parquet").write(df)  # doctest: +SKIP
>>> _ = ParquetFileSource("_tmp.parquet").read()  # doctest: +SKIP
"""

from __future__ import annotations
import os
from typing import Protocol, Union

import polars as pl

PathLike = Union[str, "os.PathLike[str]"]


class TableSink(Protocol):
    """A write-only sink: DataFrame -> storage."""
    def write(self, df: pl.DataFrame) -> None: ...


class TableSource(Protocol):
    """A read-only source: storage -> DataFrame."""
    def read(self) -> pl.DataFrame: ...


class ParquetFileSink:
    def __init__(self, path: PathLike) -> None:
        self.path = path
    def write(self, df: pl.DataFrame) -> None:
        df.write_parquet(self.path)


class CsvFileSink:
    def __init__(self, path: PathLike) -> None:
        self.path = path
    def write(self, df: pl.DataFrame) -> None:
        df.write_csv(self.path)


class ParquetFileSource:
    def __init__(self, path: PathLike) -> None:
        self.path = path
    def read(self) -> pl.DataFrame:
        return pl.read_parquet(self.path)


class CsvFileSource:
    def __init__(self, path: PathLike) -> None:
        self.path = path
    def read(self) -> pl.DataFrame:
        return pl.read_csv(self.path)


def source_for(path: PathLike) -> TableSource:
    """Pick a source by file extension (``.csv`` or ``.parquet``/``.pq``)."""
    ext = os.path.splitext(os.fspath(path))[1].lower()
    if ext == ".csv":
        return CsvFileSource(path)
    if ext in (".parquet", ".pq"):
        return ParquetFileSource(path)
    raise ValueError(f"Unsupported table format: {ext or path!r}")


def sink_for(path: PathLike) -> TableSink:
    """Pick a sink by file extension (``.csv`` or ``.parquet``/``.pq``)."""
    ext = os.path.splitext(os.fspath(path))[1].lower()
    if ext == ".csv":
        return CsvFileSink(path)
    if ext in (".parquet", ".pq"):
        return ParquetFileSink(path)
    raise ValueError(f"Unsupported table format: {ext or path!r}")
