"""
mapprior.stats.schemes.map_prior.data
=====================================

Historical trial summaries the MAP prior is derived from.

One row per study, with columns depending on the outcome:

- ``binomial``: ``study``, ``n`` (patients), ``r`` (responders)
- ``gaussian``: ``study``, ``y`` (observed mean), ``y_se`` (its standard
  error) and optionally ``n``
- ``poisson``: ``study``, ``n`` (exposure), ``y`` (event count)

Examples
--------
>>> from mapprior.stats.schemes.map_prior.data import GroupedDataSet
>>> data = GroupedDataSet.from_records(
...     [{"study": "A", "n": 107, "r": 23}, {"study": "B", "n": 44, "r": 12}],
...     outcome="binomial",
... )
>>> data.n_studies
2
>>> data.column("r").tolist()
[23, 12]
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Sequence, Tuple

import numpy as np
import polars as pl

from mapprior.backends.polars.io import PathLike, TableSource, source_for

OUTCOMES: Dict[str, Tuple[str, ...]] = {
    "binomial": ("n", "r"),
    "gaussian": ("y", "y_se"),
    "poisson": ("n", "y"),
}


def _fail(column: str, message: str) -> None:
    raise ValueError(f"Column {column!r}: {message}")


@dataclass(frozen=True)
class GroupedDataSet:
    """
    Validated per-study summaries.

    Attributes:
        frame: polars frame with a ``study`` column and the outcome columns
        outcome: ``"binomial"``, ``"gaussian"`` or ``"poisson"``
    """

    frame: pl.DataFrame
    outcome: str

    def __post_init__(self) -> None:
        if self.outcome not in OUTCOMES:
            raise ValueError(
                f"Unknown outcome {self.outcome!r}; use one of {sorted(OUTCOMES)}"
            )
        df = self.frame
        required = ("study",) + OUTCOMES[self.outcome]
        for col in required:
            if col not in df.columns:
                _fail(col, f"required for {self.outcome} data")
        if df.height == 0:
            raise ValueError("Grouped data needs at least one study")
        if df["study"].null_count():
            _fail("study", "missing study labels")
        for col in OUTCOMES[self.outcome] + (("n",) if "n" in df.columns else ()):
            if df[col].null_count():
                _fail(col, "missing values")
            values = df[col].cast(pl.Float64).to_numpy()
            if not np.all(np.isfinite(values)):
                _fail(col, "non-finite values")

        cast: List[pl.Expr] = [pl.col("study").cast(pl.Utf8)]
        if self.outcome == "binomial":
            n = df["n"].cast(pl.Float64).to_numpy()
            r = df["r"].cast(pl.Float64).to_numpy()
            if np.any(n <= 0) or np.any(n != np.round(n)):
                _fail("n", "sample sizes must be positive integers")
            if np.any(r < 0) or np.any(r != np.round(r)) or np.any(r > n):
                _fail("r", "responders must be integers between 0 and n")
            cast += [pl.col("n").cast(pl.Int64), pl.col("r").cast(pl.Int64)]
        elif self.outcome == "gaussian":
            if np.any(df["y_se"].cast(pl.Float64).to_numpy() <= 0):
                _fail("y_se", "standard errors must be positive")
            cast += [pl.col("y").cast(pl.Float64), pl.col("y_se").cast(pl.Float64)]
            if "n" in df.columns:
                if np.any(df["n"].cast(pl.Float64).to_numpy() <= 0):
                    _fail("n", "sample sizes must be positive")
                cast.append(pl.col("n").cast(pl.Float64))
        else:
            y = df["y"].cast(pl.Float64).to_numpy()
            if np.any(df["n"].cast(pl.Float64).to_numpy() <= 0):
                _fail("n", "exposures must be positive")
            if np.any(y < 0) or np.any(y != np.round(y)):
                _fail("y", "event counts must be non-negative integers")
            cast += [pl.col("n").cast(pl.Float64), pl.col("y").cast(pl.Int64)]
        object.__setattr__(self, "frame", df.with_columns(cast))

    @classmethod
    def from_records(
        cls, records: Sequence[Mapping[str, Any]], outcome: str
    ) -> "GroupedDataSet":
        return cls(frame=pl.DataFrame(list(records)), outcome=outcome)

    @classmethod
    def from_source(cls, source: TableSource, outcome: str) -> "GroupedDataSet":
        return cls(frame=source.read(), outcome=outcome)

    @classmethod
    def read(cls, path: PathLike, outcome: str) -> "GroupedDataSet":
        """Load from a CSV or Parquet file."""
        return cls.from_source(source_for(path), outcome)

    @property
    def n_studies(self) -> int:
        return self.frame.height

    @property
    def studies(self) -> List[str]:
        return self.frame["study"].to_list()

    def has(self, column: str) -> bool:
        return column in self.frame.columns

    def column(self, name: str) -> np.ndarray:
        return self.frame[name].to_numpy()

    def raw_estimates(self) -> np.ndarray:
        """Per-study estimates on the natural scale: r/n, y or y/n."""
        if self.outcome == "binomial":
            return self.column("r") / self.column("n")
        if self.outcome == "gaussian":
            return self.column("y").astype(float)
        return self.column("y") / self.column("n")
