"""
data.py — Mortality tables and GP design sets
=============================================

Input contract
--------------
A long table with one row per (country, sex, age, year) and at least the
columns

    Age, Year, Deaths, Exposure     (Country and Sex are optional)

Header matching is case/whitespace insensitive; ``Dx`` is accepted for deaths
and ``Exposures`` / ``Etr`` for exposure. ``load_mortality_table`` returns a
validated frame with canonical lower-case columns

    country, sex, age, year, deaths, exposure, rate, y

where ``rate = deaths / exposure`` and ``y = log(rate)``.

Any record that would make log(rate) undefined (zero or negative exposure,
zero or negative deaths, missing values) aborts the load with a
``MortalityDataError`` naming the offending record. Nothing is imputed.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

import numpy as np
import pandas as pd

REQUIRED_COLUMNS = ("age", "year", "deaths", "exposure")
KEY_COLUMNS = ["country", "sex", "age", "year"]

DEFAULT_COUNTRY = "ALL"
DEFAULT_SEX = "Total"

_ALIASES = {
    "country": "country",
    "pop": "country",
    "population": "country",
    "sex": "sex",
    "gender": "sex",
    "age": "age",
    "year": "year",
    "deaths": "deaths",
    "dx": "deaths",
    "exposure": "exposure",
    "exposures": "exposure",
    "etr": "exposure",
    "rate": "rate",
    "mx": "rate",
}


class MortalityDataError(ValueError):
    """Raised when a mortality table cannot be used for fitting."""


@dataclass(frozen=True)
class MortalityRecord:
    country: str
    sex: str
    age: int
    year: int
    deaths: float
    exposure: float

    @property
    def rate(self) -> float:
        return self.deaths / self.exposure

    @property
    def log_rate(self) -> float:
        return float(np.log(self.rate))


@dataclass(frozen=True)
class DesignSet:
    """
    Covariates and response for a GP fit.

    Attributes
    ----------
    X : np.ndarray
        (n, 2) array of (age, year) pairs.
    y : np.ndarray
        (n,) log-mortality aligned row by row with X.
    """

    X: np.ndarray
    y: np.ndarray

    def __post_init__(self) -> None:
        X = np.asarray(self.X, dtype=float)
        y = np.asarray(self.y, dtype=float).reshape(-1)
        if X.ndim != 2:
            raise ValueError(f"X must be 2D (n, d), got shape {X.shape}.")
        if X.shape[0] != y.shape[0]:
            raise ValueError(
                f"X has {X.shape[0]} rows but y has {y.shape[0]} values."
            )
        if X.shape[0] == 0:
            raise ValueError("Design set is empty.")
        if not (np.isfinite(X).all() and np.isfinite(y).all()):
            raise ValueError("Design set must contain finite values.")
        X.setflags(write=False)
        y.setflags(write=False)
        object.__setattr__(self, "X", X)
        object.__setattr__(self, "y", y)

    @property
    def n(self) -> int:
        return int(self.X.shape[0])

    @property
    def ages(self) -> np.ndarray:
        return self.X[:, 0]

    @property
    def years(self) -> np.ndarray:
        return self.X[:, 1]


def _norm(s: str) -> str:
    """Normalize header tokens for robust matching."""
    return (
        str(s)
        .strip()
        .lower()
        .replace(" ", "")
        .replace("\t", "")
        .replace("\n", "")
        .replace("-", "")
        .replace("_", "")
    )


def _describe(row: pd.Series) -> str:
    return (
        f"country={row['country']}, sex={row['sex']}, "
        f"age={row['age']}, year={row['year']}"
    )


def _first_bad(df: pd.DataFrame, mask: pd.Series) -> str:
    return _describe(df.loc[mask].iloc[0])


def _canonical_columns(df: pd.DataFrame) -> pd.DataFrame:
    rename = {}
    for col in df.columns:
        key = _norm(col)
        if key in _ALIASES and _ALIASES[key] not in rename.values():
            rename[col] = _ALIASES[key]
    out = df.rename(columns=rename)
    return out[[c for c in out.columns if c in set(_ALIASES.values())]]


def load_mortality_table(df: pd.DataFrame) -> pd.DataFrame:
    """
    Validate a deaths/exposure table and add ``rate`` and ``y = log(rate)``.

    A ``rate`` column in the input is ignored and recomputed from deaths and
    exposure. Rows are sorted by (country, sex, age, year).
    """
    if not isinstance(df, pd.DataFrame):
        raise TypeError("df must be a pandas DataFrame.")

    out = _canonical_columns(df).copy()
    missing = [c for c in REQUIRED_COLUMNS if c not in out.columns]
    if missing:
        raise MortalityDataError(
            f"Missing required column(s) {missing}; got {list(df.columns)}."
        )

    if "country" not in out.columns:
        out["country"] = DEFAULT_COUNTRY
    if "sex" not in out.columns:
        out["sex"] = DEFAULT_SEX
    out["country"] = out["country"].astype(str).str.strip()
    out["sex"] = out["sex"].astype(str).str.strip()

    for c in REQUIRED_COLUMNS:
        out[c] = pd.to_numeric(out[c], errors="coerce")

    bad = out["age"].isna() | out["year"].isna()
    if bad.any():
        idx = out.index[bad][0]
        raise MortalityDataError(
            f"Missing or non-numeric age/year in row {idx} "
            f"(record {_first_bad(out, bad)})."
        )

    bad = ((out["age"] % 1) != 0) | ((out["year"] % 1) != 0)
    if bad.any():
        raise MortalityDataError(
            f"age and year must be integers; offending record {_first_bad(out, bad)}."
        )
    out["age"] = out["age"].astype(int)
    out["year"] = out["year"].astype(int)

    bad = ~np.isfinite(out["deaths"]) | ~np.isfinite(out["exposure"])
    if bad.any():
        raise MortalityDataError(
            f"Missing or non-finite deaths/exposure for record {_first_bad(out, bad)}."
        )
    bad = out["exposure"] <= 0
    if bad.any():
        raise MortalityDataError(
            f"Exposure must be > 0; offending record {_first_bad(out, bad)}."
        )
    bad = out["deaths"] < 0
    if bad.any():
        raise MortalityDataError(
            f"Deaths must be >= 0; offending record {_first_bad(out, bad)}."
        )
    bad = out["deaths"] == 0
    if bad.any():
        raise MortalityDataError(
            "Zero deaths give rate 0 and an undefined log-rate; "
            f"offending record {_first_bad(out, bad)}."
        )

    dup = out.duplicated(subset=KEY_COLUMNS, keep=False)
    if dup.any():
        raise MortalityDataError(
            f"Duplicated record {_first_bad(out, dup)}."
        )

    out["deaths"] = out["deaths"].astype(float)
    out["exposure"] = out["exposure"].astype(float)
    out["rate"] = out["deaths"] / out["exposure"]
    out["y"] = np.log(out["rate"])

    out = out.sort_values(KEY_COLUMNS).reset_index(drop=True)
    return out[KEY_COLUMNS + ["deaths", "exposure", "rate", "y"]]


def read_mortality_csv(path: str | Path, **read_kwargs) -> pd.DataFrame:
    """Read a long-format CSV and validate it with ``load_mortality_table``."""
    return load_mortality_table(pd.read_csv(path, **read_kwargs))


def records_from_frame(df: pd.DataFrame) -> List[MortalityRecord]:
    return [
        MortalityRecord(
            country=str(r.country),
            sex=str(r.sex),
            age=int(r.age),
            year=int(r.year),
            deaths=float(r.deaths),
            exposure=float(r.exposure),
        )
        for r in df.itertuples(index=False)
    ]


def frame_from_records(records: Iterable[MortalityRecord]) -> pd.DataFrame:
    rows = [
        {
            "country": r.country,
            "sex": r.sex,
            "age": r.age,
            "year": r.year,
            "deaths": r.deaths,
            "exposure": r.exposure,
        }
        for r in records
    ]
    if not rows:
        raise MortalityDataError("No records given.")
    return load_mortality_table(pd.DataFrame(rows))


def select(
    df: pd.DataFrame,
    *,
    country: Optional[str] = None,
    sex: Optional[str] = None,
    ages: Optional[Tuple[int, int]] = None,
    years: Optional[Tuple[int, int]] = None,
) -> pd.DataFrame:
    """
    Filter a validated table by population and inclusive age/year ranges.
    """
    out = df
    if country is not None:
        out = out[out["country"] == country]
    if sex is not None:
        out = out[out["sex"] == sex]
    if ages is not None:
        out = out[(out["age"] >= ages[0]) & (out["age"] <= ages[1])]
    if years is not None:
        out = out[(out["year"] >= years[0]) & (out["year"] <= years[1])]
    if out.empty:
        raise MortalityDataError(
            "No rows left after filtering "
            f"(country={country}, sex={sex}, ages={ages}, years={years})."
        )
    return out.reset_index(drop=True)


def design_from_frame(df: pd.DataFrame) -> DesignSet:
    """
    Build the (age, year) -> log-rate design set from a validated table.

    The table must hold a single population: each (age, year) appears once.
    """
    for c in ("age", "year", "y"):
        if c not in df.columns:
            raise MortalityDataError(
                f"Column '{c}' missing; run load_mortality_table first."
            )
    dup = df.duplicated(subset=["age", "year"], keep=False)
    if dup.any():
        raise MortalityDataError(
            "Several populations share the same (age, year); select one "
            f"country/sex first (e.g. {_first_bad(df, dup)})."
        )
    X = df[["age", "year"]].to_numpy(dtype=float)
    y = df["y"].to_numpy(dtype=float)
    return DesignSet(X=X, y=y)


def to_surface(
    df: pd.DataFrame, value: str = "rate"
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Pivot one population into a rectangular (ages * years) surface.

    Returns (ages, years, surface) with surface[a, t]. Missing (age, year)
    cells raise ``MortalityDataError``.
    """
    if value not in df.columns:
        raise MortalityDataError(f"Column '{value}' not in table.")
    if df.duplicated(subset=["age", "year"]).any():
        raise MortalityDataError(
            "Several populations share the same (age, year); select one first."
        )
    ages = np.arange(df["age"].min(), df["age"].max() + 1, dtype=int)
    years = np.arange(df["year"].min(), df["year"].max() + 1, dtype=int)
    pivot = df.pivot(index="age", columns="year", values=value).reindex(
        index=ages, columns=years
    )
    surface = pivot.to_numpy(dtype=float)
    if np.isnan(surface).any():
        a_idx, t_idx = np.nonzero(np.isnan(surface))
        cells = [(int(ages[i]), int(years[j])) for i, j in zip(a_idx, t_idx)]
        shown = ", ".join(f"(age={a}, year={t})" for a, t in cells[:5])
        more = "" if len(cells) <= 5 else f" and {len(cells) - 5} more"
        raise MortalityDataError(f"Missing cells {shown}{more}.")
    return ages, years, surface
