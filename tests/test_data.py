from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from gpmort.data import (
    DesignSet,
    MortalityDataError,
    MortalityRecord,
    _norm,
    design_from_frame,
    frame_from_records,
    load_mortality_table,
    read_mortality_csv,
    records_from_frame,
    select,
    to_surface,
)


def _raw(**overrides) -> pd.DataFrame:
    base = {
        "Country": ["FRA", "FRA", "FRA", "FRA"],
        "Sex": ["Male"] * 4,
        "Age": [60, 60, 61, 61],
        "Year": [2000, 2001, 2000, 2001],
        "Deaths": [100.0, 95.0, 120.0, 110.0],
        "Exposure": [10000.0, 10000.0, 10000.0, 10000.0],
    }
    base.update(overrides)
    return pd.DataFrame(base)


def test__norm_normalizes_tokens():
    assert _norm(" Year ") == "year"
    assert _norm("Expo_sure\n") == "exposure"


def test_load_mortality_table_adds_rate_and_log_rate():
    df = load_mortality_table(_raw())
    assert list(df.columns) == [
        "country", "sex", "age", "year", "deaths", "exposure", "rate", "y",
    ]
    assert np.allclose(df["rate"], df["deaths"] / df["exposure"])
    assert np.allclose(df["y"], np.log(df["rate"]))
    assert df["age"].dtype.kind == "i" and df["year"].dtype.kind == "i"


def test_load_mortality_table_accepts_aliases_and_defaults():
    raw = pd.DataFrame(
        {"AGE": [70], "year": [1990], "Dx": [5], "Exposures": [500.0], "Rate": [99.0]}
    )
    df = load_mortality_table(raw)
    assert df.loc[0, "country"] == "ALL"
    assert df.loc[0, "sex"] == "Total"
    # provided rate is recomputed from deaths / exposure
    assert df.loc[0, "rate"] == pytest.approx(0.01)


def test_load_mortality_table_missing_column():
    with pytest.raises(MortalityDataError, match="exposure"):
        load_mortality_table(_raw().drop(columns=["Exposure"]))


@pytest.mark.parametrize(
    "column, values, pattern",
    [
        ("Exposure", [10000.0, 0.0, 10000.0, 10000.0], "Exposure must be > 0"),
        ("Deaths", [100.0, -1.0, 120.0, 110.0], "Deaths must be >= 0"),
        ("Deaths", [100.0, 0.0, 120.0, 110.0], "Zero deaths"),
        ("Deaths", [100.0, np.nan, 120.0, 110.0], "non-finite"),
    ],
)
def test_load_mortality_table_names_offending_record(column, values, pattern):
    with pytest.raises(MortalityDataError, match=pattern) as err:
        load_mortality_table(_raw(**{column: values}))
    assert "age=60, year=2001" in str(err.value)
    assert "country=FRA" in str(err.value)


def test_load_mortality_table_rejects_duplicates_and_bad_ages():
    with pytest.raises(MortalityDataError, match="Duplicated"):
        load_mortality_table(_raw(Year=[2000, 2000, 2000, 2001]))
    with pytest.raises(MortalityDataError, match="integers"):
        load_mortality_table(_raw(Age=[60.5, 60, 61, 61]))
    with pytest.raises(TypeError):
        load_mortality_table([1, 2, 3])


def test_missing_age_names_the_population():
    with pytest.raises(MortalityDataError, match="row 1") as err:
        load_mortality_table(_raw(Age=[60, None, 61, 61]))
    assert "country=FRA, sex=Male" in str(err.value)
    assert "year=2001" in str(err.value)


def test_records_roundtrip_and_record_properties():
    df = load_mortality_table(_raw())
    recs = records_from_frame(df)
    assert len(recs) == 4
    r = recs[0]
    assert isinstance(r, MortalityRecord)
    assert r.rate == pytest.approx(0.01)
    assert r.log_rate == pytest.approx(np.log(0.01))
    with pytest.raises(Exception):
        r.age = 1  # frozen
    back = frame_from_records(recs)
    pd.testing.assert_frame_equal(back, df)
    with pytest.raises(MortalityDataError):
        frame_from_records([])


def test_select_filters_and_raises_when_empty():
    df = load_mortality_table(_raw())
    sub = select(df, country="FRA", sex="Male", ages=(61, 61), years=(2000, 2001))
    assert set(sub["age"]) == {61}
    with pytest.raises(MortalityDataError, match="No rows left"):
        select(df, sex="Female")


def test_design_from_frame_and_design_set_invariants():
    df = load_mortality_table(_raw())
    design = design_from_frame(df)
    assert design.n == 4
    assert design.X.shape == (4, 2)
    assert np.array_equal(design.ages, df["age"].to_numpy(dtype=float))
    assert np.array_equal(design.years, df["year"].to_numpy(dtype=float))
    assert not design.X.flags.writeable

    with pytest.raises(ValueError):
        DesignSet(X=np.zeros((3, 2)), y=np.zeros(2))
    with pytest.raises(ValueError):
        DesignSet(X=np.zeros((0, 2)), y=np.zeros(0))
    with pytest.raises(ValueError):
        DesignSet(X=np.array([[60.0, np.nan]]), y=np.zeros(1))


def test_design_from_frame_requires_single_population():
    two = pd.concat([_raw(), _raw(Sex=["Female"] * 4)], ignore_index=True)
    df = load_mortality_table(two)
    with pytest.raises(MortalityDataError, match="select one"):
        design_from_frame(df)


def test_to_surface_and_missing_cells():
    df = load_mortality_table(_raw())
    ages, years, m = to_surface(df)
    assert ages.tolist() == [60, 61]
    assert years.tolist() == [2000, 2001]
    assert m[1, 0] == pytest.approx(0.012)

    gap = load_mortality_table(_raw().iloc[[0, 1, 2]])
    with pytest.raises(MortalityDataError, match=r"\(age=61, year=2001\)"):
        to_surface(gap)


def test_read_mortality_csv(tmp_path):
    path = tmp_path / "deaths.csv"
    _raw().to_csv(path, index=False)
    df = read_mortality_csv(path)
    assert len(df) == 4
