from __future__ import annotations

import json

import numpy as np
import pandas as pd
from typer.testing import CliRunner

from gpmort import cli


def _write_inputs(tmp_path, table: pd.DataFrame):
    data_path = tmp_path / "deaths.csv"
    table.to_csv(data_path, index=False)
    cfg_path = tmp_path / "config.yaml"
    cfg_path.write_text(
        "seed: 0\n"
        "trend: linear_age_year\n"
        "optimizer:\n"
        "  pop_size: 20\n"
        "  max_generations: 20\n"
    )
    return data_path, cfg_path


def test_cli_version():
    runner = CliRunner()
    result = runner.invoke(cli.app, ["version"])
    assert result.exit_code == 0
    assert result.output.strip() != ""


def test_parse_grid():
    assert cli._parse_grid("60:62", "ages").tolist() == [60, 61, 62]
    assert cli._parse_grid("60, 65", "ages").tolist() == [60, 65]
    assert cli._parse_grid(None, "ages") is None


def test_data_validate_and_improvement(tmp_path, synthetic_table):
    data_path, _ = _write_inputs(tmp_path, synthetic_table)
    runner = CliRunner()

    res = runner.invoke(
        cli.app, ["--outdir", str(tmp_path), "data", "validate", "--input", str(data_path)]
    )
    assert res.exit_code == 0, res.output
    report = json.loads((tmp_path / "validation.json").read_text())
    assert report["n_records"] == len(synthetic_table)
    assert report["populations"] == ["XYZ/Female"]

    res = runner.invoke(
        cli.app,
        ["--outdir", str(tmp_path), "data", "improvement", "--input", str(data_path)],
    )
    assert res.exit_code == 0, res.output
    mi = pd.read_csv(tmp_path / "improvement_observed.csv")
    assert {"age", "year", "mi"} <= set(mi.columns)


def test_data_validate_reports_bad_input(tmp_path, synthetic_table):
    bad = synthetic_table.copy()
    bad.loc[3, "exposure"] = 0.0
    data_path, _ = _write_inputs(tmp_path, bad)
    runner = CliRunner()
    res = runner.invoke(
        cli.app, ["--outdir", str(tmp_path), "data", "validate", "--input", str(data_path)]
    )
    assert res.exit_code != 0


def test_fit_then_predict_pipeline(tmp_path, synthetic_table):
    data_path, cfg_path = _write_inputs(tmp_path, synthetic_table)
    runner = CliRunner()
    base = ["--config", str(cfg_path), "--outdir", str(tmp_path)]

    res = runner.invoke(cli.app, base + ["fit", "gp", "--input", str(data_path)])
    assert res.exit_code == 0, res.output
    model_path = tmp_path / "gp_model.pkl"
    assert model_path.exists()
    summary = json.loads((tmp_path / "fit_summary.json").read_text())
    assert summary["noise_mode"] == "explicit"
    assert summary["n_obs"] == len(synthetic_table)

    res = runner.invoke(
        cli.app,
        base
        + ["predict", "surface", "--model", str(model_path), "--ages", "60:66", "--years", "2005:2012"],
    )
    assert res.exit_code == 0, res.output
    pred = pd.read_csv(tmp_path / "prediction.csv")
    assert len(pred) == 7 * 8
    assert np.all(pred["lower"] < pred["upper"])

    res = runner.invoke(
        cli.app,
        base
        + [
            "predict",
            "simulate",
            "--model",
            str(model_path),
            "--ages",
            "62:63",
            "--years",
            "2008:2010",
            "--n-draws",
            "10",
        ],
    )
    assert res.exit_code == 0, res.output
    with np.load(tmp_path / "simulations.npz") as npz:
        assert npz["log_m"].shape == (10, 2, 3)

    res = runner.invoke(
        cli.app,
        base
        + [
            "predict",
            "life-expectancy",
            "--model",
            str(model_path),
            "--age",
            "62",
            "--year",
            "2010",
            "--n-ages",
            "5",
            "--n-draws",
            "50",
        ],
    )
    assert res.exit_code == 0, res.output
    le = pd.read_csv(tmp_path / "life_expectancy.csv")
    assert 0 < le.loc[0, "median"] <= 5


def test_predict_requires_existing_model(tmp_path):
    runner = CliRunner()
    res = runner.invoke(
        cli.app,
        [
            "--outdir",
            str(tmp_path),
            "predict",
            "surface",
            "--model",
            str(tmp_path / "missing.pkl"),
            "--ages",
            "60:61",
            "--years",
            "2000:2001",
        ],
    )
    assert res.exit_code != 0


def test_age_list_keeps_only_listed_ages(tmp_path, synthetic_table):
    data_path, _ = _write_inputs(tmp_path, synthetic_table)
    runner = CliRunner()
    res = runner.invoke(
        cli.app,
        [
            "--outdir",
            str(tmp_path),
            "data",
            "improvement",
            "--input",
            str(data_path),
            "--ages",
            "60,62",
        ],
    )
    assert res.exit_code == 0, res.output
    mi = pd.read_csv(tmp_path / "improvement_observed.csv")
    assert sorted(mi["age"].unique().tolist()) == [60, 62]

    res = runner.invoke(
        cli.app,
        ["--outdir", str(tmp_path), "data", "improvement", "--input", str(data_path), "--ages", "90,91"],
    )
    assert res.exit_code == 2


def test_fit_single_year_is_a_usage_error(tmp_path, synthetic_table):
    data_path, cfg_path = _write_inputs(tmp_path, synthetic_table[synthetic_table["year"] == 2000])
    runner = CliRunner()
    res = runner.invoke(
        cli.app,
        ["--config", str(cfg_path), "--outdir", str(tmp_path), "fit", "gp", "--input", str(data_path)],
    )
    # BadParameter, not an uncaught RuntimeError
    assert res.exit_code == 2
    assert not isinstance(res.exception, RuntimeError)
    assert not (tmp_path / "gp_model.pkl").exists()
