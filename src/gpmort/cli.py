from __future__ import annotations

import json
import logging
import pickle
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, cast

import numpy as np
import pandas as pd
import typer

from gpmort import __version__
from gpmort.analysis.improvement import improvement_from_table
from gpmort.analysis.validation import time_split_backtest_gp
from gpmort.data import MortalityDataError, read_mortality_csv, select
from gpmort.models.gp import FittedGP, OptimizerConfig
from gpmort.pipeline import (
    fit_mortality_surface,
    forecast_improvement,
    forecast_life_expectancy,
    simulate_surface,
    smooth_surface,
)

app = typer.Typer(help="GPMORT – Gaussian-process mortality surfaces")


# ---------------------------------------------------------------------------
# Helpers and shared options
# ---------------------------------------------------------------------------


def _setup_logging(level: str, verbose: bool, quiet: bool) -> None:
    log_level = level.upper()
    if verbose:
        log_level = "DEBUG"
    if quiet:
        log_level = "ERROR"
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(levelname)s | %(name)s | %(message)s",
    )


def _load_config(path: Optional[Path]) -> Dict[str, Any]:
    if path is None:
        return {}
    if not path.exists():
        raise typer.BadParameter(f"Config file {path} does not exist.")
    text = path.read_text()
    try:
        cfg = json.loads(text)
    except json.JSONDecodeError:
        import yaml

        try:
            cfg = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise typer.BadParameter(
                f"Could not parse config {path} as JSON or YAML."
            ) from exc
    if cfg is None:
        return {}
    if not isinstance(cfg, dict):
        raise typer.BadParameter(f"Config {path} must be a mapping.")
    return cfg


def _parse_grid(spec: Optional[str], name: str) -> Optional[np.ndarray]:
    """'60,61,62' or inclusive range '60:100'."""
    if spec is None or spec.strip() == "":
        return None
    s = spec.replace(" ", "")
    try:
        if ":" in s:
            lo, hi = (int(v) for v in s.split(":", 1))
            if hi < lo:
                raise typer.BadParameter(f"{name}: empty range '{spec}'.")
            return np.arange(lo, hi + 1, dtype=int)
        return np.asarray([int(v) for v in s.split(",") if v], dtype=int)
    except ValueError as exc:
        raise typer.BadParameter(f"{name}: cannot parse '{spec}'.") from exc


def _save_table(obj: Any, path: Path, fmt: str) -> None:
    if isinstance(obj, pd.DataFrame):
        df = obj
    elif isinstance(obj, dict):
        df = pd.DataFrame([obj])
    else:
        df = pd.DataFrame(obj)

    fmt_l = fmt.lower()
    if fmt_l == "json":
        df.to_json(path, orient="records", lines=True)
    elif fmt_l == "csv":
        df.to_csv(path, index=False)
    elif fmt_l == "parquet":
        df.to_parquet(path, index=False)
    else:
        raise typer.BadParameter(f"Unsupported format: {fmt}")


def _save_pickle(obj: Any, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("wb") as f:
        pickle.dump(obj, f)


def _load_model(path: Path) -> FittedGP:
    if not path.exists():
        raise typer.BadParameter(f"Model file {path} does not exist.")
    with path.open("rb") as f:
        model = pickle.load(f)
    if not isinstance(model, FittedGP):
        raise typer.BadParameter(f"{path} does not contain a fitted GP model.")
    return model


@dataclass
class CLIContext:
    outdir: Path
    output_format: str
    seed: Optional[int]
    verbose: bool
    quiet: bool
    log_level: str
    config: Dict[str, Any]

    def get(self, value: Any, key: str, default: Any) -> Any:
        """Command-line value, else config value, else default."""
        if value is not None:
            return value
        return self.config.get(key, default)

    def ext(self) -> str:
        return {"json": "jsonl"}.get(self.output_format.lower(), self.output_format.lower())


def _ctx(ctx: typer.Context) -> CLIContext:
    return cast(CLIContext, ctx.obj)


def _optimizer_config(
    c: CLIContext,
    pop_size: Optional[int],
    generations: Optional[int],
    tol: Optional[float],
) -> OptimizerConfig:
    opt = dict(c.config.get("optimizer", {}) or {})
    if pop_size is not None:
        opt["pop_size"] = pop_size
    if generations is not None:
        opt["max_generations"] = generations
    if tol is not None:
        opt["tol"] = tol
    if c.seed is not None:
        opt["seed"] = c.seed
    for key in ("length_scale_bounds", "alpha_bounds"):
        if key in opt:
            opt[key] = tuple(opt[key])
    try:
        return OptimizerConfig(**opt)
    except (TypeError, ValueError) as exc:
        raise typer.BadParameter(f"Invalid optimizer config: {exc}") from exc


def _load_table(
    c: CLIContext,
    input_path: Path,
    country: Optional[str],
    sex: Optional[str],
    ages: Optional[str],
    years: Optional[str],
) -> pd.DataFrame:
    try:
        df = select(
            read_mortality_csv(input_path),
            country=c.get(country, "country", None),
            sex=c.get(sex, "sex", None),
        )
    except MortalityDataError as exc:
        raise typer.BadParameter(str(exc)) from exc

    # grids may be lists ('60,65,70'), so keep exactly the listed values
    for col, spec in (("age", c.get(ages, "ages", None)), ("year", c.get(years, "years", None))):
        grid = _parse_grid(spec, f"{col}s")
        if grid is not None:
            df = df[df[col].isin(grid.astype(int))]
            if df.empty:
                raise typer.BadParameter(f"No rows left for --{col}s {spec}.")
    return df.reset_index(drop=True)


def _require_grid(spec: Optional[str], name: str) -> np.ndarray:
    grid = _parse_grid(spec, name)
    if grid is None:
        raise typer.BadParameter(f"--{name} is required (e.g. '60:100').")
    return grid


# ---------------------------------------------------------------------------
# Global options
# ---------------------------------------------------------------------------


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(
        None, "--config", "-c", help="YAML/JSON config file with defaults."
    ),
    seed: Optional[int] = typer.Option(None, help="RNG seed."),
    outdir: Path = typer.Option(Path("outputs"), help="Output directory."),
    format: str = typer.Option("csv", "--format", help="Tabular output format."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging."),
    quiet: bool = typer.Option(False, "--quiet", help="Quiet logging."),
    log_level: str = typer.Option(
        "INFO", help="Log level (DEBUG, INFO, WARNING, ERROR)."
    ),
) -> None:
    cfg = _load_config(config)
    _setup_logging(log_level, verbose, quiet)
    outdir.mkdir(parents=True, exist_ok=True)
    ctx.obj = CLIContext(
        outdir=outdir,
        output_format=format,
        seed=seed if seed is not None else cfg.get("seed"),
        verbose=verbose,
        quiet=quiet,
        log_level=log_level,
        config=cfg,
    )


@app.command("version")
def version() -> None:
    typer.echo(__version__)


# ---------------------------------------------------------------------------
# DATA subcommands
# ---------------------------------------------------------------------------

data_app = typer.Typer(help="Data utilities (validation, observed improvement).")


@data_app.command("validate")
def data_validate(
    ctx: typer.Context,
    input_path: Path = typer.Option(..., "--input", help="Deaths/exposure CSV."),
) -> None:
    c = _ctx(ctx)
    try:
        df = read_mortality_csv(input_path)
    except MortalityDataError as exc:
        raise typer.BadParameter(str(exc)) from exc
    report = {
        "n_records": int(len(df)),
        "populations": sorted(
            f"{a}/{b}" for a, b in df[["country", "sex"]].drop_duplicates().itertuples(index=False)
        ),
        "ages_min": int(df["age"].min()),
        "ages_max": int(df["age"].max()),
        "years_min": int(df["year"].min()),
        "years_max": int(df["year"].max()),
        "min_rate": float(df["rate"].min()),
        "max_rate": float(df["rate"].max()),
    }
    out = c.outdir / "validation.json"
    out.write_text(json.dumps(report, indent=2))
    typer.echo(f"Validation report saved to {out}")


@data_app.command("improvement")
def data_improvement(
    ctx: typer.Context,
    input_path: Path = typer.Option(..., "--input", help="Deaths/exposure CSV."),
    country: Optional[str] = typer.Option(None),
    sex: Optional[str] = typer.Option(None),
    ages: Optional[str] = typer.Option(None, help="Ages, e.g. '60:100'."),
    years: Optional[str] = typer.Option(None, help="Years, e.g. '1990:2019'."),
) -> None:
    c = _ctx(ctx)
    df = _load_table(c, input_path, country, sex, ages, years)
    try:
        mi = improvement_from_table(df)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc
    out = c.outdir / f"improvement_observed.{c.ext()}"
    _save_table(mi, out, c.output_format)
    typer.echo(f"Observed improvement saved to {out}")


app.add_typer(data_app, name="data")


# ---------------------------------------------------------------------------
# FIT subcommands
# ---------------------------------------------------------------------------

fit_app = typer.Typer(help="GP fitting and backtests.")


@fit_app.command("gp")
def fit_gp_cmd(
    ctx: typer.Context,
    input_path: Path = typer.Option(..., "--input", help="Deaths/exposure CSV."),
    country: Optional[str] = typer.Option(None),
    sex: Optional[str] = typer.Option(None),
    ages: Optional[str] = typer.Option(None, help="Ages, e.g. '60:100'."),
    years: Optional[str] = typer.Option(None, help="Years, e.g. '1990:2019'."),
    trend: Optional[str] = typer.Option(None, help="Trend basis name."),
    noise_mode: Optional[str] = typer.Option(None, help="'explicit' or 'nugget'."),
    pop_size: Optional[int] = typer.Option(None, help="Optimizer population size."),
    generations: Optional[int] = typer.Option(None, help="Optimizer generations."),
    tol: Optional[float] = typer.Option(None, help="Optimizer tolerance."),
    output: Optional[Path] = typer.Option(None, help="Pickle path for the model."),
) -> None:
    c = _ctx(ctx)
    df = _load_table(c, input_path, country, sex, ages, years)
    cfg = _optimizer_config(c, pop_size, generations, tol)
    try:
        model = fit_mortality_surface(
            df,
            trend=c.get(trend, "trend", "linear_age_year"),
            config=cfg,
            noise_mode=c.get(noise_mode, "noise_mode", "explicit"),
        )
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc

    out = output or c.outdir / "gp_model.pkl"
    _save_pickle(model, out)
    summary_path = c.outdir / "fit_summary.json"
    summary_path.write_text(json.dumps(model.summary(), indent=2))
    typer.echo(json.dumps(model.summary(), indent=2))
    typer.echo(f"Model saved to {out}")


@fit_app.command("backtest")
def fit_backtest_cmd(
    ctx: typer.Context,
    input_path: Path = typer.Option(..., "--input", help="Deaths/exposure CSV."),
    train_end: int = typer.Option(..., help="Last training year."),
    country: Optional[str] = typer.Option(None),
    sex: Optional[str] = typer.Option(None),
    ages: Optional[str] = typer.Option(None),
    years: Optional[str] = typer.Option(None),
    trend: Optional[str] = typer.Option(None),
    level: float = typer.Option(0.95, help="Credible level for coverage."),
    pop_size: Optional[int] = typer.Option(None),
    generations: Optional[int] = typer.Option(None),
    tol: Optional[float] = typer.Option(None),
) -> None:
    c = _ctx(ctx)
    df = _load_table(c, input_path, country, sex, ages, years)
    try:
        res = time_split_backtest_gp(
            df,
            train_end=train_end,
            trend=c.get(trend, "trend", "linear_age_year"),
            config=_optimizer_config(c, pop_size, generations, tol),
            level=level,
        )
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc
    row = {
        "train_end": train_end,
        "rmse_log_forecast": res["rmse_log_forecast"],
        "coverage_forecast": res["coverage_forecast"],
        "rmse_log_fit": res["rmse_log_fit"],
    }
    out = c.outdir / f"backtest.{c.ext()}"
    _save_table(row, out, c.output_format)
    typer.echo(f"Backtest saved to {out}")


app.add_typer(fit_app, name="fit")


# ---------------------------------------------------------------------------
# PREDICT / SIMULATE subcommands
# ---------------------------------------------------------------------------

pred_app = typer.Typer(help="Posterior prediction and conditional simulation.")


@pred_app.command("surface")
def predict_surface_cmd(
    ctx: typer.Context,
    model_path: Path = typer.Option(..., "--model", help="Fitted model pickle."),
    ages: str = typer.Option(..., help="Ages, e.g. '60:100'."),
    years: str = typer.Option(..., help="Years, e.g. '1990:2030'."),
    level: float = typer.Option(0.95, help="Credible level."),
    latent: bool = typer.Option(
        False, "--latent", help="Band for the latent surface instead of observed rates."
    ),
) -> None:
    c = _ctx(ctx)
    model = _load_model(model_path)
    res = smooth_surface(model, _require_grid(ages, "ages"), _require_grid(years, "years"))
    try:
        table = res.to_frame(level=level, observed=not latent)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc
    out = c.outdir / f"prediction.{c.ext()}"
    _save_table(table, out, c.output_format)
    typer.echo(f"Prediction saved to {out}")


@pred_app.command("simulate")
def predict_simulate_cmd(
    ctx: typer.Context,
    model_path: Path = typer.Option(..., "--model", help="Fitted model pickle."),
    ages: str = typer.Option(..., help="Ages, e.g. '60:100'."),
    years: str = typer.Option(..., help="Years, e.g. '2020:2030'."),
    n_draws: Optional[int] = typer.Option(None, help="Number of posterior draws."),
    jitter: Optional[float] = typer.Option(None, help="Diagonal jitter."),
    output: Optional[Path] = typer.Option(None, help="Output .npz path."),
) -> None:
    c = _ctx(ctx)
    model = _load_model(model_path)
    age_grid = _require_grid(ages, "ages")
    year_grid = _require_grid(years, "years")
    try:
        sim = simulate_surface(
            model,
            age_grid,
            year_grid,
            n_draws=int(c.get(n_draws, "n_draws", 100)),
            jitter=float(c.get(jitter, "jitter", 1e-8)),
            seed=c.seed,
        )
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc
    out = output or c.outdir / "simulations.npz"
    np.savez_compressed(
        out,
        log_m=sim.to_surface(age_grid.size, year_grid.size),
        ages=age_grid,
        years=year_grid,
    )
    typer.echo(f"{sim.n_draws} draws saved to {out}")


@pred_app.command("improvement")
def predict_improvement_cmd(
    ctx: typer.Context,
    model_path: Path = typer.Option(..., "--model", help="Fitted model pickle."),
    ages: str = typer.Option(..., help="Ages, e.g. '60:100'."),
    years: str = typer.Option(..., help="Years, e.g. '2010:2030'."),
    n_draws: Optional[int] = typer.Option(None, help="Number of posterior draws."),
    jitter: Optional[float] = typer.Option(None, help="Diagonal jitter."),
) -> None:
    c = _ctx(ctx)
    model = _load_model(model_path)
    age_grid = _require_grid(ages, "ages")
    year_grid = _require_grid(years, "years")
    try:
        fc = forecast_improvement(
            model,
            age_grid,
            year_grid,
            n_draws=int(c.get(n_draws, "n_draws", 100)),
            jitter=float(c.get(jitter, "jitter", 1e-8)),
            seed=c.seed,
        )
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc
    table = fc.mean.copy()
    a_idx = np.searchsorted(fc.ages, table["age"].to_numpy().astype(int))
    t_idx = np.searchsorted(fc.years, table["year"].to_numpy().astype(int))
    for p, surf in fc.summary.quantiles.items():
        table[f"mi_p{p}"] = surf[a_idx, t_idx]
    out = c.outdir / f"improvement.{c.ext()}"
    _save_table(table, out, c.output_format)
    typer.echo(f"Improvement saved to {out}")


@pred_app.command("life-expectancy")
def predict_life_expectancy_cmd(
    ctx: typer.Context,
    model_path: Path = typer.Option(..., "--model", help="Fitted model pickle."),
    age: int = typer.Option(..., help="Starting age."),
    year: int = typer.Option(..., help="Calendar year of the period table."),
    n_ages: int = typer.Option(..., help="Number of ages in each simulated curve."),
    n_draws: Optional[int] = typer.Option(None, help="Number of posterior draws."),
    jitter: Optional[float] = typer.Option(None, help="Diagonal jitter."),
    method: Optional[str] = typer.Option(
        None, help="log m to q map: exponential, linear or identity."
    ),
) -> None:
    c = _ctx(ctx)
    model = _load_model(model_path)
    try:
        fc = forecast_life_expectancy(
            model,
            age=age,
            year=year,
            n_ages=n_ages,
            n_draws=int(c.get(n_draws, "n_draws", 1000)),
            jitter=float(c.get(jitter, "jitter", 1e-8)),
            seed=c.seed,
            method=c.get(method, "q_method", "exponential"),
        )
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc
    row = {"age": fc.age, "year": fc.year, "n_ages": fc.n_ages, **fc.summary.to_dict()}
    out = c.outdir / f"life_expectancy.{c.ext()}"
    _save_table(row, out, c.output_format)
    typer.echo(json.dumps(row, indent=2))


app.add_typer(pred_app, name="predict")


if __name__ == "__main__":  # pragma: no cover
    app()
