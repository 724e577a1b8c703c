from __future__ import annotations

import argparse
import itertools
import json
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import fields, replace
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from time import perf_counter
from typing import Any, Dict, Iterable, List, Optional, Sequence

import yaml
from loguru import logger

from backtester.backtest.costs import FeeSchedule
from backtester.backtest.engine import BacktestDriver, FractionOfEquitySizer
from backtester.backtest.result import BacktestRequest
from backtester.backtest.run import parse_time, export_result, load_bars_csv
from backtester.core.exceptions import ConfigError
from backtester.core.models import Bar
from backtester.features.indicators import TechnicalIndicatorProvider
from backtester.logging_utils import setup_logging
from backtester.settings import Settings, get_settings
from backtester.strats import STRATEGIES, merge_params


def _load_config(path: Path) -> Dict[str, Any]:
    data = yaml.safe_load(path.read_text())
    if not isinstance(data, dict):
        raise ConfigError("Sweep config must be a mapping")
    for key in ("symbol", "csv"):
        if not data.get(key):
            raise ConfigError(f"Sweep config is missing '{key}'")
    return data


def _expand_param_grid(grid: Dict[str, Iterable[Any]]) -> List[Dict[str, Any]]:
    if not grid:
        return [{}]
    keys = list(grid.keys())
    combos = []
    for values in itertools.product(*(grid[k] for k in keys)):
        combos.append(dict(zip(keys, values, strict=True)))
    return combos


def _as_datetime(value: Any):
    # yaml turns bare ISO dates into date objects
    return parse_time(str(value)) if value not in (None, "") else None


def _fee_schedule(overrides: Dict[str, Any], settings: Settings) -> FeeSchedule:
    """Environment fee schedule with the sweep's ``fees:`` entries layered on top."""
    base = settings.fees.to_schedule()
    if not overrides:
        return base
    fees = dict(overrides)
    changes: Dict[str, Any] = {}
    if "stamp_duty_exempt" in fees:
        exempt = fees.pop("stamp_duty_exempt") or ()
        if isinstance(exempt, str):
            exempt = exempt.split(",")
        changes["stamp_duty_exempt"] = frozenset(str(s) for s in exempt)
    known = {f.name for f in fields(FeeSchedule)}
    unknown = sorted(set(fees) - known)
    if unknown:
        raise ConfigError(f"Sweep config has unknown fee keys {unknown}")
    changes.update({k: Decimal(str(v)) for k, v in fees.items()})
    return replace(base, **changes)


def _prepare_base_request(cfg: Dict[str, Any], settings: Settings) -> BacktestRequest:
    bt = settings.backtest
    schedule = _fee_schedule(cfg.get("fees") or {}, settings)
    return BacktestRequest(
        symbol=cfg["symbol"],
        start_time=_as_datetime(cfg.get("start")),
        end_time=_as_datetime(cfg.get("end")),
        initial_capital=cfg.get("initial_capital", bt.initial_capital),
        strategy_name=cfg.get("strategy", "momentum"),
        slippage_rate=cfg.get("slippage_rate", bt.slippage_rate),
        fee_schedule=schedule,
        risk_free_rate=float(cfg.get("risk_free_rate", bt.risk_free_rate)),
        max_position_ratio=float(cfg.get("max_position_ratio", bt.max_position_ratio)),
        indicator_history_lookback=int(cfg.get("indicator_lookback", bt.indicator_lookback)),
        liquidate_at_end=bool(cfg.get("liquidate_at_end", False)),
    )


def _execute_job(
    job_idx: int,
    request: BacktestRequest,
    bars: Sequence[Bar],
    params: Dict[str, Any],
    sweep_dir: Path,
    lot_size: int,
) -> Dict[str, Any]:
    job_dir = sweep_dir / f"job_{job_idx:04d}"
    job_dir.mkdir(parents=True, exist_ok=True)
    strategy_cls = STRATEGIES[request.strategy_name]
    # one driver, provider and strategy per job; none of them are shared
    driver = BacktestDriver(
        strategy_cls(dict(params)) if params else strategy_cls(),
        TechnicalIndicatorProvider(),
        FractionOfEquitySizer(request.max_position_ratio, lot_size),
    )
    result = driver.run(request, bars)
    if not result.is_successful:
        raise RuntimeError(result.error)
    paths = export_result(result, job_dir)
    metrics = result.to_dict()["metrics"]
    payload = {
        "job_id": job_idx,
        "run_id": result.run_id,
        "params": params,
        "metrics": metrics,
        "final_equity": str(result.final_equity),
        "equity_path": paths["equity_path"],
        "output_dir": str(job_dir),
    }
    (job_dir / "summary.json").write_text(json.dumps(payload, default=str, indent=2))
    logger.info(
        "[sweep] job={} strategy={} params={} sharpe={}",
        job_idx,
        request.strategy_name,
        params,
        metrics.get("sharpe_ratio"),
    )
    return payload


def run_sweep(
    config_path: Path,
    *,
    job_id: str | None = None,
    settings: Optional[Settings] = None,
) -> Dict[str, Any]:
    cfg = _load_config(config_path)
    settings = settings or get_settings()
    request = _prepare_base_request(cfg, settings)
    if request.strategy_name not in STRATEGIES:
        raise ConfigError(f"unknown strategy '{request.strategy_name}'")
    bars = load_bars_csv(cfg["csv"], request.symbol)
    combos = _expand_param_grid(cfg.get("params", {}) or {})
    # unknown grid keys fail the whole sweep before any job starts
    params_cls = STRATEGIES[request.strategy_name].params_cls
    for params in combos:
        merge_params(params_cls, params)
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    base_output = Path(
        cfg.get("output_dir") or f"artifacts/backtests/{request.strategy_name}"
    )
    sweep_dir = base_output / timestamp
    sweep_dir.mkdir(parents=True, exist_ok=True)
    job_ref = job_id or timestamp
    logger.info("[sweep] starting job={} dir={} jobs={}", job_ref, sweep_dir, len(combos))
    started = perf_counter()
    results: List[Dict[str, Any]] = []
    failed = 0
    max_workers = int(cfg.get("max_workers", min(4, len(combos) or 1))) or 1
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        future_map = {
            executor.submit(
                _execute_job,
                idx,
                request,
                bars,
                params,
                sweep_dir,
                settings.backtest.lot_size,
            ): (idx, params)
            for idx, params in enumerate(combos, start=1)
        }
        for future in as_completed(future_map):
            job_idx, params = future_map[future]
            try:
                payload = future.result()
            except Exception as exc:
                failed += 1
                logger.exception("[sweep] job={} failed: {}", job_idx, exc)
                continue
            results.append(payload)
    results.sort(key=lambda r: r["job_id"])
    summary_path = sweep_dir / "summary.jsonl"
    with summary_path.open("w") as handle:
        for record in results:
            handle.write(json.dumps(record, default=str) + "\n")
    duration_ms = (perf_counter() - started) * 1000.0
    logger.info(
        "[sweep] completed job={} dir={} succeeded={} failed={} in {:.0f}ms",
        job_ref,
        sweep_dir,
        len(results),
        failed,
        duration_ms,
    )
    return {
        "job_id": job_ref,
        "sweep_dir": str(sweep_dir),
        "summary_path": str(summary_path),
        "results": results,
        "failed": failed,
    }


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Run parameter sweeps for backtests")
    parser.add_argument("--config", required=True, help="Path to YAML sweep definition")
    args = parser.parse_args(argv)
    setup_logging()
    run_sweep(Path(args.config))


if __name__ == "__main__":
    main()
