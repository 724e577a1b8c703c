from __future__ import annotations

import argparse
import json
import math
import sys
import traceback
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
from loguru import logger
from pandas import Timestamp

from backtester.backtest.engine import BacktestDriver, FractionOfEquitySizer
from backtester.backtest.result import BacktestRequest, BacktestResult
from backtester.core.exceptions import ConfigError, DataValidationError
from backtester.core.models import Bar
from backtester.features.indicators import TechnicalIndicatorProvider
from backtester.logging_utils import setup_logging
from backtester.settings import Settings, get_settings
from backtester.strats import STRATEGIES

_TIME_COLUMNS = ("timestamp", "datetime", "date", "time", "t")
_PRICE_COLUMNS = ("open", "high", "low", "close")


# ------------------------------------------------------------------------------
# Logging
# ------------------------------------------------------------------------------


def _setup_cli_logging(level: str = "INFO") -> None:
    """Idempotent CLI logging initializer with consistent formatting for CI logs."""
    setup_logging(force=True, level=level)


def _roundish(x, ndigits=4):
    if isinstance(x, (float, np.floating)):
        if math.isfinite(float(x)):
            return round(float(x), ndigits)
        return str(x)  # inf / -inf
    if isinstance(x, (int, np.integer)):
        return int(x)
    if isinstance(x, Timestamp):
        return x.isoformat()
    return str(x)


# ------------------------------------------------------------------------------
# Data loading
# ------------------------------------------------------------------------------


def load_bars_csv(path: str | Path, symbol: str) -> List[Bar]:
    """
    Load OHLCV bars for ``symbol`` from a CSV file.

    Column names are matched case-insensitively; a ``symbol`` column, when
    present, is used to filter rows. Rows are sorted by time and exact
    duplicate timestamps are dropped.
    """
    df = pd.read_csv(path)
    df.columns = [str(c).strip().lower() for c in df.columns]

    time_col = next((c for c in _TIME_COLUMNS if c in df.columns), None)
    missing = [c for c in _PRICE_COLUMNS if c not in df.columns]
    if time_col is None or missing:
        raise DataValidationError(
            f"{path}: need a time column and {list(_PRICE_COLUMNS)}, missing {missing or [time_col]}"
        )

    if "symbol" in df.columns:
        df = df[df["symbol"].astype(str).str.upper() == symbol.upper()]
    df = df.assign(**{time_col: pd.to_datetime(df[time_col])})
    df = df.dropna(subset=[time_col, *_PRICE_COLUMNS])
    df = df.sort_values(time_col, kind="stable").drop_duplicates(subset=[time_col], keep="last")
    if "volume" not in df.columns:
        df["volume"] = 0

    bars = [
        Bar(
            symbol=symbol,
            timestamp=row[time_col].to_pydatetime(),
            open=float(row["open"]),
            high=float(row["high"]),
            low=float(row["low"]),
            close=float(row["close"]),
            volume=int(row["volume"]) if pd.notna(row["volume"]) else 0,
        )
        for _, row in df.iterrows()
    ]
    logger.info("Loaded {} bars for {} from {}", len(bars), symbol, path)
    return bars


# ------------------------------------------------------------------------------
# Export
# ------------------------------------------------------------------------------


def export_result(result: BacktestResult, export_dir: str | Path) -> Dict[str, str]:
    """Write ``<symbol>_equity.csv``, ``<symbol>_trades.csv`` and ``<symbol>_summary.json``."""
    out = Path(export_dir).expanduser()
    out.mkdir(parents=True, exist_ok=True)
    stem = result.symbol.replace("/", "_")

    equity_path = (out / f"{stem}_equity.csv").resolve()
    result.equity_frame().to_csv(equity_path, index=False)
    logger.info("Exported equity CSV -> {}", equity_path)

    trades_path = (out / f"{stem}_trades.csv").resolve()
    result.trades_frame().to_csv(trades_path, index=False)
    logger.info("Exported trades CSV -> {}", trades_path)

    summary_path = (out / f"{stem}_summary.json").resolve()
    payload = result.to_dict()
    payload.pop("equity_curve", None)
    payload.pop("trades", None)
    summary_path.write_text(json.dumps(payload, indent=2, default=str))

    return {
        "equity_path": str(equity_path),
        "trades_path": str(trades_path),
        "summary_path": str(summary_path),
    }


# ------------------------------------------------------------------------------
# Run
# ------------------------------------------------------------------------------


def parse_time(value: Optional[str]):
    if not value:
        return None
    return pd.Timestamp(value).to_pydatetime()


def run(
    symbol: str,
    csv_path: str | Path,
    start: Optional[str] = None,
    end: Optional[str] = None,
    *,
    strategy: str = "momentum",
    params_kwargs: Optional[Dict[str, Any]] = None,
    liquidate_at_end: bool = False,
    export_csv: Optional[str] = None,
    settings: Optional[Settings] = None,
) -> BacktestResult:
    """Load bars, run one strategy and optionally export the result."""
    if strategy not in STRATEGIES:
        raise ConfigError(f"unknown strategy '{strategy}', choose from {sorted(STRATEGIES)}")
    cfg = settings or get_settings()
    bt = cfg.backtest

    strategy_cls = STRATEGIES[strategy]
    strat = strategy_cls(dict(params_kwargs)) if params_kwargs else strategy_cls()

    request = BacktestRequest(
        symbol=symbol,
        start_time=parse_time(start),
        end_time=parse_time(end),
        initial_capital=bt.initial_capital,
        strategy_name=strategy,
        slippage_rate=bt.slippage_rate,
        fee_schedule=cfg.fees.to_schedule(),
        risk_free_rate=bt.risk_free_rate,
        max_position_ratio=bt.max_position_ratio,
        indicator_history_lookback=bt.indicator_lookback,
        liquidate_at_end=liquidate_at_end,
        output_path=export_csv,
    )
    driver = BacktestDriver(
        strat,
        TechnicalIndicatorProvider(),
        FractionOfEquitySizer(bt.max_position_ratio, bt.lot_size),
    )
    result = driver.run(request, load_bars_csv(csv_path, symbol))

    if result.is_successful:
        logger.info(
            "[{}] metrics: {}",
            symbol,
            {k: _roundish(v) for k, v in result.metrics.as_flat_dict().items()},
        )
        if export_csv:
            export_result(result, export_csv)
    return result


def main(argv: Optional[Sequence[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Run a single-symbol backtest over CSV bars")
    ap.add_argument("--symbol", required=True)
    ap.add_argument("--csv", required=True, help="CSV with time/open/high/low/close[/volume]")
    ap.add_argument("--start", default=None, help="First tradable bar; earlier bars are warm-up")
    ap.add_argument("--end", default=None)
    ap.add_argument(
        "--strategy",
        dest="strategy",
        choices=sorted(STRATEGIES.keys()),
        default="momentum",
    )
    ap.add_argument(
        "--param",
        dest="params",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Strategy parameter override; repeatable",
    )
    ap.add_argument(
        "--export-csv",
        dest="export_csv",
        default=None,
        help="Directory to write <symbol>_equity.csv and <symbol>_trades.csv exports",
    )
    ap.add_argument(
        "--print-metrics-json",
        dest="print_metrics_json",
        action="store_true",
        default=False,
        help="Print metrics as a single JSON line to stdout (useful in CI)",
    )
    ap.add_argument(
        "--liquidate-at-end",
        dest="liquidate_at_end",
        action="store_true",
        default=False,
        help="Sell open positions at the last close before computing metrics",
    )
    ap.add_argument("--log-level", dest="log_level", default="INFO")
    args = ap.parse_args(argv)

    _setup_cli_logging(args.log_level)

    try:
        params_kwargs = _parse_params(args.params)
        result = run(
            args.symbol,
            args.csv,
            args.start,
            args.end,
            strategy=args.strategy,
            params_kwargs=params_kwargs,
            liquidate_at_end=args.liquidate_at_end,
            export_csv=args.export_csv,
        )
    except Exception as e:
        logger.error("Backtest run failed: {}", e)
        logger.debug("Traceback:\n{}", traceback.format_exc())
        return 1

    if not result.is_successful:
        logger.error("Backtest run failed: {}", result.error)
        return 1
    print(result.summary())
    if args.print_metrics_json:
        print(json.dumps(result.to_dict()["metrics"]))
    return 0


def _parse_params(pairs: Sequence[str]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for pair in pairs:
        key, sep, raw = pair.partition("=")
        if not sep or not key.strip():
            raise ConfigError(f"--param expects KEY=VALUE, got '{pair}'")
        try:
            value: Any = json.loads(raw)
        except json.JSONDecodeError:
            value = raw
        out[key.strip()] = value
    return out


if __name__ == "__main__":
    sys.exit(main())
