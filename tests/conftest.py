from __future__ import annotations

import os
from pathlib import Path

import pytest

from backtester.backtest.costs import FeeSchedule, TransactionCostModel
from backtester.logging_utils import setup_test_logging

os.environ.setdefault("ENV", "test")


@pytest.fixture(scope="session", autouse=True)
def configure_logging():
    log_dir = Path("backtester-logs")
    log_dir.mkdir(exist_ok=True)
    setup_test_logging(log_dir)
    yield


@pytest.fixture
def hk_schedule() -> FeeSchedule:
    return FeeSchedule()


@pytest.fixture
def hk_costs(hk_schedule) -> TransactionCostModel:
    return TransactionCostModel(hk_schedule)


@pytest.fixture
def zero_costs() -> TransactionCostModel:
    return TransactionCostModel(FeeSchedule.zero())
