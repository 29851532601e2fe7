"""Simulation and optimizer configuration."""
import os

from dotenv import load_dotenv

load_dotenv()

DEFAULT_BASE_CURRENCY = "USDC"
DAY_MS = 86_400_000


class Config:
    """Configuration settings for backtests and optimizer runs."""

    # Simulation settings
    BASE_CURRENCY = os.getenv("BASE_CURRENCY", DEFAULT_BASE_CURRENCY).upper()
    INITIAL_CAPITAL = float(os.getenv("INITIAL_CAPITAL", "10000"))
    REBALANCE_INTERVAL_MS = int(os.getenv("REBALANCE_INTERVAL_MS", str(DAY_MS)))
    DEFAULT_SLIPPAGE_PCT = float(os.getenv("DEFAULT_SLIPPAGE_PCT", "0.5"))
    CURVE_SLIPPAGE_PCT = float(os.getenv("CURVE_SLIPPAGE_PCT", "0.1"))

    # Worker pool settings
    OPTIMIZER_MAX_WORKERS = int(os.getenv("OPTIMIZER_MAX_WORKERS", "8"))
    OPTIMIZER_EXECUTOR = os.getenv("OPTIMIZER_EXECUTOR", "process").lower()
    OPTIMIZER_TASK_TIMEOUT = float(os.getenv("OPTIMIZER_TASK_TIMEOUT", "120"))
    OPTIMIZER_MAX_RETRIES = int(os.getenv("OPTIMIZER_MAX_RETRIES", "2"))
    OPTIMIZER_RETRY_INITIAL_DELAY = float(os.getenv("OPTIMIZER_RETRY_INITIAL_DELAY", "1.0"))
    OPTIMIZER_RETRY_MAX_DELAY = float(os.getenv("OPTIMIZER_RETRY_MAX_DELAY", "5.0"))

    # Paths and logging
    OPTIMIZER_RUNS_DIR = os.getenv("OPTIMIZER_RUNS_DIR", "runs")
    DATA_DIR = os.getenv("DATA_DIR", "data")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    @classmethod
    def data_path(cls, filename: str) -> str:
        """Resolve a file name inside the data directory."""
        return os.path.join(cls.DATA_DIR, filename)

    @classmethod
    def validate(cls):
        if cls.INITIAL_CAPITAL <= 0:
            raise ValueError("INITIAL_CAPITAL must be positive")

        if cls.REBALANCE_INTERVAL_MS <= 0:
            raise ValueError("REBALANCE_INTERVAL_MS must be positive")

        if cls.OPTIMIZER_MAX_WORKERS <= 0:
            raise ValueError("OPTIMIZER_MAX_WORKERS must be positive")

        if cls.OPTIMIZER_TASK_TIMEOUT <= 0:
            raise ValueError("OPTIMIZER_TASK_TIMEOUT must be positive")

        if cls.OPTIMIZER_EXECUTOR not in ("process", "thread"):
            raise ValueError("OPTIMIZER_EXECUTOR must be 'process' or 'thread'")

        return True
