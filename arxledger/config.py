"""
arxledger.config — YAML Configuration Loader
=============================================

**Why this file exists:**
Secrets (``DATABASE_URL``) live in the environment / ``.env``.  Everything
that tunes a reconciliation pass (page size, batch size, worker pool, retry
policy, flagging thresholds) lives in ``config.yaml`` so operators can change
it without a redeploy.

Usage::

    from arxledger.config import load_config

    cfg = load_config()          # reads ./config.yaml by default
    print(cfg.batch_size)        # 100
    print(cfg.flag_threshold)    # None → every drift is auto-applied
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import yaml

from arxledger.constants import DEFAULT_BATCH_SIZE, DEFAULT_PAGE_SIZE, MAX_BATCH_SIZE


# ---------------------------------------------------------------------------
# Typed settings object
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class LedgerConfig:
    """Immutable configuration for one reconciliation process.

    Every field has a default, so ``LedgerConfig()`` is a usable
    configuration on its own.
    """

    # Source Aggregator
    page_size: int = DEFAULT_PAGE_SIZE
    read_retries: int = 3
    retry_backoff_seconds: float = 0.5

    # Batching / concurrency
    batch_size: int = DEFAULT_BATCH_SIZE
    max_workers: int = 4

    # Drift policy; None disables the corresponding check
    flag_threshold: int | None = None
    flag_ratio: float | None = None

    # Earnings reports
    sample_limit: int = 100

    def __post_init__(self) -> None:
        if self.page_size < 1:
            raise ValueError(f"page_size must be >= 1 (got {self.page_size})")
        if not 1 <= self.batch_size <= MAX_BATCH_SIZE:
            raise ValueError(
                f"batch_size must be between 1 and {MAX_BATCH_SIZE} (got {self.batch_size})"
            )
        if self.max_workers < 1:
            raise ValueError(f"max_workers must be >= 1 (got {self.max_workers})")
        if self.read_retries < 1:
            raise ValueError(f"read_retries must be >= 1 (got {self.read_retries})")
        if self.flag_threshold is not None and self.flag_threshold < 0:
            raise ValueError("flag_threshold must be non-negative")
        if self.flag_ratio is not None and self.flag_ratio < 0:
            raise ValueError("flag_ratio must be non-negative")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path = "config.yaml") -> LedgerConfig:
    """Read *path* and return a :class:`LedgerConfig` instance.

    Parameters
    ----------
    path:
        Filesystem path to the YAML configuration file.
        Defaults to ``config.yaml`` in the current working directory.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    ValueError
        If a value is out of range.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    defaults = LedgerConfig()
    return LedgerConfig(
        page_size=int(raw.get("page_size", defaults.page_size)),
        read_retries=int(raw.get("read_retries", defaults.read_retries)),
        retry_backoff_seconds=float(
            raw.get("retry_backoff_seconds", defaults.retry_backoff_seconds)
        ),
        batch_size=int(raw.get("batch_size", defaults.batch_size)),
        max_workers=int(raw.get("max_workers", defaults.max_workers)),
        flag_threshold=(
            int(raw["flag_threshold"]) if raw.get("flag_threshold") is not None else None
        ),
        flag_ratio=(
            float(raw["flag_ratio"]) if raw.get("flag_ratio") is not None else None
        ),
        sample_limit=int(raw.get("sample_limit", defaults.sample_limit)),
    )
