"""Runtime configuration for the panel direction analyzer."""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parent.parent
MODEL_DIR = ROOT_DIR / "models"
REPORT_DIR = ROOT_DIR / "reports"

DEFAULT_TRAIN_FRACTION = 0.8
DEFAULT_LOOKBACK = 12
DEFAULT_HORIZON = 3
DEFAULT_EPOCHS = 25
DEFAULT_TRAIN_BATCH_SIZE = 64
DEFAULT_EVAL_BATCH_SIZE = 256
DEFAULT_MODEL_NAME = "direction_model"

ENV_PREFIX = "PANEL_DIRECTION_"


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _env_str(name: str, default: str) -> str:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    return value.strip()


@dataclass(frozen=True)
class AnalyzerConfig:
    train_fraction: float = DEFAULT_TRAIN_FRACTION
    lookback: int = DEFAULT_LOOKBACK
    horizon: int = DEFAULT_HORIZON
    epochs: int = DEFAULT_EPOCHS
    batch_size: int = DEFAULT_TRAIN_BATCH_SIZE
    eval_batch_size: int = DEFAULT_EVAL_BATCH_SIZE
    model_name: str = DEFAULT_MODEL_NAME

    def validate(self) -> "AnalyzerConfig":
        if not 0.0 < self.train_fraction < 1.0:
            raise ValueError("train_fraction must be between 0 and 1 (exclusive)")
        for name in ("lookback", "horizon", "epochs", "batch_size", "eval_batch_size"):
            if int(getattr(self, name)) < 1:
                raise ValueError(f"{name} must be a positive integer")
        if not self.model_name:
            raise ValueError("model_name must not be empty")
        return self


def load_config(**overrides: object) -> AnalyzerConfig:
    """Build a config from defaults, ``PANEL_DIRECTION_*`` env vars and overrides.

    Overrides set to ``None`` are ignored so argparse namespaces can be passed
    through directly.
    """
    config = AnalyzerConfig(
        train_fraction=_env_float(f"{ENV_PREFIX}TRAIN_FRACTION", DEFAULT_TRAIN_FRACTION),
        lookback=_env_int(f"{ENV_PREFIX}LOOKBACK", DEFAULT_LOOKBACK),
        horizon=_env_int(f"{ENV_PREFIX}HORIZON", DEFAULT_HORIZON),
        epochs=_env_int(f"{ENV_PREFIX}EPOCHS", DEFAULT_EPOCHS),
        batch_size=_env_int(f"{ENV_PREFIX}BATCH_SIZE", DEFAULT_TRAIN_BATCH_SIZE),
        eval_batch_size=_env_int(f"{ENV_PREFIX}EVAL_BATCH_SIZE", DEFAULT_EVAL_BATCH_SIZE),
        model_name=_env_str(f"{ENV_PREFIX}MODEL_NAME", DEFAULT_MODEL_NAME),
    )
    known = {field.name for field in fields(AnalyzerConfig)}
    unknown = set(overrides) - known
    if unknown:
        raise ValueError(f"Unknown config option(s): {', '.join(sorted(unknown))}")
    applied = {key: value for key, value in overrides.items() if value is not None}
    if applied:
        config = replace(config, **applied)
    return config.validate()
