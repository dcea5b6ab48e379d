"""Leakage-safe scaling, sliding windows and the chronological train/test split."""

from __future__ import annotations

import logging
import math
import types
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Tuple, Union

import numpy as np
import pandas as pd

from .config import DEFAULT_HORIZON, DEFAULT_LOOKBACK, DEFAULT_TRAIN_FRACTION
from .data import DataSufficiencyError, PricePanel, forward_fill_gaps, read_panel_file

logger = logging.getLogger(__name__)

EPS = 1e-7


def _readonly(array: np.ndarray) -> np.ndarray:
    array.setflags(write=False)
    return array


def train_end_index(n_dates: int, train_fraction: float) -> int:
    return int(math.floor(n_dates * train_fraction))


@dataclass(frozen=True)
class ScalingParams:
    """Per-symbol min/max bounds derived from the training prefix of the dates.

    Symbols without any record in the prefix have NaN bounds, which makes every
    scaled value for them NaN (and drops the windows that need them). The
    bound mappings are read-only views.
    """

    train_end: int
    open_min: Mapping[str, float]
    open_max: Mapping[str, float]
    close_min: Mapping[str, float]
    close_max: Mapping[str, float]

    def __post_init__(self) -> None:
        for name in ("open_min", "open_max", "close_min", "close_max"):
            object.__setattr__(self, name, types.MappingProxyType(dict(getattr(self, name))))

    @staticmethod
    def scale(values, lower, upper):
        return (values - lower) / (upper - lower + EPS)

    def apply(self, panel: PricePanel) -> tuple[pd.DataFrame, pd.DataFrame]:
        symbols = panel.symbols
        o_min = pd.Series(dict(self.open_min), dtype=float).reindex(symbols)
        o_max = pd.Series(dict(self.open_max), dtype=float).reindex(symbols)
        c_min = pd.Series(dict(self.close_min), dtype=float).reindex(symbols)
        c_max = pd.Series(dict(self.close_max), dtype=float).reindex(symbols)
        scaled_open = self.scale(panel.opens, o_min, o_max)
        scaled_close = self.scale(panel.closes, c_min, c_max)
        return scaled_open, scaled_close


def compute_scaling_params(panel: PricePanel, train_fraction: float = DEFAULT_TRAIN_FRACTION) -> ScalingParams:
    """Min/max of open and close per symbol over dates ``[0, floor(n * f))`` only."""
    train_end = train_end_index(len(panel.dates), train_fraction)
    train_opens = panel.opens.iloc[:train_end]
    train_closes = panel.closes.iloc[:train_end]

    def _as_dict(series: pd.Series) -> Dict[str, float]:
        return {str(symbol): float(value) for symbol, value in series.items()}

    params = ScalingParams(
        train_end=train_end,
        open_min=_as_dict(train_opens.min(skipna=True)),
        open_max=_as_dict(train_opens.max(skipna=True)),
        close_min=_as_dict(train_closes.min(skipna=True)),
        close_max=_as_dict(train_closes.max(skipna=True)),
    )
    unbounded = [symbol for symbol, value in params.close_min.items() if math.isnan(value)]
    if unbounded:
        logger.warning("No training-period prices for %s; their windows will be dropped", ", ".join(unbounded))
    return params


@dataclass(frozen=True, eq=False)
class WindowSet:
    X: np.ndarray  # [n, lookback, 2 * S]
    y: np.ndarray  # [n, S * horizon]
    anchor_dates: pd.DatetimeIndex  # first horizon date of each window
    candidates: int

    @property
    def dropped(self) -> int:
        return self.candidates - int(self.X.shape[0])


def candidate_window_count(n_dates: int, lookback: int = DEFAULT_LOOKBACK, horizon: int = DEFAULT_HORIZON) -> int:
    return max(0, n_dates - lookback - horizon + 1)


def build_windows(
    panel: PricePanel,
    params: ScalingParams,
    lookback: int = DEFAULT_LOOKBACK,
    horizon: int = DEFAULT_HORIZON,
) -> WindowSet:
    """Slide a ``lookback``/``horizon`` window over the aligned panel.

    Features for position ``i`` are the scaled (open, close) pairs of dates
    ``[i - lookback, i)``, interleaved per symbol. Labels are 1 where the close
    on each of the dates ``[i, i + horizon)`` is strictly above the close on
    ``i - 1``, ordered symbol-major then day-minor. A window with any missing
    cell anywhere in its span is skipped.
    """
    dates = panel.dates
    n_dates = len(dates)
    n_symbols = len(panel.symbols)
    candidates = candidate_window_count(n_dates, lookback, horizon)

    scaled_open, scaled_close = params.apply(panel)
    # [n_dates, S, 2] -> [n_dates, 2 * S] as open0, close0, open1, close1, ...
    features = np.stack([scaled_open.to_numpy(dtype=float), scaled_close.to_numpy(dtype=float)], axis=2)
    features = features.reshape(n_dates, 2 * n_symbols)
    closes = panel.closes.to_numpy(dtype=float)

    X_rows: List[np.ndarray] = []
    y_rows: List[np.ndarray] = []
    anchors: List[pd.Timestamp] = []
    for i in range(lookback, n_dates - horizon + 1):
        inputs = features[i - lookback : i]
        if np.isnan(inputs).any():
            continue
        base_close = closes[i - 1]
        future_close = closes[i : i + horizon]
        if np.isnan(base_close).any() or np.isnan(future_close).any():
            continue
        labels = (future_close > base_close).T.reshape(-1)
        X_rows.append(inputs.astype(np.float32))
        y_rows.append(labels.astype(np.float32))
        anchors.append(dates[i])

    if X_rows:
        X = np.stack(X_rows)
        y = np.stack(y_rows)
    else:
        X = np.empty((0, lookback, 2 * n_symbols), dtype=np.float32)
        y = np.empty((0, n_symbols * horizon), dtype=np.float32)
    windows = WindowSet(X=X, y=y, anchor_dates=pd.DatetimeIndex(anchors, name="Date"), candidates=candidates)
    logger.info("Built %d windows from %d candidates (%d dropped)", len(X_rows), candidates, windows.dropped)
    return windows


@dataclass(frozen=True, eq=False)
class Dataset:
    X_train: np.ndarray
    y_train: np.ndarray
    X_test: np.ndarray
    y_test: np.ndarray
    symbols: Tuple[str, ...]
    train_dates: pd.DatetimeIndex = field(default_factory=lambda: pd.DatetimeIndex([]))
    test_dates: pd.DatetimeIndex = field(default_factory=lambda: pd.DatetimeIndex([]))
    lookback: int = DEFAULT_LOOKBACK
    horizon: int = DEFAULT_HORIZON
    candidate_windows: int = 0
    dropped_windows: int = 0
    scaling: ScalingParams | None = None

    @property
    def n_train(self) -> int:
        return int(self.X_train.shape[0])

    @property
    def n_test(self) -> int:
        return int(self.X_test.shape[0])

    def summary(self) -> Dict[str, object]:
        return {
            "symbols": list(self.symbols),
            "n_train": self.n_train,
            "n_test": self.n_test,
            "lookback": self.lookback,
            "horizon": self.horizon,
            "candidate_windows": self.candidate_windows,
            "dropped_windows": self.dropped_windows,
            "first_train_anchor": self.train_dates[0].date().isoformat() if len(self.train_dates) else None,
            "last_test_anchor": self.test_dates[-1].date().isoformat() if len(self.test_dates) else None,
        }


def split_windows(
    windows: WindowSet,
    symbols: List[str],
    train_fraction: float = DEFAULT_TRAIN_FRACTION,
    *,
    lookback: int = DEFAULT_LOOKBACK,
    horizon: int = DEFAULT_HORIZON,
    scaling: ScalingParams | None = None,
) -> Dataset:
    """Chronological split at ``floor(n * train_fraction)``; order is preserved."""
    n = int(windows.X.shape[0])
    split = int(math.floor(n * train_fraction))
    return Dataset(
        X_train=_readonly(windows.X[:split].copy()),
        y_train=_readonly(windows.y[:split].copy()),
        X_test=_readonly(windows.X[split:].copy()),
        y_test=_readonly(windows.y[split:].copy()),
        symbols=tuple(symbols),
        train_dates=windows.anchor_dates[:split],
        test_dates=windows.anchor_dates[split:],
        lookback=lookback,
        horizon=horizon,
        candidate_windows=windows.candidates,
        dropped_windows=windows.dropped,
        scaling=scaling,
    )


def build_dataset(
    panel: PricePanel,
    train_fraction: float = DEFAULT_TRAIN_FRACTION,
    lookback: int = DEFAULT_LOOKBACK,
    horizon: int = DEFAULT_HORIZON,
) -> Dataset:
    """Align, scale, window and split a parsed panel.

    Raises ``DataSufficiencyError`` when no complete window survives.
    """
    if not 0.0 < train_fraction < 1.0:
        raise ValueError("train_fraction must be between 0 and 1 (exclusive)")
    if lookback < 1 or horizon < 1:
        raise ValueError("lookback and horizon must be positive")

    aligned = forward_fill_gaps(panel)
    params = compute_scaling_params(aligned, train_fraction)
    windows = build_windows(aligned, params, lookback=lookback, horizon=horizon)
    if windows.X.shape[0] == 0:
        raise DataSufficiencyError(
            f"No valid windows: {len(aligned.dates)} dates give {windows.candidates} candidate windows "
            f"of {lookback}+{horizon} days, all of which were dropped or unavailable"
        )
    dataset = split_windows(
        windows,
        aligned.symbols,
        train_fraction,
        lookback=lookback,
        horizon=horizon,
        scaling=params,
    )
    logger.info("Split %d windows into %d train / %d test", windows.X.shape[0], dataset.n_train, dataset.n_test)
    return dataset


def load_dataset(
    path: Union[str, Path],
    train_fraction: float = DEFAULT_TRAIN_FRACTION,
    lookback: int = DEFAULT_LOOKBACK,
    horizon: int = DEFAULT_HORIZON,
) -> Dataset:
    panel = read_panel_file(path)
    return build_dataset(panel, train_fraction=train_fraction, lookback=lookback, horizon=horizon)
