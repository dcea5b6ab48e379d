import os
from typing import Dict, List, Optional

import numpy as np
import pandas as pd
import pytest


def make_panel_text(
    closes: Dict[str, List[Optional[float]]],
    start: str = "2024-01-01",
    extra_columns: bool = False,
) -> str:
    """CSV text for a panel; ``None`` leaves the (date, symbol) row out."""
    n_dates = len(next(iter(closes.values())))
    dates = pd.date_range(start, periods=n_dates, freq="D")
    header = "Date,Symbol,Open,Close"
    if extra_columns:
        header = "Volume,Close,Name,Symbol,Date,Open"
    lines = [header]
    for idx, date in enumerate(dates):
        stamp = date.strftime("%Y-%m-%d")
        for symbol, series in closes.items():
            close = series[idx]
            if close is None:
                continue
            open_ = close - 0.5
            if extra_columns:
                lines.append(f'1000,{close},"{symbol} Holdings, Inc.",{symbol},{stamp},{open_}')
            else:
                lines.append(f"{stamp},{symbol},{open_},{close}")
    return "\n".join(lines) + "\n"


@pytest.fixture
def two_symbol_closes() -> Dict[str, List[Optional[float]]]:
    rng = np.random.default_rng(7)
    steps = rng.choice([-1.0, 0.0, 1.0, 2.0], size=(20, 2))
    base = np.array([100.0, 50.0]) + np.cumsum(steps, axis=0)
    return {"AAA": base[:, 0].tolist(), "BBB": base[:, 1].tolist()}


@pytest.fixture
def panel_csv(tmp_path, two_symbol_closes):
    path = tmp_path / "panel.csv"
    path.write_text(make_panel_text(two_symbol_closes), encoding="utf-8")
    return path


@pytest.fixture(autouse=True)
def isolated_artifact_dirs(monkeypatch, tmp_path):
    from panel_direction import config as config_module
    from panel_direction import model as model_module

    monkeypatch.setattr(model_module, "MODEL_DIR", tmp_path / "models")
    monkeypatch.setattr(config_module, "REPORT_DIR", tmp_path / "reports")
    for name in list(os.environ):
        if name.startswith("PANEL_DIRECTION_"):
            monkeypatch.delenv(name, raising=False)
    return tmp_path
