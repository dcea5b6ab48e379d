"""Panel loading utilities: CSV parsing and gap repair across symbols."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import pandas as pd

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ("Date", "Symbol", "Open", "Close")
CSV_SUFFIX = ".csv"


class FormatError(ValueError):
    """The input is not a usable price panel (wrong file type or missing columns)."""


class DataSufficiencyError(ValueError):
    """No valid supervised window could be built from the panel."""


@dataclass(frozen=True)
class PanelRecord:
    open: float
    close: float


@dataclass(frozen=True, eq=False)
class PricePanel:
    """Date x symbol grid of open/close prices.

    ``opens`` and ``closes`` share a sorted ``DatetimeIndex`` and the canonical
    (sorted) symbol columns. A missing cell is NaN in both frames.
    """

    opens: pd.DataFrame
    closes: pd.DataFrame
    skipped_rows: int = 0

    @property
    def symbols(self) -> List[str]:
        return [str(col) for col in self.opens.columns]

    @property
    def dates(self) -> pd.DatetimeIndex:
        return pd.DatetimeIndex(self.opens.index)

    def record(self, date: object, symbol: str) -> Optional[PanelRecord]:
        key = pd.Timestamp(date)
        if key not in self.opens.index or symbol not in self.opens.columns:
            return None
        open_ = self.opens.at[key, symbol]
        close = self.closes.at[key, symbol]
        if pd.isna(open_) or pd.isna(close):
            return None
        return PanelRecord(open=float(open_), close=float(close))

    def presence(self) -> pd.DataFrame:
        return self.opens.notna() & self.closes.notna()

    def missing_cells(self) -> int:
        return int((~self.presence()).to_numpy().sum())


def split_csv_line(line: str) -> List[str]:
    """Split on commas, treating ``"..."`` spans as atomic and dropping the quotes."""
    fields: List[str] = []
    current: List[str] = []
    in_quote = False
    for char in line:
        if char == '"':
            in_quote = not in_quote
            continue
        if char == "," and not in_quote:
            fields.append("".join(current))
            current = []
            continue
        current.append(char)
    fields.append("".join(current))
    return fields


def _parse_price(text: str) -> Optional[float]:
    try:
        value = float(text)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(value):
        return None
    return value


def _parse_date(text: str, cache: Dict[str, Optional[pd.Timestamp]]) -> Optional[pd.Timestamp]:
    if text in cache:
        return cache[text]
    parsed = pd.to_datetime(text, errors="coerce") if text else pd.NaT
    if pd.isna(parsed):
        result = None
    else:
        stamp = pd.Timestamp(parsed)
        if stamp.tzinfo is not None:
            stamp = stamp.tz_convert(None)
        result = stamp.normalize()
    cache[text] = result
    return result


def _empty_frame(symbols: List[str]) -> pd.DataFrame:
    index = pd.DatetimeIndex([], name="Date")
    return pd.DataFrame(index=index, columns=pd.Index(symbols, name="Symbol"), dtype=float)


def parse_panel(text: str) -> PricePanel:
    """Parse delimited text with a ``Date,Symbol,Open,Close`` header into a panel.

    Rows with non-numeric prices or unparseable dates are skipped. A repeated
    (date, symbol) pair keeps the last row seen.
    """
    lines = [line for line in text.strip().splitlines() if line.strip()]
    if not lines:
        raise FormatError("CSV must contain Date,Symbol,Open,Close")

    header = [name.strip() for name in split_csv_line(lines[0])]
    missing = [name for name in REQUIRED_COLUMNS if name not in header]
    if missing:
        raise FormatError(f"CSV must contain Date,Symbol,Open,Close (missing: {', '.join(missing)})")
    date_idx, sym_idx, open_idx, close_idx = (header.index(name) for name in REQUIRED_COLUMNS)
    width = max(date_idx, sym_idx, open_idx, close_idx) + 1

    cells: Dict[Tuple[pd.Timestamp, str], Tuple[float, float]] = {}
    date_cache: Dict[str, Optional[pd.Timestamp]] = {}
    skipped = 0
    for line in lines[1:]:
        row = split_csv_line(line)
        if len(row) < width:
            skipped += 1
            continue
        open_ = _parse_price(row[open_idx])
        close = _parse_price(row[close_idx])
        symbol = row[sym_idx].strip()
        date = _parse_date(row[date_idx].strip(), date_cache)
        if open_ is None or close is None or date is None or not symbol:
            skipped += 1
            continue
        cells[(date, symbol)] = (open_, close)

    symbols = sorted({symbol for _, symbol in cells})
    if not cells:
        logger.info("Parsed panel has no valid rows (%d skipped)", skipped)
        return PricePanel(opens=_empty_frame(symbols), closes=_empty_frame(symbols), skipped_rows=skipped)

    frame = pd.DataFrame(
        [(date, symbol, o, c) for (date, symbol), (o, c) in cells.items()],
        columns=list(REQUIRED_COLUMNS),
    )
    opens = frame.pivot(index="Date", columns="Symbol", values="Open").sort_index().reindex(columns=symbols)
    closes = frame.pivot(index="Date", columns="Symbol", values="Close").sort_index().reindex(columns=symbols)
    opens = opens.astype(float)
    closes = closes.astype(float)

    logger.info(
        "Parsed %d rows into %d dates x %d symbols (%d rows skipped)",
        len(cells),
        len(opens.index),
        len(symbols),
        skipped,
    )
    return PricePanel(opens=opens, closes=closes, skipped_rows=skipped)


def read_panel_file(path: Union[str, Path]) -> PricePanel:
    file_path = Path(path)
    if file_path.suffix.lower() != CSV_SUFFIX:
        raise FormatError(f"Please provide a .csv file (got {file_path.name!r})")
    text = file_path.read_text(encoding="utf-8-sig")
    return parse_panel(text)


def forward_fill_gaps(panel: PricePanel) -> PricePanel:
    """Carry each symbol's last record forward over the date axis.

    Date ``i`` is filled from date ``i - 1`` after that date has itself been
    filled, so runs of missing days are repaired in a single ordered scan.
    Leading gaps (before a symbol's first record) stay missing. The input panel
    is left untouched and a new snapshot is returned.
    """
    present = panel.presence()
    opens = panel.opens.where(present)
    closes = panel.closes.where(present)
    filled_opens = opens.ffill()
    filled_closes = closes.ffill()

    before = int((~present).to_numpy().sum())
    after = int(filled_opens.isna().to_numpy().sum())
    if before:
        logger.info("Forward-filled %d missing cells (%d remain unresolved)", before - after, after)
    return PricePanel(
        opens=filled_opens.astype(float),
        closes=filled_closes.astype(float),
        skipped_rows=panel.skipped_rows,
    )
