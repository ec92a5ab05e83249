"""
Broker history export → closed position descriptors.

Reads the "Positions" table of an MT5 account history report saved as CSV:

    Time, Position, Symbol, Type, Volume, Price, S / L, T / P, Time, Price, Commission, Swap, Profit

The two Time/Price pairs are open and close. pandas suffixes the duplicate
headers (Time.1, Price.1); mapping is done by column position so localized
headers work too. Output rows are plain descriptor dicts for the normalizer,
so validation and rejection reporting stay in one place.

Usage:
    descriptors = read_positions_report("ReportHistory-2958.csv")
    batch = normalizer.normalize_many("2958", descriptors, SourceKind.IMPORTED_CLOSED)
"""

from pathlib import Path
from typing import Any

import pandas as pd
from loguru import logger

# Column position → descriptor field in an MT5 Positions table
MT5_POSITION_COLUMNS: dict[int, str] = {
    0: "openTime",
    1: "ticketId",
    2: "symbol",
    3: "side",
    4: "volume",
    5: "openPrice",
    8: "closeTime",
    9: "closePrice",
    10: "commission",
    11: "swap",
    12: "pnl",
}

_SECTION_MARKERS = ("orders", "deals", "open positions", "working orders")


def read_positions_report(
    path: str | Path,
    sep: str = ",",
    decimal_comma: bool = False,
) -> list[dict[str, Any]]:
    """Parse an MT5 Positions CSV into closed descriptors.

    Rows whose Position column is not a numeric ticket are dropped (section
    titles, blank lines, the totals row). Parsing stops at the next report
    section (Orders/Deals).

    Args:
        path: CSV file.
        sep: Field separator.
        decimal_comma: Numbers use ',' as the decimal separator.
    """
    df = pd.read_csv(
        path, sep=sep, dtype=str, keep_default_na=False, skip_blank_lines=True
    ).fillna("")
    if df.shape[1] < len(MT5_POSITION_COLUMNS) + 2:
        raise ValueError(
            f"{path}: expected at least 13 columns in a Positions report, got {df.shape[1]}"
        )
    return _frame_to_descriptors(df, decimal_comma=decimal_comma)


def _frame_to_descriptors(df: pd.DataFrame, decimal_comma: bool = False) -> list[dict[str, Any]]:
    first_col = df.iloc[:, 0].str.strip().str.lower()
    stop_rows = first_col[first_col.isin(_SECTION_MARKERS)].index
    if len(stop_rows) > 0:
        df = df.loc[: stop_rows[0] - 1]

    tickets = df.iloc[:, 1].str.strip()
    trades = df[tickets.str.fullmatch(r"\d+")]
    dropped = len(df) - len(trades)
    if dropped:
        logger.debug("Report import: ignored {} non-trade rows", dropped)

    descriptors: list[dict[str, Any]] = []
    for _, row in trades.iterrows():
        descriptor: dict[str, Any] = {}
        for position, field in MT5_POSITION_COLUMNS.items():
            value = str(row.iloc[position]).strip()
            if decimal_comma and field not in ("openTime", "closeTime", "ticketId", "symbol", "side"):
                value = value.replace(".", "").replace(",", ".")
            descriptor[field] = value.replace(" ", "") if field in ("volume", "pnl") else value
        descriptors.append(descriptor)

    logger.info("Report import: parsed {} closed positions", len(descriptors))
    return descriptors
