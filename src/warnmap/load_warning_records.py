#!/usr/bin/env python3
"""Load warning point records from the published spreadsheet CSV."""
from __future__ import annotations

import io
import os
from pathlib import Path
from typing import Dict, List, Union

import pandas as pd
import requests

CSV_URL = os.environ.get(
    'WARNMAP_CSV_URL',
    'https://docs.google.com/spreadsheets/d/e/2PACX-1vSosfBP3StMyRUzwI0tUZPsLjPVH1zePCz8gZbTMOzjOvnonbmNCoy5VT46UxO0qdqb-Wm9EqTpXp8y'
    '/pub?gid=536600083&single=true&output=csv',
)
FETCH_TIMEOUT = float(os.environ.get('WARNMAP_TIMEOUT', 30))

RECORD_COLUMNS = ['lat', 'lng', 'warning_level', 'icon_url']

Source = Union[str, Path]


class SourceLoadError(RuntimeError):
    """The source table could not be fetched or parsed."""


def _is_url(source: Source) -> bool:
    return isinstance(source, str) and source.lower().startswith(('http://', 'https://'))


def _fetch_csv_text(url: str, timeout: float) -> str:
    response = requests.get(url, timeout=timeout)
    response.raise_for_status()
    return response.text


def _read_csv_text(source: Source, timeout: float) -> str:
    if _is_url(source):
        return _fetch_csv_text(str(source), timeout)
    path = Path(source)
    if not path.exists():
        raise FileNotFoundError(f"Missing source file: {path}")
    return path.read_text(encoding='utf-8-sig')


def _parse_csv_text(text: str) -> pd.DataFrame:
    # Keep every cell as the raw string; warning levels and coordinates are
    # interpreted downstream.
    return pd.read_csv(
        io.StringIO(text.lstrip('\ufeff')),
        dtype=str,
        index_col=False,
        keep_default_na=False,
        skip_blank_lines=True,
    )


def _fill_missing_columns(df: pd.DataFrame) -> pd.DataFrame:
    missing = [col for col in RECORD_COLUMNS if col not in df.columns]
    if missing:
        print(f"⚠️  Source is missing columns {missing}; affected fields are treated as empty")
        df = df.copy()
        for col in missing:
            df[col] = ''
    return df


def records_from_frame(df: pd.DataFrame) -> List[Dict]:
    # Short rows come back as NaN even with keep_default_na=False.
    df = _fill_missing_columns(df).fillna('')
    records = []
    for idx, row in enumerate(df.to_dict(orient='records'), start=1):
        records.append(
            {
                'row': idx,
                'lat': row['lat'],
                'lng': row['lng'],
                'warning_level': row['warning_level'],
                'icon_url': row['icon_url'],
                'raw': row,
            }
        )
    return records


def load_records(source: Source = CSV_URL, timeout: float = FETCH_TIMEOUT) -> List[Dict]:
    """Fetch and parse the warning table into records in source row order.

    A single attempt is made. Any network, HTTP, file or parse failure is
    raised as ``SourceLoadError`` with the original exception chained.
    """
    try:
        text = _read_csv_text(source, timeout)
        df = _parse_csv_text(text)
    except requests.RequestException as exc:
        raise SourceLoadError(f"Failed to fetch {source}: {exc}") from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise SourceLoadError(f"Failed to read {source}: {exc}") from exc
    except (pd.errors.EmptyDataError, pd.errors.ParserError) as exc:
        raise SourceLoadError(f"Failed to parse {source}: {exc}") from exc
    return records_from_frame(df)
