"""Helper utilities for DataFrame CSV I/O.

This module provides:
- save_df_to_csv: CSV writer with optional directory creation and append mode
  that only writes the header when the file is new.
- load_df_from_csv: CSV reader with parse_dates support.
"""

from __future__ import annotations

import os
from typing import Optional, Union

import pandas as pd


# Method for saving data to CSV from a DataFrame
def save_df_to_csv(
    df: pd.DataFrame,
    file_path: str,
    *,
    index: bool = False,
    create_dirs: bool = True,
    float_format: Optional[str] = None,
    mode: str = "w",
    na_rep: str = "",
    **kwargs,
) -> None:
    """Save a DataFrame to CSV.

    Parameters
    - df: DataFrame to write
    - file_path: Destination CSV path
    - index: Whether to write the index
    - create_dirs: Create parent directories if missing
    - float_format: Format string for floats (e.g., '%.2f')
    - mode: 'w' to overwrite, 'a' to append (header skipped if the file already has content)
    - na_rep: Representation for NaNs
    - kwargs: Passed through to pandas.DataFrame.to_csv

    Raises
    - ValueError: If df is not a pandas DataFrame
    - OSError: On I/O errors when writing the file
    """
    if not isinstance(df, pd.DataFrame):
        raise ValueError("df must be a pandas DataFrame")

    parent = os.path.dirname(os.path.abspath(file_path))
    if create_dirs and parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    if "header" not in kwargs and mode == "a":
        kwargs["header"] = not (os.path.exists(file_path) and os.path.getsize(file_path) > 0)

    df.to_csv(
        file_path,
        index=index,
        float_format=float_format,
        mode=mode,
        na_rep=na_rep,
        **kwargs,
    )

# Method for loading data from CSV
def load_df_from_csv(
    file_path: str,
    *,
    parse_dates: Optional[Union[bool, list[str]]] = None,
    **kwargs,
) -> pd.DataFrame:
    """Load a CSV into a DataFrame.

    Raises
    - FileNotFoundError: If the path does not exist
    - pd.errors.ParserError: If pandas fails to parse the CSV
    """
    if not os.path.exists(file_path):
        raise FileNotFoundError(f"CSV not found at '{file_path}'")

    return pd.read_csv(file_path, parse_dates=parse_dates, **kwargs)
