"""
Atomic writes for result tables.

Batch runs over thousands of clusters can be interrupted. Results go to a
temporary file in the destination directory first and are moved into place
with ``os.replace()``, so a reader sees either the previous file or the
complete new one.
"""

from __future__ import annotations

import json
import os
import tempfile
from contextlib import contextmanager
from typing import Any, Iterator, TextIO

import pandas as pd

__all__ = ['atomic_write_csv', 'atomic_write_json']


@contextmanager
def _atomic_handle(path: str | os.PathLike) -> Iterator[TextIO]:
    path = os.fspath(path)
    dir_path = os.path.dirname(path) or "."
    tmp_path: str | None = None
    try:
        with tempfile.NamedTemporaryFile(
            mode="w", dir=dir_path, suffix=".tmp", delete=False, newline=""
        ) as tmp:
            tmp_path = tmp.name
            yield tmp
        os.replace(tmp_path, path)
    except BaseException:
        if tmp_path is not None and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def atomic_write_csv(
    path: str | os.PathLike,
    frame: pd.DataFrame,
    *,
    sep: str = ",",
    index: bool = True,
) -> None:
    """Write a results DataFrame as delimited text, atomically.

    Parameters
    ----------
    path:
        Destination file path.
    frame:
        Table to write (e.g. the output of ``run_clusters``).
    sep:
        Field delimiter; use ``"\\t"`` for TSV.
    index:
        Whether to write the row index (cluster ids).
    """
    with _atomic_handle(path) as handle:
        frame.to_csv(handle, sep=sep, index=index, na_rep="NaN")


def atomic_write_json(path: str | os.PathLike, data: Any, *, indent: int = 2) -> None:
    """Write a JSON-serializable object (e.g. a config dict) atomically."""
    with _atomic_handle(path) as handle:
        json.dump(data, handle, indent=indent)
