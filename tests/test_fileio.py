"""Tests for atomic result writes."""

import json

import numpy as np
import pandas as pd
import pytest

from clustercorr.utils.fileio import atomic_write_csv, atomic_write_json


@pytest.fixture
def table():
    return pd.DataFrame(
        {'covariate': ['disease', None], 'p': [0.01, np.nan], 'coef': [0.2, np.nan]},
        index=pd.Index(['c1', 'c2'], name='cluster_id'),
    )


class TestAtomicWriteCsv:

    def test_round_trip(self, table, tmp_path):
        path = tmp_path / "out.csv"
        atomic_write_csv(path, table)
        written = pd.read_csv(path, index_col=0)
        assert list(written.index) == ['c1', 'c2']
        assert written.loc['c1', 'p'] == pytest.approx(0.01)
        assert np.isnan(written.loc['c2', 'p'])

    def test_tab_separated(self, table, tmp_path):
        path = tmp_path / "out.tsv"
        atomic_write_csv(path, table, sep="\t")
        assert path.read_text().splitlines()[0].split("\t") == ['cluster_id', 'covariate', 'p', 'coef']

    def test_no_temp_files_left(self, table, tmp_path):
        atomic_write_csv(tmp_path / "out.csv", table)
        assert [p.name for p in tmp_path.iterdir()] == ["out.csv"]

    def test_failure_keeps_previous_file(self, tmp_path):
        path = tmp_path / "out.csv"
        path.write_text("previous\n")

        class _Broken:
            def to_csv(self, *args, **kwargs):
                raise RuntimeError("disk full")

        with pytest.raises(RuntimeError):
            atomic_write_csv(path, _Broken())

        assert path.read_text() == "previous\n"
        assert [p.name for p in tmp_path.iterdir()] == ["out.csv"]


class TestAtomicWriteJson:

    def test_round_trip(self, tmp_path):
        path = tmp_path / "config.json"
        atomic_write_json(path, {"seed": 1, "schedule": [[20, 2], [100, None]]})
        assert json.loads(path.read_text()) == {"seed": 1, "schedule": [[20, 2], [100, None]]}
