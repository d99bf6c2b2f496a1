"""
Unit tests for the JSON / text log formatters
"""

import json
import logging
import os
import sys

import numpy as np

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from common.logging_setup import JsonFormatter, TextFormatter


def _record(msg="Filtered matches", extra=None, exc_info=None):
    record = logging.LogRecord("matching.filters", logging.INFO, __file__, 1, msg, None, exc_info)
    if extra is not None:
        record.extra = extra
    return record


class TestJsonFormatter:
    """Test cases for the one-object-per-line formatter"""

    def test_fields(self):
        record = _record()
        row = json.loads(JsonFormatter().format(record))
        assert row["t"] == int(record.created * 1000)
        assert row["lvl"] == "INFO"
        assert row["name"] == "matching.filters"
        assert row["msg"] == "Filtered matches"
        assert "extra" not in row

    def test_numpy_values_in_extra(self):
        extra = {"out": np.int64(12), "ms": np.float32(1.5), "t": np.array([0.1, 0.2, 1.0]), "policy": "ratio"}
        row = json.loads(JsonFormatter().format(_record(extra=extra)))
        assert row["extra"]["out"] == 12
        assert row["extra"]["ms"] == 1.5
        assert row["extra"]["t"] == [0.1, 0.2, 1.0]
        assert row["extra"]["policy"] == "ratio"

    def test_exception(self):
        try:
            raise ValueError("bad descriptor width")
        except ValueError:
            record = _record(exc_info=sys.exc_info())
        row = json.loads(JsonFormatter().format(record))
        assert "bad descriptor width" in row["exc_info"]


class TestTextFormatter:
    def test_appends_extra(self):
        line = TextFormatter().format(_record(extra={"in": 80, "out": 60}))
        assert line.endswith("Filtered matches in=80 out=60")
