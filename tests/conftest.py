# tests/conftest.py
# Point the app at a throwaway SQLite file BEFORE taxgroupcalc.db is imported.

from __future__ import annotations

import os
import tempfile

import pytest

_TMP_DIR = tempfile.mkdtemp(prefix="taxgroupcalc-tests-")
os.environ["TAXGROUPCALC_DB_URL"] = f"sqlite:///{os.path.join(_TMP_DIR, 'test.db')}"
os.environ.setdefault("TAXGROUPCALC_LOG_LEVEL", "WARNING")

from rule_factories import fixed, pct  # noqa: E402


@pytest.fixture
def invoice_rules():
    """10% + 5% + flat 2, the canonical example."""
    return [pct("gst", "0.10", "GST"), pct("pst", "0.05", "PST"), fixed("eco", "2", "Eco fee")]
