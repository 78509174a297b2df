# config.py
"""
Runtime settings.

Values come from environment variables; a `.env` file in the project root is
loaded first when python-dotenv finds one.
"""

from __future__ import annotations

import os
from decimal import Decimal
from pathlib import Path

from dotenv import load_dotenv

# src/taxgroupcalc/config.py -> parents[2] == project root
PROJECT_ROOT = Path(__file__).resolve().parents[2]
load_dotenv(PROJECT_ROOT / ".env")

DB_URL = os.getenv("TAXGROUPCALC_DB_URL", "sqlite:///./taxgroupcalc.db")
LOG_LEVEL = os.getenv("TAXGROUPCALC_LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("TAXGROUPCALC_LOG_FILE") or None

# Minor-unit precision for currency amounts (2 -> cents)
CURRENCY_DP = int(os.getenv("TAXGROUPCALC_CURRENCY_DP", "2"))

# ---------- Validation rules ----------
NAME_MAX_LENGTH = 50
DESCRIPTION_MAX_LENGTH = 1000
MAX_TAXES_PER_GROUP = 10

# Largest amount or FIXED rate accepted, and the decimal places kept for both
# (rates are stored as Numeric(38, 6))
AMOUNT_MAX = Decimal("999999999999999")
DECIMAL_PLACES_MAX = 6

# ---------- Pagination ----------
PAGE_DEFAULT = 1
LIMIT_DEFAULT = 20
LIMIT_MAX = 100
