"""
Feature flag adapters.

Flags gate optional pipeline stages such as the downstream analysis trigger.
EnvFeatureFlags reads FEATURE_<NAME> environment variables; the settings
table adapter reads the platform's key/value system settings, where boolean
values are stored as the string "true".
"""

import os
import re
import logging

from .collaborators import FeatureFlags
from .vector_store import VectorStore

logger = logging.getLogger(__name__)

TRUE_VALUES = {"1", "true", "yes", "on"}


def _parse_bool(value, default: bool) -> bool:
    if value is None:
        return default
    return str(value).strip().lower() in TRUE_VALUES


class EnvFeatureFlags(FeatureFlags):
    """Flags from environment variables, e.g. "analysis.scan" -> FEATURE_ANALYSIS_SCAN."""

    def __init__(self, prefix: str = "FEATURE_"):
        self.prefix = prefix

    def env_name(self, name: str) -> str:
        return self.prefix + re.sub(r"[^A-Za-z0-9]+", "_", name).upper()

    def is_enabled(self, name: str, default: bool = False) -> bool:
        return _parse_bool(os.getenv(self.env_name(name)), default)


class SettingsTableFeatureFlags(FeatureFlags):
    """Flags from the record store's system settings table."""

    def __init__(self, store: VectorStore, table_name: str = "system_settings"):
        self._store = store
        self._table_name = table_name

    def is_enabled(self, name: str, default: bool = False) -> bool:
        sql = f"SELECT value FROM {self._table_name} WHERE key = %s"

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (name,))
                row = cur.fetchone()
            conn.commit()
            return row

        row = self._store.execute_with_retry(_op, "feature_flag")
        if row is None:
            return default
        return _parse_bool(row["value"], default)
