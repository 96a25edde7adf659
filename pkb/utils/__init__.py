"""
Shared utility functions for PKB services.
"""

from pkb.utils.datetime_utils import make_aware, to_utc_iso, parse_timestamp
from pkb.utils.db_paths import get_crm_db_path

__all__ = ["make_aware", "to_utc_iso", "parse_timestamp", "get_crm_db_path"]
