"""
Fast JSON utilities backed by orjson.

Usage:
    from pmm_settlement.core.json_utils import dumps, loads

    log.info(dumps({"event": "rebalance_verified", "real_amount": "5000"}))
"""

from __future__ import annotations

from typing import Any

import orjson


def dumps(obj: Any) -> str:
    """Compact JSON encode to string."""
    return orjson.dumps(obj).decode("utf-8")


def dumps_pretty(obj: Any) -> bytes:
    """Indented, key-sorted encode for files meant to be read by operators."""
    return orjson.dumps(obj, option=orjson.OPT_INDENT_2 | orjson.OPT_SORT_KEYS)


def loads(s: str | bytes) -> Any:
    return orjson.loads(s)
