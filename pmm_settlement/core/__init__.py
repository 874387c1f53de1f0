"""
Core package.

Pure helpers with no IO: amount extraction, slippage math, JSON encoding.
"""

from pmm_settlement.core.amounts import extract_real_amount
from pmm_settlement.core.slippage import SlippageCheckResult, SlippageGuard, format_bps
