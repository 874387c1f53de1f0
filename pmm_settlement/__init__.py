"""
PMM settlement engine.

Rebalances BTC settlement proceeds into USDC through the NEAR 1Click swap
venue and dispatches outbound trade payouts on EVM, Bitcoin and Solana.
"""

__version__ = "0.1.0"
