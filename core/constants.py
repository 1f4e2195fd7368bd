"""
Core Module - Constants.

============================================================
RESPONSIBILITY
============================================================
Single source of truth for chain-level magic values and
store key layouts shared across packages.

============================================================
"""

# ============================================================
# UNITS
# ============================================================

WEI_PER_GWEI = 10 ** 9
WEI_PER_ETHER = 10 ** 18

# ============================================================
# CHAIN RULES
# ============================================================

# Intrinsic gas of the cheapest valid transaction
MIN_TX_GAS = 21_000

# Gas price below which a transaction is treated as spam
MIN_GAS_PRICE_WEI = 1 * WEI_PER_GWEI

# ERC-20 transfer(address,uint256)
ERC20_TRANSFER_SELECTOR = "0xa9059cbb"

# ============================================================
# OUTBOUND TOPICS
# ============================================================

TOPIC_TRANSACTIONS = "transactions"
TOPIC_BLOCKS = "blocks"
TOPIC_ALERTS = "alerts"

# ============================================================
# KEY-VALUE STORE LAYOUT
# ============================================================

ADDRESS_STATS_KEY = "address_stats:{network}:{address}"
LATEST_BLOCK_KEY = "latest_block:{network}"
CHECKPOINT_KEY = "checkpoint:{network}"
DEDUP_KEY = "dedup:{network}:{tx_hash}"
HIGH_RISK_TX_KEY = "high_risk_tx:{network}"
TIMESERIES_KEY = "timeseries:{measurement}:{network}"
