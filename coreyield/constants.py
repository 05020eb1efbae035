"""
Protocol-wide constants.

Centralizes magic numbers used across modules.
"""

# Basis points
BPS_DENOMINATOR = 10_000

# AMM quote guards
DEFAULT_POOL_CAP_BPS = 1_000          # single swap may use at most 10% of reserveIn
DEFAULT_MIN_OUTPUT_RATIO_BPS = 100    # output below 1% of input is pathological

# Slippage
DEFAULT_SLIPPAGE_BPS = 50
MAX_SLIPPAGE_BPS = 2_000

# ERC20
MAX_UINT256 = 2**256 - 1
DEFAULT_TOKEN_DECIMALS = 18

# Ledger access
DEFAULT_CONFIRMATION_TIMEOUT_SECONDS = 120.0
DEFAULT_CONFIRMATION_POLL_SECONDS = 2.0
DEFAULT_RPC_TIMEOUT_SECONDS = 30
MAX_READ_RETRIES = 3

# Transaction history
DEFAULT_HISTORY_MAX_RECORDS = 500
DEFAULT_HISTORY_PAGE_SIZE = 10

# Faucet
DEFAULT_FAUCET_URL = "https://faucet.test.btcs.network/"
