# src/tbw/ledger/constants.py
from __future__ import annotations

"""Monetary and wire constants.

- Amounts are ints in base units; 1 coin = 10**8 units.
- Caps in settings are whole coins and are scaled by COIN before use.
"""

# Monetary precision (1 coin = 1e8 units)
COIN_DECIMALS: int = 8
COIN: int = 10**COIN_DECIMALS

# Round size when the host does not report one
DEFAULT_ACTIVE_DELEGATES: int = 53

# Transfer sizing (bytes)
TRANSFER_HEADER_BYTES: int = 59
SIGNATURE_BYTES: int = 64
TRANSFER_COUNT_BYTES: int = 2
BYTES_PER_RECIPIENT: int = 29

# Milestone fallback for recipients per multi-payment transfer
DEFAULT_MAX_RECIPIENTS: int = 64

MAX_MEMO_LENGTH: int = 255
ADDRESS_LENGTH: int = 34
