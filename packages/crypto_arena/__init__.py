# Copyright 2024 CryptoArena Contributors
# SPDX-License-Identifier: Apache-2.0

"""
CryptoArena - Backtesting arena for crypto trading contestants.

Provides:
- Deterministic step-loop simulator replaying historical bars
- Per-contestant portfolio ledger shared with the live portfolio manager
- Accumulator, grid and language-model contestants
"""

__version__ = "0.1.0"
