"""
Stake Ledger - time-locked staking with continuously accruing rewards.

Participants lock tokens into tier positions and earn from a shared daily
emission, split pro rata by stake.
"""

__version__ = "0.1.0"
