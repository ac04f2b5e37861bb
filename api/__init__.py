"""HTTP surface for the Stake Ledger."""
