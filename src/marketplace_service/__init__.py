"""Local services marketplace: tasks, bids, escrow and wallets."""

__version__ = "0.1.0"
