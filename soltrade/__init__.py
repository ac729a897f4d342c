"""Strategy execution core for automated Solana token trading."""

__version__ = "0.1.0"
