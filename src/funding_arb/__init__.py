"""Cross-venue funding rate arbitrage engine."""

__version__ = "0.1.0"
