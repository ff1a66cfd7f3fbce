"""Holder Sync - top-holder and price synchronization for tracked DeFi pools."""

__version__ = "0.1.0"
