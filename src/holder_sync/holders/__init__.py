"""Holder data processing - ranking, shares and wallet values."""

from holder_sync.holders.processor import HolderDataProcessor, WalletValues

__all__ = ["HolderDataProcessor", "WalletValues"]
