"""
SDK for CyberKey.

Provides programmatic access to provider balance checks.
"""

from .balance_client import BalanceClient, BalanceResponse

__all__ = ["BalanceClient", "BalanceResponse"]
