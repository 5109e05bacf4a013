"""Capital deployment module."""

from .manager import CapitalManager, IdleCapitalAlert

__all__ = ["CapitalManager", "IdleCapitalAlert"]
