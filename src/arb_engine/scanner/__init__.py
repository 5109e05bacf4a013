"""Opportunity scanner module."""

from .market_scanner import OpportunityScanner
from .models import ScanCandidate, RejectionRecord
from .rejections import RejectionTracker, format_rejection_reason

__all__ = [
    "OpportunityScanner",
    "ScanCandidate",
    "RejectionRecord",
    "RejectionTracker",
    "format_rejection_reason",
]
