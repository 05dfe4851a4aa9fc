"""
Revenue Settlement & Transaction Ledger for media licensing

This module provides:
- Processor fee, tier revenue split and chargeback reserve calculators
- Pool (collection) revenue distribution across member businesses
- An append-only transaction ledger: pending → completed → refunded / disputed
- The license lifecycle and its counter effects
- Idempotent reconciliation of payment provider events
- Payment, payout, refund and reserve release flows
"""

from .calculators import RevenueSplit, ReserveBreakdown, compute_fee, reserve, split, split_all_tiers
from .models import (
    Business,
    License,
    LicenseStatus,
    TransactionKind,
    TransactionRecord,
    TransactionStatus,
)
from .pools import PoolMembership, distribute, group_by_pool
from .reconciler import EventReconciler
from .service import SettlementService
from .storage import InMemoryStorage, SettlementStore
from .tiers import TierCatalog, default_catalog

__all__ = [
    "RevenueSplit",
    "ReserveBreakdown",
    "compute_fee",
    "reserve",
    "split",
    "split_all_tiers",
    "Business",
    "License",
    "LicenseStatus",
    "TransactionKind",
    "TransactionRecord",
    "TransactionStatus",
    "PoolMembership",
    "distribute",
    "group_by_pool",
    "EventReconciler",
    "SettlementService",
    "InMemoryStorage",
    "SettlementStore",
    "TierCatalog",
    "default_catalog",
]
