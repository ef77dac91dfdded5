"""Persistence layer for the billing engine."""

from billing_engine.persistence.base import BillingRepository
from billing_engine.persistence.memory import InMemoryBillingRepository

__all__ = ["BillingRepository", "InMemoryBillingRepository"]
