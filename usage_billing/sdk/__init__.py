"""
SDK for the remote billing service.

Provides the capability interface and its HTTP implementation.
"""

from .http_client import HttpBillingService
from .service import BillingService

__all__ = ["BillingService", "HttpBillingService"]
