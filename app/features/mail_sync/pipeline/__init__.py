"""
Reconciliation pipeline: contact resolution and page application.
"""

from .contact_resolver import ContactMatch, ContactResolver, normalize_address
from .reconciler import Reconciler

__all__ = ["ContactMatch", "ContactResolver", "Reconciler", "normalize_address"]
