"""Exceptions raised by the invoice memory pipeline."""

from __future__ import annotations


class InvoiceMemoryError(RuntimeError):
    pass


class InvalidInvoiceError(InvoiceMemoryError, ValueError):
    """Required identifiers (invoice id, vendor) are missing."""


class MemoryEntryNotFoundError(InvoiceMemoryError):
    pass


class UnknownMemoryStoreError(InvoiceMemoryError, ValueError):
    pass
