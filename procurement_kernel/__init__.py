"""
Procurement Kernel

Purchase order lifecycle core with:
- Compare-and-set status transitions on a versioned order record
- Append-only goods receipts and stock ledger
- Per-order serialization of multi-step operations
- Structured, typed errors and JSON logging
"""

__version__ = "0.1.0"
