"""
Shift Reconciliation System with Optimistic Concurrency

Keeps a shift store consistent while local edits, bulk changes and external
calendar synchronisation propose changes concurrently, with an approval
workflow for conflicting changes and an append-only audit log.
"""

__version__ = "1.0.0"
__author__ = "Shift Scheduler Team"
