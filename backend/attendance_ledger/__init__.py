"""
Attendance ledger with derived per-student aggregates, a hash-chained audit
trail, bulk roster management and a reversible migration pipeline.
"""

__version__ = "1.0.0"
