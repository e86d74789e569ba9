"""
Fleet Reconciler: document reconciliation for fleet compliance records.

Architecture: Raw extraction → Extraction Validator → Reconciliation Engine → Vehicle record
Philosophy:  Never hard-fail on noisy input. Score it, flag it, keep going.
"""

__version__ = "1.0.0"
