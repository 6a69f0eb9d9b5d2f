"""
billsync: incremental sync of practice-management billing records to a
time-tracking service.
"""

__version__ = "0.1.0"
