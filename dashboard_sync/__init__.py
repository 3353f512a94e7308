"""
Reporting Dashboard Sync
External data sync engine for the multi-tenant reporting dashboard.
"""

__version__ = '1.0.0'
