"""
Motor de sincronización incremental Iugu -> PostgreSQL.
"""

__version__ = "1.0.0"
