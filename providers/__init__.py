"""
Providers - Concrete data-source bindings for DataManager
"""

from .sqlite import SqliteDataManager, SqliteTransientFaultDetector

# Conditionally import PostgreSQL (requires psycopg2)
try:
    from .postgres import PostgresDataManager, PostgresTransientFaultDetector
    POSTGRES_AVAILABLE = True
except ImportError:
    POSTGRES_AVAILABLE = False
    PostgresDataManager = None
    PostgresTransientFaultDetector = None

__all__ = [
    'SqliteDataManager',
    'SqliteTransientFaultDetector',
    'PostgresDataManager',
    'PostgresTransientFaultDetector',
    'POSTGRES_AVAILABLE',
]
