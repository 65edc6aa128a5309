"""
Pytest configuration and fixtures
Loads environment variables and sets up test infrastructure
"""

import pytest
import os
from pathlib import Path

from fault_handling.options import load_env_file


def pytest_configure(config):
    """Configure pytest and load environment"""
    # Load .env.test if it exists (existing variables win)
    load_env_file(Path(__file__).parent / '.env.test')

    # Register custom markers
    config.addinivalue_line(
        "markers", "postgres: marks tests as requiring a PostgreSQL server"
    )


@pytest.fixture(scope="session")
def postgres_dsn():
    """Connection string for PostgreSQL integration tests, if configured"""
    return os.getenv("DATA_TEST_POSTGRES_DSN")


@pytest.fixture(scope="session")
def skip_if_no_postgres(postgres_dsn):
    """Skip test if no PostgreSQL server is configured"""
    if not postgres_dsn:
        pytest.skip("PostgreSQL not configured (set DATA_TEST_POSTGRES_DSN)")
