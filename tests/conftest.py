"""
Register pytest plugins, fixtures, and hooks to be used during test execution.

All fixtures are organized in the fixtures/ directory for better maintainability.
"""

import sys
from pathlib import Path

THIS_DIR = Path(__file__).parent
TESTS_DIR_PARENT = (THIS_DIR / "..").resolve()

# add the parent directory of tests/ to PYTHONPATH
# so that we can use "from tests.<module> import ..." in our tests and fixtures
sys.path.insert(0, str(TESTS_DIR_PARENT))

pytest_plugins = [
    # Users, clock, loaders and storage for the cache engine
    "tests.fixtures.cache_fixtures",
    # Graph token manager and httpx transport mocks
    "tests.fixtures.graph_fixtures",
    # asyncpg pool / connection mocks
    "tests.fixtures.postgres_fixtures",
]
