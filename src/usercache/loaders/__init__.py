"""
Loaders Module

Adapters that read user records from the upstream directory.
"""

from usercache.loaders.base import UserDataLoader
from usercache.loaders.fixture_loader import FixtureUserDataLoader
from usercache.loaders.graph_client import GraphClient
from usercache.loaders.graph_loader import GraphUserDataLoader

__all__ = [
    "UserDataLoader",
    "FixtureUserDataLoader",
    "GraphClient",
    "GraphUserDataLoader",
]
