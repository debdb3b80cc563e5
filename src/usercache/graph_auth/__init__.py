"""
Graph Auth Module

Client-credentials token acquisition and in-memory caching for Microsoft Graph.
"""

from usercache.graph_auth.token_gen import get_graph_token
from usercache.graph_auth.token_manager import GraphTokenManager

__all__ = [
    "get_graph_token",
    "GraphTokenManager",
]
