"""
Enrichment Module

Secondary pass that overlays usage statistics onto cached users.
"""

from usercache.enrichment.stats import CopilotStatsEnricher
from usercache.enrichment.stats_loaders import FixtureStatsLoader
from usercache.enrichment.stats_loaders import GraphCopilotStatsLoader
from usercache.enrichment.stats_loaders import StatsLoader
from usercache.enrichment.stats_loaders import parse_copilot_usage_csv

__all__ = [
    "CopilotStatsEnricher",
    "StatsLoader",
    "GraphCopilotStatsLoader",
    "FixtureStatsLoader",
    "parse_copilot_usage_csv",
]
