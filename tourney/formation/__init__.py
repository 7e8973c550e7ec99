"""
Team formation: preference graph building and partitioning (pure, no I/O).
"""

from .preference_graph import PreferenceGraph, PreferenceGraphBuilder
from .partitioner import TeamPartitioner

__all__ = ['PreferenceGraph', 'PreferenceGraphBuilder', 'TeamPartitioner']
