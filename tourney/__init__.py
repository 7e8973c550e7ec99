"""
Tournament team-formation engine.

Turns per-tournament preference votes into deterministic teams and drives the
tournament lifecycle through match recording, standings and settlement.
"""

__version__ = "0.1.0"
