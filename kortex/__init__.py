"""
Kortex - an action/perception layer for browser agents.

Exposes a fixed set of browser capabilities to an external planner,
compresses live pages into accessibility snapshots, records every
action to a flight recorder and recalls past memories by similarity.
"""

__version__ = "0.1.0"
__author__ = "Kortex Contributors"
