"""
Forum Sniper
Watches forum registration pages and registers automatically when they open.
"""

__version__ = "1.0.0"
