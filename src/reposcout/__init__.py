"""
REPOSCOUT - Repository Discovery and Analysis Scheduler

Discovers GitHub repositories, sorts them into priority tiers, re-scans each
tier on its own cadence within a fixed time budget, and drives bulk runs of
a slow external analysis service with timeouts, retries and safe stop/clear.
"""

__version__ = "1.0.0"
__author__ = "REPOSCOUT Team"
__status__ = "Development"
