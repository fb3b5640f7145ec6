"""
ATH Watch - all-time-high detection and subscriber notification pipeline.
"""

__version__ = "0.1.0"
