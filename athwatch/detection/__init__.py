"""
ATH detection.
"""
