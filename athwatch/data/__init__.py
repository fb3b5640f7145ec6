"""
Price feed access.
"""
