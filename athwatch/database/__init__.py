"""
Key-value persistence over SQLite.
"""
