"""
Notification gating and fan-out.
"""
