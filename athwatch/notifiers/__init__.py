"""
Delivery channels.
"""
