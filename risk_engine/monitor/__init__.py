"""
Periodic position monitoring.
"""
