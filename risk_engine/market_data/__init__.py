"""
Price feed adapters consumed by the risk engine.
"""
