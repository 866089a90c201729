"""
Risk management module for the position risk engine.

Implements regime parameters, peak/erosion tracking, underwater governance,
position health evaluation and Kelly-based position sizing.
"""
