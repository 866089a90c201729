"""
Position Risk Engine Package

Sizing, peak/erosion tracking, underwater governance and guarded exit
execution for open crypto positions.
"""

__version__ = "1.0.0"
__author__ = "Trading Bot Team"
