"""
Fee and profit accounting.

Pure Decimal arithmetic for net P&L plus the taker-fee schedule used to
project exit fees.
"""
