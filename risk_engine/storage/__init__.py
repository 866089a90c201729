"""
Trade ledger storage backends.
"""
