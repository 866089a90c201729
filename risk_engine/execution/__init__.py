"""
Exit execution.

Exchange adapters and the exit guard, the single write path that closes a
position.
"""
