"""
Storage layer for AI Credit Guard.

SQLite persistence for balances, reservations, usage and pricing.
"""
