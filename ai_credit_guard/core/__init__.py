"""
Core modules for AI Credit Guard.

This package contains usage extraction, token estimation, error recovery,
the credit ledger and the streaming tracker.
"""
