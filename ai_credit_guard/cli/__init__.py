"""
Command-line interface for AI Credit Guard.
"""
