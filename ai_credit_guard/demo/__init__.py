"""
Demo data for AI Credit Guard.
"""
