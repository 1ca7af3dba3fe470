"""
AI Credit Guard.

Credit reservation and settlement for metered AI calls.
"""
