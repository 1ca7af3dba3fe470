"""
SDK for AI Credit Guard.

Provides credit-metered provider clients.
"""

from .openai_client import MeteredOpenAI

__all__ = ["MeteredOpenAI"]
