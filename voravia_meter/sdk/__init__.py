"""
SDK for Voravia Meter.

Producers that meter external calls as they make them.
"""

from .openai_client import MeteredOpenAI

__all__ = ["MeteredOpenAI"]
