"""
Configuration package: settings, LLM clients, storage and the credit ledger
"""

from .llm_client import get_llm_client, LLMProvider
from .settings import Settings, get_settings, setup_logging

__all__ = ['get_llm_client', 'LLMProvider', 'Settings', 'get_settings', 'setup_logging']
