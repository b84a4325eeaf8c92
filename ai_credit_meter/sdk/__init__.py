"""
SDK for AI Credit Meter.

Provider adapters that connect metered operations to upstream AI services.
"""

from .openai_providers import build_openai_providers
from .provider import CallableProvider, Provider, ProviderResult

__all__ = ["Provider", "ProviderResult", "CallableProvider", "build_openai_providers"]
