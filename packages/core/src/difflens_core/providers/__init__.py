from __future__ import annotations

from difflens_core.config import ReviewConfig
from difflens_core.models import ProviderFormat
from difflens_core.providers.base import BaseProvider
from difflens_core.providers.custom import CustomProvider
from difflens_core.providers.openai import OpenAIProvider


def get_provider(config: ReviewConfig) -> BaseProvider:
    if config.api_format is ProviderFormat.OPENAI:
        return OpenAIProvider(config)
    if config.api_format is ProviderFormat.CUSTOM:
        return CustomProvider(config)
    raise ValueError(f"Unknown API format: {config.api_format!r}. Choose 'openai' or 'custom'.")
