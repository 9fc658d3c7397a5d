# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/codex_pool/provider.py

import copy
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .account_manager import AccountManager
from .config import PoolSettings
from .stream_wrapper import StreamFunction, create_stream_wrapper

PROVIDER_ID = "codex-pool"
PROVIDER_API = "openai-codex-responses"
PROVIDER_API_KEY = "managed-by-codex-pool"

# Built-in Codex model catalog mirrored by the pool provider
_ZERO_COST = {"input": 0, "output": 0, "cache_read": 0, "cache_write": 0}

CODEX_MODELS: List[Dict[str, Any]] = [
    {
        "id": "gpt-5.1-codex",
        "name": "GPT-5.1 Codex",
        "reasoning": True,
        "input": ["text", "image"],
        "cost": _ZERO_COST,
        "context_window": 272000,
        "max_tokens": 128000,
    },
    {
        "id": "gpt-5.1-codex-mini",
        "name": "GPT-5.1 Codex Mini",
        "reasoning": True,
        "input": ["text", "image"],
        "cost": _ZERO_COST,
        "context_window": 272000,
        "max_tokens": 128000,
    },
    {
        "id": "gpt-5-codex",
        "name": "GPT-5 Codex",
        "reasoning": True,
        "input": ["text", "image"],
        "cost": _ZERO_COST,
        "context_window": 272000,
        "max_tokens": 128000,
    },
]

_MODEL_TEMPLATE = {
    "reasoning": True,
    "input": ["text"],
    "cost": _ZERO_COST,
    "context_window": 128000,
    "max_tokens": 16384,
}


@dataclass
class ProviderConfig:
    """What a host needs to register the pool as a model provider."""

    provider_id: str
    base_url: str
    api: str
    api_key: str
    models: List[Dict[str, Any]] = field(default_factory=list)
    stream_simple: Optional[Callable[..., Any]] = None

    def get_model(self, model_id: Optional[str] = None) -> Dict[str, Any]:
        """Model dict ready for ``stream_simple``; the first model by default."""
        if not self.models:
            raise ValueError(f"Provider {self.provider_id} has no models")
        if model_id is None:
            chosen = self.models[0]
        else:
            chosen = next((m for m in self.models if m["id"] == model_id), None)
            if chosen is None:
                raise ValueError(f"Unknown model for {self.provider_id}: {model_id}")
        return {
            **chosen,
            "provider": self.provider_id,
            "api": self.api,
            "base_url": self.base_url,
        }


def get_openai_codex_mirror(settings: Optional[PoolSettings] = None) -> Dict[str, Any]:
    """
    Base URL and model metadata mirrored from the Codex catalog.

    ``settings.model_ids`` restricts or extends the list; unknown ids get
    generic metadata.
    """
    settings = settings or PoolSettings()
    by_id = {model["id"]: model for model in CODEX_MODELS}

    if settings.model_ids:
        models = []
        for model_id in settings.model_ids:
            known = by_id.get(model_id)
            if known is not None:
                models.append(copy.deepcopy(known))
            else:
                models.append({"id": model_id, "name": model_id, **copy.deepcopy(_MODEL_TEMPLATE)})
    else:
        models = copy.deepcopy(CODEX_MODELS)

    return {"base_url": settings.api_base, "models": models}


def build_provider_config(
    manager: AccountManager,
    stream_fn: Optional[StreamFunction] = None,
    settings: Optional[PoolSettings] = None,
) -> ProviderConfig:
    settings = settings or PoolSettings()
    mirror = get_openai_codex_mirror(settings)
    return ProviderConfig(
        provider_id=PROVIDER_ID,
        base_url=mirror["base_url"],
        api=PROVIDER_API,
        api_key=PROVIDER_API_KEY,
        models=mirror["models"],
        stream_simple=create_stream_wrapper(
            manager, stream_fn=stream_fn, max_retries=settings.max_retries
        ),
    )
