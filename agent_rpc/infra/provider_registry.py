"""
Model catalog for the RPC layer.

`set_model` and `get_available_models` resolve against this registry. Bundled
providers ship with the package; extra models can be declared in a YAML file
(Config.MODELS_PATH):

    providers:
      google:
        api_base: https://generativelanguage.googleapis.com/v1beta/openai
        models:
          - id: model-x
            context_window: 128000
            reasoning: true
"""

import os
from dataclasses import dataclass
from typing import Dict, Optional, List

import yaml

from agent_rpc.infra.config import Config
from agent_rpc.utils.logger import Logger


@dataclass
class ModelSpec:
    """A model the agent can be switched to."""
    api: str
    id: str
    context_window: int = 128000
    reasoning: bool = False
    base_url: Optional[str] = None


class ProviderRegistry:
    """
    Registry of supported LLM Providers and Models.
    """

    BUNDLED_PROVIDERS = {
        "openai": {
            "name": "OpenAI",
            "api_base": "https://api.openai.com/v1",
            "models": {
                "gpt-4o": {"context_window": 128000, "reasoning": False},
                "gpt-4o-mini": {"context_window": 128000, "reasoning": False},
                "o1": {"context_window": 200000, "reasoning": True},
                "o3-mini": {"context_window": 200000, "reasoning": True},
            }
        },
        "anthropic": {
            "name": "Anthropic",
            "api_base": "https://api.anthropic.com/v1",
            "models": {
                "claude-3-5-sonnet-20241022": {"context_window": 200000, "reasoning": False},
                "claude-3-5-haiku-20241022": {"context_window": 200000, "reasoning": False},
            }
        },
        "google": {
            "name": "Google Gemini",
            "api_base": "https://generativelanguage.googleapis.com/v1beta/openai",
            "models": {
                "gemini-1.5-pro": {"context_window": 2000000, "reasoning": False},
                "gemini-1.5-flash": {"context_window": 1000000, "reasoning": False},
                "gemini-2.0-flash": {"context_window": 1000000, "reasoning": False},
                "gemini-2.5-pro": {"context_window": 1000000, "reasoning": True},
            }
        },
        "deepseek": {
            "name": "DeepSeek",
            "api_base": "https://api.deepseek.com",
            "models": {
                "deepseek-chat": {"context_window": 64000, "reasoning": False},
                "deepseek-reasoner": {"context_window": 64000, "reasoning": True},
            }
        },
    }

    _custom: Dict[str, Dict[str, ModelSpec]] = {}
    _custom_loaded_from: Optional[str] = None

    @classmethod
    def load_custom_models(cls, path: str = None) -> int:
        """
        Load extra models from a YAML catalog.

        Returns the number of models loaded. A missing file is not an error;
        an unreadable one is logged and ignored.
        """
        path = path or Config.MODELS_PATH
        cls._custom_loaded_from = path
        if not path or not os.path.exists(path):
            return 0
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            Logger.warning(f"[ProviderRegistry] Failed to load {path}: {e}")
            return 0

        count = 0
        providers = data.get("providers", {}) if isinstance(data, dict) else {}
        for api, provider in providers.items():
            provider = provider or {}
            for entry in provider.get("models", []) or []:
                if isinstance(entry, str):
                    entry = {"id": entry}
                if not entry.get("id"):
                    continue
                cls.register_model(ModelSpec(
                    api=api,
                    id=str(entry["id"]),
                    context_window=int(entry.get("context_window", 128000)),
                    reasoning=bool(entry.get("reasoning", False)),
                    base_url=provider.get("api_base"),
                ))
                count += 1
        Logger.info(f"[ProviderRegistry] Loaded {count} custom models from {path}")
        return count

    @classmethod
    def register_model(cls, spec: ModelSpec) -> None:
        """Add (or replace) a model outside the bundled catalog."""
        cls._custom.setdefault(spec.api, {})[spec.id] = spec

    @classmethod
    def clear_custom_models(cls) -> None:
        cls._custom = {}
        cls._custom_loaded_from = None

    @classmethod
    def _ensure_loaded(cls):
        if cls._custom_loaded_from is None:
            cls.load_custom_models()

    @classmethod
    def find_model(cls, api: str, model_id: str) -> Optional[ModelSpec]:
        """Resolve api + model id to a ModelSpec, or None when unknown."""
        cls._ensure_loaded()
        custom = cls._custom.get(api, {}).get(model_id)
        if custom:
            return custom

        provider = cls.BUNDLED_PROVIDERS.get(api)
        if not provider:
            return None
        meta = provider["models"].get(model_id)
        if meta is None:
            return None
        return ModelSpec(
            api=api,
            id=model_id,
            context_window=meta.get("context_window", 128000),
            reasoning=meta.get("reasoning", False),
            base_url=provider.get("api_base"),
        )

    @classmethod
    def resolve_model(cls, model_key: str) -> Optional[ModelSpec]:
        """Resolve a "provider/model" key (e.g. 'openai/gpt-4o')."""
        api, model_id = Config.split_model_key(model_key)
        if not api:
            return None
        return cls.find_model(api, model_id)

    @classmethod
    def discover_available_models(cls) -> List[ModelSpec]:
        """All bundled and custom models, bundled first."""
        cls._ensure_loaded()
        models: List[ModelSpec] = []
        seen = set()
        for api, provider in cls.BUNDLED_PROVIDERS.items():
            for model_id in provider["models"]:
                spec = cls.find_model(api, model_id)
                models.append(spec)
                seen.add((api, model_id))
        for api, entries in cls._custom.items():
            for model_id, spec in entries.items():
                if (api, model_id) not in seen:
                    models.append(spec)
        return models
