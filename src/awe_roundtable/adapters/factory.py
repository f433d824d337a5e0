from __future__ import annotations

from awe_roundtable.adapters.base import DEFAULT_PROVIDER_REGISTRY, ProviderAdapter, normalize_provider_name
from awe_roundtable.adapters.claude import ClaudeAdapter
from awe_roundtable.adapters.codex import CodexAdapter
from awe_roundtable.adapters.gemini import GeminiAdapter
from awe_roundtable.domain.errors import UnsupportedProviderError


class ProviderFactory:
    _ADAPTERS: dict[str, type[ProviderAdapter]] = {
        'claude': ClaudeAdapter,
        'codex': CodexAdapter,
        'gemini': GeminiAdapter,
    }

    @classmethod
    def supports(cls, provider: str) -> bool:
        return normalize_provider_name(provider) in cls._ADAPTERS

    @classmethod
    def create(cls, *, provider: str, provider_spec: dict[str, object] | None = None) -> ProviderAdapter:
        key = normalize_provider_name(provider)
        adapter_cls = cls._ADAPTERS.get(key)
        if adapter_cls is None:
            raise UnsupportedProviderError(str(provider or ''))
        spec = provider_spec if provider_spec is not None else DEFAULT_PROVIDER_REGISTRY.get(key)
        return adapter_cls(provider=key, provider_spec=spec)


__all__ = ['ProviderFactory']
