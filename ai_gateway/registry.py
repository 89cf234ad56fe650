"""
Provider registry.

Holds the adapter and default model configuration for each provider and
reports which providers are usable.
"""

from typing import Dict, Iterable, Optional, Set

from .errors import UnconfiguredProvider
from .providers import DEFAULT_MODEL_CONFIGS, ModelConfig, Provider, ProviderId


class ProviderRegistry:
    """
    Lookup of provider adapters by ProviderId.

    Read-only after construction.
    """

    def __init__(
        self,
        providers: Iterable[Provider],
        model_configs: Optional[Dict[ProviderId, ModelConfig]] = None,
    ):
        self._providers: Dict[ProviderId, Provider] = {p.provider_id: p for p in providers}
        self._model_configs = dict(DEFAULT_MODEL_CONFIGS)
        if model_configs:
            self._model_configs.update(model_configs)

    @property
    def providers(self) -> Dict[ProviderId, Provider]:
        return dict(self._providers)

    def available_providers(self) -> Set[ProviderId]:
        """Providers that have credentials configured."""
        return {pid for pid, p in self._providers.items() if p.is_configured}

    def is_available(self, provider: ProviderId) -> bool:
        adapter = self._providers.get(ProviderId(provider))
        return adapter is not None and adapter.is_configured

    def get_provider(self, provider: ProviderId) -> Provider:
        """Get the adapter for a provider, failing if it is unusable."""
        provider = ProviderId(provider)
        if not self.is_available(provider):
            raise UnconfiguredProvider(provider.value)
        return self._providers[provider]

    def default_config(self, provider: ProviderId) -> ModelConfig:
        """Default model configuration for a configured provider."""
        provider = ProviderId(provider)
        if not self.is_available(provider):
            raise UnconfiguredProvider(provider.value)
        return self._model_configs[provider]

    def default_model(self, provider: ProviderId) -> str:
        """Default model name, whether or not the provider is configured."""
        try:
            config = self._model_configs.get(ProviderId(provider))
        except ValueError:
            return ""
        return config.model if config else ""

    def resolve_config(
        self,
        provider: ProviderId,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> ModelConfig:
        """Default configuration with call-time overrides applied."""
        return self.default_config(provider).with_overrides(
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
        )

    def to_dict(self) -> dict:
        return {
            pid.value: {
                "configured": self.is_available(pid),
                "default_model": self._model_configs[pid].model,
            }
            for pid in ProviderId
            if pid in self._providers or pid in self._model_configs
        }
