from . import config
from .kie import KieProvider
from .pipeline.providers import ProviderAdapter
from .simulated import SimulatedProvider
from .wavespeed import WaveSpeedProvider


class ProviderFactory:
    """Maps a clip's provider name to the adapter that serves it. One adapter instance per backend."""

    def __init__(self, enable_mocks: bool = None, adapters: dict = None):
        self.enable_mocks = config.ENABLE_MOCKS if enable_mocks is None else enable_mocks
        self._adapters: dict[str, ProviderAdapter] = dict(adapters or {})

    def _adapter(self, backend: str, build) -> ProviderAdapter:
        if backend not in self._adapters:
            self._adapters[backend] = build()
        return self._adapters[backend]

    def get_provider(self, provider: str) -> ProviderAdapter:
        if self.enable_mocks:
            return self._adapter("simulated", SimulatedProvider)
        if provider.startswith("luma"):
            return self._adapter("wavespeed", WaveSpeedProvider)
        if provider.startswith("veo") or provider.startswith("runway"):
            return self._adapter("kie", KieProvider)
        raise ValueError(f"No adapter for provider '{provider}'")

    __call__ = get_provider
