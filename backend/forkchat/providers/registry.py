"""Process-wide registry of the chat providers configured at startup."""

from forkchat.providers.base import LLMProvider

_providers: dict[str, LLMProvider] = {}


def register_provider(provider: LLMProvider) -> None:
    """Add a provider under its name. A later registration wins."""
    _providers[provider.name] = provider


def get_provider(name: str) -> LLMProvider:
    if name not in _providers:
        configured = ", ".join(_providers) or "(none)"
        raise ProviderNotFoundError(f"No provider named '{name}'. Configured: {configured}")
    return _providers[name]


def resolve_provider(preferred: str | None) -> LLMProvider | None:
    """The preferred provider when configured, else the first one registered."""
    if preferred in _providers:
        return _providers[preferred]
    return next(iter(_providers.values()), None)


def get_all_providers() -> list[LLMProvider]:
    return list(_providers.values())


def clear_providers() -> None:
    _providers.clear()


class ProviderNotFoundError(Exception):
    pass
