"""Language adapter factory.

This module provides factory functions for creating language adapters
based on the requested language.
"""

from collections.abc import Callable

from exec_relay.adapters.base import Language, LanguageAdapter, normalize_language
from exec_relay.core.exceptions import UnsupportedLanguageError

# Registry of adapter classes by language
_ADAPTER_REGISTRY: dict[Language, type[LanguageAdapter]] = {}


def register_adapter(
    language: Language,
) -> Callable[[type[LanguageAdapter]], type[LanguageAdapter]]:
    """Decorator to register an adapter class for a language.

    Usage:
        @register_adapter(Language.PYTHON)
        class PythonAdapter(LanguageAdapter):
            ...
    """

    def decorator(cls: type[LanguageAdapter]) -> type[LanguageAdapter]:
        _ADAPTER_REGISTRY[language] = cls
        return cls

    return decorator


def create_adapter(language: str | Language) -> LanguageAdapter:
    """Create the adapter for the specified language.

    Args:
        language: Requested language (aliases accepted)

    Returns:
        Language adapter instance

    Raises:
        UnsupportedLanguageError: If language is not supported
    """
    try:
        lang = normalize_language(language)
    except ValueError:
        raise UnsupportedLanguageError(str(language), get_supported_languages()) from None

    adapter_class = _ADAPTER_REGISTRY.get(lang)
    if adapter_class is None:
        raise UnsupportedLanguageError(lang.value, get_supported_languages())

    return adapter_class()


def get_supported_languages() -> list[str]:
    """Get list of supported language identifiers.

    Returns:
        List of language strings that have registered adapters
    """
    return [lang.value for lang in _ADAPTER_REGISTRY]


def is_language_supported(language: str) -> bool:
    """Check if a language is supported.

    Args:
        language: Language identifier

    Returns:
        True if an adapter is registered for the language
    """
    try:
        return normalize_language(language) in _ADAPTER_REGISTRY
    except ValueError:
        return False


def _register_builtin_adapters() -> None:
    """Register built-in adapters.

    Each adapter module uses the @register_adapter decorator.
    """
    # pylint: disable=import-outside-toplevel,unused-import
    from exec_relay.adapters import (  # noqa: F401
        c_adapter,
        node_adapter,
        python_adapter,
        shell_adapter,
    )


_register_builtin_adapters()
