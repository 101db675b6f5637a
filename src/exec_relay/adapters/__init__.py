"""Language adapters - toolchain integration for each supported language.

This package provides:
- LanguageAdapter: Abstract base class for language-specific adapters
- CommandPlan: Commands the sandbox runner executes for one source file
- Adapter factory: create_adapter and the language registry
"""

from exec_relay.adapters.base import (
    CommandPlan,
    Language,
    LanguageAdapter,
    normalize_language,
)
from exec_relay.adapters.factory import (
    create_adapter,
    get_supported_languages,
    is_language_supported,
    register_adapter,
)

__all__ = [
    "CommandPlan",
    "Language",
    "LanguageAdapter",
    "create_adapter",
    "get_supported_languages",
    "is_language_supported",
    "normalize_language",
    "register_adapter",
]
