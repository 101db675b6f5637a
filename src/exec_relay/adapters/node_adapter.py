"""Node.js and TypeScript adapters."""

import re
from pathlib import Path

from exec_relay.adapters.base import CommandPlan, Language, LanguageAdapter
from exec_relay.adapters.factory import register_adapter
from exec_relay.config import settings
from exec_relay.models.session import ResourceLimits

# V8 aborts with this banner when the old-space cap is hit
V8_MEMORY_PATTERNS = (
    re.compile(r"^FATAL ERROR: .*(JavaScript heap out of memory|process out of memory)"),
)


def _heap_flag(limits: ResourceLimits) -> str:
    """V8 old-space cap in MiB derived from the memory limit."""
    megabytes = max(limits.memory_bytes // (1024 * 1024), 16)
    return f"--max-old-space-size={megabytes}"


@register_adapter(Language.NODE)
class NodeAdapter(LanguageAdapter):
    """Runs a JavaScript file with node."""

    memory_patterns = V8_MEMORY_PATTERNS

    @property
    def language(self) -> Language:
        return Language.NODE

    @property
    def source_filename(self) -> str:
        return "main.js"

    @property
    def default_executable(self) -> str:
        return settings.node_executable

    def build_plan(self, source_path: Path, limits: ResourceLimits) -> CommandPlan:
        return CommandPlan(
            run=[self._require_executable(), _heap_flag(limits), str(source_path)],
            limit_address_space=False,
        )


@register_adapter(Language.TYPESCRIPT)
class TypeScriptAdapter(LanguageAdapter):
    """Runs a TypeScript file through tsx."""

    memory_patterns = V8_MEMORY_PATTERNS

    @property
    def language(self) -> Language:
        return Language.TYPESCRIPT

    @property
    def source_filename(self) -> str:
        return "main.ts"

    @property
    def default_executable(self) -> str:
        return settings.tsx_executable

    def build_plan(self, source_path: Path, limits: ResourceLimits) -> CommandPlan:
        # tsx spawns its own node process, so the heap cap goes through NODE_OPTIONS
        return CommandPlan(
            run=[self._require_executable(), str(source_path)],
            env={"NODE_OPTIONS": _heap_flag(limits)},
            limit_address_space=False,
        )
