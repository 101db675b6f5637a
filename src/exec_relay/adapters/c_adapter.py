"""C adapter (compile with the system C compiler, then run)."""

import re
from pathlib import Path

from exec_relay.adapters.base import CommandPlan, Language, LanguageAdapter
from exec_relay.adapters.factory import register_adapter
from exec_relay.config import settings
from exec_relay.models.session import ResourceLimits


@register_adapter(Language.C)
class CAdapter(LanguageAdapter):
    """Compiles ``main.c`` into the scratch directory and runs the binary."""

    # perror() after a failed allocation: "<label>: Cannot allocate memory"
    memory_patterns = (re.compile(r"^[^\s:][^:]*: Cannot allocate memory$"),)

    @property
    def language(self) -> Language:
        return Language.C

    @property
    def source_filename(self) -> str:
        return "main.c"

    @property
    def default_executable(self) -> str:
        return settings.cc_executable

    def build_plan(self, source_path: Path, limits: ResourceLimits) -> CommandPlan:
        binary = source_path.with_suffix("")
        return CommandPlan(
            compile=[
                self._require_executable(),
                "-O0",
                "-Wall",
                "-fdiagnostics-color=never",
                "-o",
                str(binary),
                str(source_path),
                "-lm",
            ],
            run=[str(binary)],
        )
