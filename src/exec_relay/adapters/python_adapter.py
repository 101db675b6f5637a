"""Python adapter."""

import re
from pathlib import Path

from exec_relay.adapters.base import CommandPlan, Language, LanguageAdapter
from exec_relay.adapters.factory import register_adapter
from exec_relay.config import settings
from exec_relay.models.session import ResourceLimits

TRACEBACK_HEADER = "Traceback (most recent call last):"
MEMORY_ERROR = re.compile(r"^MemoryError\b")


@register_adapter(Language.PYTHON)
class PythonAdapter(LanguageAdapter):
    """Runs a single Python file with the configured interpreter."""

    @property
    def language(self) -> Language:
        return Language.PYTHON

    @property
    def source_filename(self) -> str:
        return "main.py"

    @property
    def default_executable(self) -> str:
        return settings.python_executable

    def build_plan(self, source_path: Path, limits: ResourceLimits) -> CommandPlan:
        # -I: ignore PYTHON* env vars and user site, -u: unbuffered for live output
        return CommandPlan(
            run=[self._require_executable(), "-I", "-u", str(source_path)],
            env={"PYTHONIOENCODING": "utf-8"},
        )

    def detects_memory_exhaustion(self, stderr: list[str]) -> bool:
        """An uncaught MemoryError: the unindented line that closes a traceback."""
        in_traceback = False
        for line in stderr:
            if line == TRACEBACK_HEADER:
                in_traceback = True
            elif in_traceback and line and not line[0].isspace():
                if MEMORY_ERROR.match(line):
                    return True
                in_traceback = False
        return False
