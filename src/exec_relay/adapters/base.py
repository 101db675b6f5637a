"""Abstract base class for language adapters.

This module defines the interface every supported toolchain implements.
An adapter knows which file name the submitted source is written to,
which interpreter or compiler to resolve, and how to turn a source file
into the command plan the sandbox runner executes.
"""

import re
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from exec_relay.models.session import ResourceLimits


class Language(str, Enum):
    """Supported programming languages."""

    PYTHON = "python"
    NODE = "node"
    TYPESCRIPT = "typescript"
    BASH = "bash"
    C = "c"


# Alternative spellings accepted from callers
LANGUAGE_ALIASES: dict[str, Language] = {
    "py": Language.PYTHON,
    "python3": Language.PYTHON,
    "javascript": Language.NODE,
    "js": Language.NODE,
    "nodejs": Language.NODE,
    "ts": Language.TYPESCRIPT,
    "sh": Language.BASH,
    "shell": Language.BASH,
}


def normalize_language(language: str | Language) -> Language:
    """Map a caller-supplied language name to a Language.

    Raises:
        ValueError: If the name is unknown
    """
    if isinstance(language, Language):
        return language
    name = language.strip().lower()
    if name in LANGUAGE_ALIASES:
        return LANGUAGE_ALIASES[name]
    return Language(name)


@dataclass
class CommandPlan:
    """Commands needed to run one source file.

    ``compile`` runs first when present; ``run`` only starts if it exits 0.
    """

    run: list[str]
    compile: list[str] | None = None
    env: dict[str, str] = field(default_factory=dict)

    # V8 reserves far more address space than it uses, so RLIMIT_AS
    # cannot be applied to node based runtimes
    limit_address_space: bool = True

    @property
    def steps(self) -> list[list[str]]:
        if self.compile:
            return [self.compile, self.run]
        return [self.run]


class LanguageAdapter(ABC):
    """Abstract base class for language adapters."""

    # Stderr lines, matched from the start, that mean the runtime ran out of memory
    memory_patterns: tuple[re.Pattern[str], ...] = ()

    def __init__(self, executable: str | None = None):
        """Initialize the adapter.

        Args:
            executable: Interpreter/compiler override (defaults to settings)
        """
        self._executable = executable

    @property
    @abstractmethod
    def language(self) -> Language:
        """The language this adapter supports."""
        ...

    @property
    @abstractmethod
    def source_filename(self) -> str:
        """File name the submitted source is written to."""
        ...

    @property
    @abstractmethod
    def default_executable(self) -> str:
        """Configured interpreter/compiler name or path."""
        ...

    @abstractmethod
    def build_plan(self, source_path: Path, limits: ResourceLimits) -> CommandPlan:
        """Build the command plan for a source file.

        Args:
            source_path: Source file inside the scratch directory
            limits: Limits of the run

        Returns:
            Commands to execute
        """
        ...

    def executable(self) -> str | None:
        """Resolved path of the toolchain, or None if it is not installed."""
        return shutil.which(self._executable or self.default_executable)

    def is_available(self) -> bool:
        return self.executable() is not None

    def detects_memory_exhaustion(self, stderr: list[str]) -> bool:
        """Whether the stderr of a finished run shows the runtime ran out of memory."""
        return any(pattern.match(line) for line in stderr for pattern in self.memory_patterns)

    def _require_executable(self) -> str:
        path = self.executable()
        if path is None:
            raise FileNotFoundError(self._executable or self.default_executable)
        return path
