"""Bash adapter."""

import re
from pathlib import Path

from exec_relay.adapters.base import CommandPlan, Language, LanguageAdapter
from exec_relay.adapters.factory import register_adapter
from exec_relay.config import settings
from exec_relay.models.session import ResourceLimits


@register_adapter(Language.BASH)
class BashAdapter(LanguageAdapter):
    """Runs a shell script with bash, skipping profile and rc files."""

    memory_patterns = (
        re.compile(r"^\S+: (line \d+: )?xmalloc: .*cannot allocate \d+ bytes"),
        re.compile(r"^\S+: (line \d+: )?fork: Cannot allocate memory$"),
    )

    @property
    def language(self) -> Language:
        return Language.BASH

    @property
    def source_filename(self) -> str:
        return "main.sh"

    @property
    def default_executable(self) -> str:
        return settings.bash_executable

    def build_plan(self, source_path: Path, limits: ResourceLimits) -> CommandPlan:
        return CommandPlan(
            run=[self._require_executable(), "--noprofile", "--norc", str(source_path)],
        )
