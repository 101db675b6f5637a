"""Structured problems from compiler and runtime output.

Parsing is best-effort: lines that match no rule are ignored and a rule
that blows up is skipped, so a malformed traceback can never fail a run.
"""

import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from exec_relay.adapters.base import Language, normalize_language
from exec_relay.models.events import Event, EventKind
from exec_relay.models.problems import Problem, Severity

logger = logging.getLogger(__name__)

# file:line[:col]: severity: message (gcc/clang, and the form diagnostic events use)
CANONICAL_RE = re.compile(
    r"^(?P<file>[^:\s][^:]*):(?P<line>\d+)(?::(?P<column>\d+))?:\s*"
    r"(?:fatal )?(?P<severity>error|warning):\s*(?P<message>.+)$"
)

# "TypeError: x is not defined at line 3" in any language
AT_LINE_RE = re.compile(
    r"^(?P<message>(?:[A-Za-z_][\w.]*)?(?:Error|Exception)\b.*?)\s+at line (?P<line>\d+)\s*$"
)


@dataclass
class Diagnostic:
    """A problem before it is bound to a session."""

    severity: Severity
    message: str
    file: str
    line: int
    column: int | None = None


def parse_canonical(text: str) -> Diagnostic | None:
    """Parse a ``file:line[:col]: severity: message`` line."""
    match = CANONICAL_RE.match(text.strip())
    if not match:
        return None
    column = match.group("column")
    return Diagnostic(
        severity=Severity(match.group("severity")),
        message=match.group("message").strip(),
        file=match.group("file"),
        line=int(match.group("line")),
        column=int(column) if column else None,
    )


class LanguageRules(ABC):
    """Stateful line parser for one language's stderr."""

    def __init__(self, default_file: str):
        self.default_file = default_file

    @abstractmethod
    def feed(self, line: str) -> list[Diagnostic]:
        """Consume one stderr line."""
        ...

    def finish(self) -> list[Diagnostic]:
        """Flush anything still pending at the end of the output."""
        return []


class GenericRules(LanguageRules):
    """Only the canonical compiler format."""

    def feed(self, line: str) -> list[Diagnostic]:
        diagnostic = parse_canonical(line)
        return [diagnostic] if diagnostic else []


class PythonRules(LanguageRules):
    """Tracebacks, syntax errors and warnings printed by CPython."""

    FRAME_RE = re.compile(r'^\s*File "(?P<file>[^"]+)", line (?P<line>\d+)')
    EXCEPTION_RE = re.compile(
        r"^(?P<type>[A-Za-z_][\w.]*(?:Error|Exception|Exit|Interrupt))(?::\s*(?P<message>.*))?$"
    )
    WARNING_RE = re.compile(
        r"^(?P<file>.+?):(?P<line>\d+): (?P<category>\w*Warning): (?P<message>.+)$"
    )

    def __init__(self, default_file: str):
        super().__init__(default_file)
        self._location: tuple[str, int] | None = None

    def feed(self, line: str) -> list[Diagnostic]:
        if line.startswith("Traceback (most recent call last)"):
            self._location = None
            return []

        frame = self.FRAME_RE.match(line)
        if frame:
            # innermost frame wins
            self._location = (frame.group("file"), int(frame.group("line")))
            return []

        warning = self.WARNING_RE.match(line)
        if warning:
            return [
                Diagnostic(
                    severity=Severity.WARNING,
                    message=f"{warning.group('category')}: {warning.group('message')}",
                    file=warning.group("file"),
                    line=int(warning.group("line")),
                )
            ]

        exception = self.EXCEPTION_RE.match(line)
        if exception and self._location is not None:
            file, lineno = self._location
            self._location = None
            message = exception.group("type")
            if exception.group("message"):
                message = f"{message}: {exception.group('message')}"
            return [Diagnostic(severity=Severity.ERROR, message=message, file=file, line=lineno)]

        return []


class NodeRules(LanguageRules):
    """Uncaught errors, process warnings and tsc output from node based runtimes."""

    HEADER_RE = re.compile(
        r"^(?P<file>(?:file://)?(?:/|[A-Za-z]:\\)[^:]*?\.(?:[cm]?[jt]s|[jt]sx)):(?P<line>\d+)$"
    )
    ERROR_RE = re.compile(
        r"^(?:Uncaught )?(?P<type>(?:[A-Z]\w*)?Error|[A-Z]\w*Exception)"
        r"(?: \[[A-Z_0-9]+\])?:\s*(?P<message>.*)$"
    )
    FRAME_RE = re.compile(
        r"^\s+at (?:.*?\()?(?P<file>[^()\s]+?):(?P<line>\d+):(?P<column>\d+)\)?$"
    )
    WARNING_RE = re.compile(r"^\(node:\d+\) (?:\[[^\]]+\] )?(?P<message>\w*Warning: .+)$")
    TSC_RE = re.compile(
        r"^(?P<file>.+?)\((?P<line>\d+),(?P<column>\d+)\): "
        r"(?P<severity>error|warning) (?P<code>TS\d+): (?P<message>.+)$"
    )

    def __init__(self, default_file: str):
        super().__init__(default_file)
        self._header: tuple[str, int] | None = None
        self._pending: str | None = None

    def feed(self, line: str) -> list[Diagnostic]:
        tsc = self.TSC_RE.match(line)
        if tsc:
            return [
                Diagnostic(
                    severity=Severity(tsc.group("severity")),
                    message=f"{tsc.group('code')}: {tsc.group('message')}",
                    file=tsc.group("file"),
                    line=int(tsc.group("line")),
                    column=int(tsc.group("column")),
                )
            ]

        header = self.HEADER_RE.match(line)
        if header:
            self._header = (header.group("file"), int(header.group("line")))
            return []

        warning = self.WARNING_RE.match(line)
        if warning:
            return [
                Diagnostic(
                    severity=Severity.WARNING,
                    message=warning.group("message"),
                    file=self.default_file,
                    line=0,
                )
            ]

        error = self.ERROR_RE.match(line)
        if error:
            message = f"{error.group('type')}: {error.group('message')}".rstrip(": ")
            if self._header is not None:
                file, lineno = self._header
                self._header = None
                return [Diagnostic(severity=Severity.ERROR, message=message, file=file, line=lineno)]
            self._pending = message
            return []

        frame = self.FRAME_RE.match(line)
        if frame and self._pending is not None and not frame.group("file").startswith("node:"):
            message, self._pending = self._pending, None
            return [
                Diagnostic(
                    severity=Severity.ERROR,
                    message=message,
                    file=frame.group("file"),
                    line=int(frame.group("line")),
                    column=int(frame.group("column")),
                )
            ]

        return []

    def finish(self) -> list[Diagnostic]:
        if self._pending is None:
            return []
        message, self._pending = self._pending, None
        return [Diagnostic(severity=Severity.ERROR, message=message, file=self.default_file, line=0)]


class CRules(GenericRules):
    """gcc/clang diagnostics plus linker errors."""

    LINKER_RE = re.compile(
        r"^(?P<file>[^:\s]+):\(\.\w+\+0x[0-9a-f]+\): (?P<message>undefined reference to .+)$"
    )

    def feed(self, line: str) -> list[Diagnostic]:
        linker = self.LINKER_RE.match(line)
        if linker:
            return [
                Diagnostic(
                    severity=Severity.ERROR,
                    message=linker.group("message"),
                    file=linker.group("file"),
                    line=0,
                )
            ]
        return super().feed(line)


class BashRules(LanguageRules):
    """``script: line N: message`` errors."""

    ERROR_RE = re.compile(r"^(?P<file>[^:]+): line (?P<line>\d+): (?P<message>.+)$")

    def feed(self, line: str) -> list[Diagnostic]:
        match = self.ERROR_RE.match(line)
        if not match:
            return []
        return [
            Diagnostic(
                severity=Severity.ERROR,
                message=match.group("message"),
                file=match.group("file"),
                line=int(match.group("line")),
            )
        ]


_RULES: dict[Language, type[LanguageRules]] = {
    Language.PYTHON: PythonRules,
    Language.NODE: NodeRules,
    Language.TYPESCRIPT: NodeRules,
    Language.C: CRules,
    Language.BASH: BashRules,
}


class DiagnosticsCollector:
    """Turns run events into an ordered list of problems."""

    def rules_for(self, language: str | Language | None, default_file: str) -> LanguageRules:
        """Rules for a language, falling back to the canonical format."""
        if language is None:
            return GenericRules(default_file)
        try:
            lang = normalize_language(language)
        except ValueError:
            return GenericRules(default_file)
        return _RULES.get(lang, GenericRules)(default_file)

    def extract(
        self,
        events: Iterable[Event],
        language: str | Language | None = None,
        default_file: str = "main",
        scratch_dir: Path | None = None,
    ) -> list[Problem]:
        """Extract problems from stderr and diagnostic events.

        Args:
            events: Events of one run, in seq order
            language: Language used to pick stderr rules
            default_file: File reported when the output names none
            scratch_dir: Directory prefix stripped from reported paths

        Returns:
            Problems in the order they were reported
        """
        rules = self.rules_for(language, default_file)
        problems: list[Problem] = []
        session_id: str | None = None

        for event in events:
            session_id = event.session_id
            if event.kind == EventKind.DIAGNOSTIC:
                found = [d for d in [parse_canonical(event.payload)] if d]
            elif event.kind == EventKind.STDERR:
                found = self._feed(rules, event.payload, default_file)
            else:
                continue
            problems.extend(self._bind(event.session_id, d, scratch_dir) for d in found)

        if session_id is not None:
            problems.extend(self._bind(session_id, d, scratch_dir) for d in rules.finish())

        return problems

    def _feed(self, rules: LanguageRules, line: str, default_file: str) -> list[Diagnostic]:
        try:
            at_line = AT_LINE_RE.match(line.strip())
            if at_line:
                return [
                    Diagnostic(
                        severity=Severity.ERROR,
                        message=at_line.group("message"),
                        file=default_file,
                        line=int(at_line.group("line")),
                    )
                ]
            return rules.feed(line)
        except Exception as e:
            # best-effort: a rule failure must never fail the run
            logger.debug(f"Diagnostics rule failed on {line!r}: {e}")
            return []

    @staticmethod
    def _bind(session_id: str, diagnostic: Diagnostic, scratch_dir: Path | None) -> Problem:
        return Problem(
            session_id=session_id,
            severity=diagnostic.severity,
            message=diagnostic.message,
            file=_relative_path(diagnostic.file, scratch_dir),
            line=diagnostic.line,
            column=diagnostic.column,
        )


def _relative_path(file: str, scratch_dir: Path | None) -> str:
    """Report sandbox paths relative to the scratch directory."""
    file = file.removeprefix("file://")
    if scratch_dir is None:
        return file
    prefix = str(scratch_dir).rstrip("/") + "/"
    return file.removeprefix(prefix)
