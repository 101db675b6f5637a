"""End-to-end runs through the node, tsx, bash and C toolchains.

Each test is skipped when its toolchain is not installed.
"""

import shutil

import pytest

from exec_relay.core.session import SessionRegistry, SessionState
from exec_relay.models.events import EventKind
from exec_relay.models.session import ResourceLimits

requires_node = pytest.mark.skipif(shutil.which("node") is None, reason="node not installed")
requires_tsx = pytest.mark.skipif(shutil.which("tsx") is None, reason="tsx not installed")
requires_bash = pytest.mark.skipif(shutil.which("bash") is None, reason="bash not installed")
requires_cc = pytest.mark.skipif(shutil.which("cc") is None, reason="cc not installed")


def stdout(session) -> list[str]:
    return [e.payload for e in session.stream.events if e.kind == EventKind.STDOUT]


@pytest.mark.e2e
class TestNode:
    """Runs through node."""

    @requires_node
    @pytest.mark.asyncio
    async def test_console_log(self, registry: SessionRegistry, limits: ResourceLimits) -> None:
        session = await registry.submit("w1", "node", "console.log(1+1)", limits)

        assert await session.wait(30) == SessionState.SUCCEEDED
        assert stdout(session) == ["2"]
        assert session.stream.events[-1].payload == "Exited(0)"

    @requires_node
    @pytest.mark.asyncio
    async def test_second_submit_is_busy(
        self, registry: SessionRegistry, limits: ResourceLimits
    ) -> None:
        from exec_relay.core.exceptions import WorkspaceBusyError

        first = await registry.submit("w1", "node", "setTimeout(() => {}, 2000)", limits)

        with pytest.raises(WorkspaceBusyError):
            await registry.submit("w1", "node", "console.log(2)", limits)

        assert first.state == SessionState.RUNNING
        await registry.cancel(first.id)
        await first.wait(10)

    @requires_node
    @pytest.mark.asyncio
    async def test_uncaught_error_problem(
        self, registry: SessionRegistry, limits: ResourceLimits
    ) -> None:
        source = "const a = 1;\nfoo();\n"
        session = await registry.submit("w1", "js", source, limits)

        assert await session.wait(30) == SessionState.FAILED
        problems = await registry.problems(session.id)
        assert len(problems) == 1
        assert problems[0].file == "main.js"
        assert problems[0].line == 2
        assert "ReferenceError" in problems[0].message


@pytest.mark.e2e
class TestTypeScript:
    """Runs through tsx."""

    @requires_tsx
    @pytest.mark.asyncio
    async def test_typed_program(self, registry: SessionRegistry, limits: ResourceLimits) -> None:
        source = "const n: number = 21;\nconsole.log(n * 2);\n"
        session = await registry.submit("w1", "typescript", source, limits)

        assert await session.wait(60) == SessionState.SUCCEEDED
        assert stdout(session) == ["42"]


@pytest.mark.e2e
class TestBash:
    """Runs through bash."""

    @requires_bash
    @pytest.mark.asyncio
    async def test_echo_and_error(self, registry: SessionRegistry, limits: ResourceLimits) -> None:
        source = "echo hello\nnosuchcommand_xyz\nexit 4\n"
        session = await registry.submit("w1", "bash", source, limits)

        assert await session.wait(30) == SessionState.FAILED
        assert session.exit_code == 4
        assert stdout(session) == ["hello"]
        problems = await registry.problems(session.id)
        assert [(p.file, p.line) for p in problems] == [("main.sh", 2)]


@pytest.mark.e2e
class TestC:
    """Compile and run through the system C compiler."""

    @requires_cc
    @pytest.mark.asyncio
    async def test_compile_and_run(self, registry: SessionRegistry, limits: ResourceLimits) -> None:
        source = '#include <stdio.h>\nint main(void) { printf("%d\\n", 6 * 7); return 0; }\n'
        session = await registry.submit("w1", "c", source, limits)

        assert await session.wait(60) == SessionState.SUCCEEDED
        assert stdout(session) == ["42"]

    @requires_cc
    @pytest.mark.asyncio
    async def test_compile_error(self, registry: SessionRegistry, limits: ResourceLimits) -> None:
        source = "int main(void) {\n    return y;\n}\n"
        session = await registry.submit("w1", "c", source, limits)

        assert await session.wait(60) == SessionState.FAILED
        problems = await registry.problems(session.id)
        errors = [p for p in problems if p.severity.value == "error"]
        assert errors
        assert errors[0].file == "main.c"
        assert errors[0].line == 2
        assert errors[0].column is not None
