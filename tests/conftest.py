"""Global test fixtures."""

import sys
from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from exec_relay.config import Settings, settings
from exec_relay.core.session import SessionRegistry
from exec_relay.main import create_app
from exec_relay.models.session import ResourceLimits
from exec_relay.persistence.runs import RunArchive
from exec_relay.sandbox.isolation import Isolation
from exec_relay.sandbox.runner import SandboxRunner


@pytest.fixture
def tmp_data_dir(tmp_path: Path) -> Path:
    """Create temporary data directory."""
    data_dir = tmp_path / ".exec-relay"
    (data_dir / "runs").mkdir(parents=True)
    return data_dir


@pytest.fixture
def scratch_root(tmp_path: Path) -> Path:
    """Directory the runner creates per-run scratch directories in."""
    root = tmp_path / "scratch"
    root.mkdir()
    return root


@pytest.fixture(autouse=True)
def isolated_settings(
    monkeypatch: pytest.MonkeyPatch, tmp_data_dir: Path, scratch_root: Path
) -> None:
    """Keep every test away from the real home and temp directories."""
    monkeypatch.setattr(settings, "data_dir", tmp_data_dir)
    monkeypatch.setattr(settings, "scratch_root", scratch_root)
    monkeypatch.setattr(settings, "isolation", "none")
    monkeypatch.setattr(settings, "python_executable", sys.executable)
    monkeypatch.setattr(settings, "cancel_grace_seconds", 0.5)


@pytest.fixture
def test_settings(tmp_data_dir: Path, scratch_root: Path) -> Settings:
    """Create test settings with temporary directories."""
    return Settings(
        host="127.0.0.1",
        port=5681,
        debug=False,
        data_dir=tmp_data_dir,
        scratch_root=scratch_root,
        isolation="none",
    )


@pytest.fixture
def limits() -> ResourceLimits:
    """Generous limits for runs that should finish on their own."""
    return ResourceLimits(
        wall_timeout_seconds=20.0,
        memory_bytes=512 * 1024 * 1024,
        output_bytes=1024 * 1024,
    )


@pytest.fixture
def runner(scratch_root: Path) -> SandboxRunner:
    """Runner without namespace isolation, so tests work in any container."""
    return SandboxRunner(
        isolation=Isolation("none"),
        scratch_root=scratch_root,
        grace_seconds=0.5,
    )


@pytest.fixture
def archive(tmp_data_dir: Path) -> RunArchive:
    """Create run archive with temp directory."""
    return RunArchive(base_dir=tmp_data_dir / "runs")


@pytest_asyncio.fixture
async def registry(
    runner: SandboxRunner,
    archive: RunArchive,
) -> AsyncGenerator[SessionRegistry, None]:
    """Create session registry for testing."""
    registry = SessionRegistry(runner=runner, archive=archive, history_per_workspace=3)
    await registry.start()
    yield registry
    await registry.stop()


@pytest_asyncio.fixture
async def client(registry: SessionRegistry) -> AsyncGenerator[AsyncClient, None]:
    """Create async HTTP test client bound to the test registry."""
    app = create_app()
    app.state.registry = registry
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client
