"""Shared test fixtures for workspace engine tests."""

from __future__ import annotations

import re
import shlex
from collections.abc import Generator
from typing import Any

import pytest
from fastapi.testclient import TestClient

from workspace_engine.errors import RemoteCommandError, SandboxNotFoundError
from workspace_engine.managers import scripts
from workspace_engine.managers.health_monitor import HealthMonitorRegistry
from workspace_engine.managers.health_prober import HealthProber
from workspace_engine.managers.health_state import HealthPolicy
from workspace_engine.managers.ports import ports_for_slot
from workspace_engine.managers.service_manager import LifecycleConfig, ServiceLifecycleManager
from workspace_engine.models.repository import Repository
from workspace_engine.providers.base import ExecResult, PreviewLink
from workspace_engine.storage.repository_store import InMemoryRepositoryStore, dump_repository
from workspace_engine.terminal.relay import TerminalRelay

SANDBOX_ID = "sb-test-1"
ROOT_DIR = "/home/daytona"


# ============================================
# Fake sandbox provider
# ============================================


class FakeSandboxProvider:
    """In-memory sandbox that interprets the engine's shell commands.

    Tracks which ports have a daemon listening, which directories exist and
    what HTTP status each port answers with.
    """

    def __init__(self, state: str = "started", root_dir: str = ROOT_DIR) -> None:
        self.state = state
        self.root_dir = root_dir
        self.directories: set[str] = set()
        self.listening: dict[int, int] = {}  # port -> pid
        self.process_lines: dict[int, str] = {}  # port -> command line
        self.dead_ports: set[int] = set()  # launches there never bind
        self.http_codes: dict[int, int] = {}  # port -> status override
        self.fail_markers: list[str] = []  # raise on commands containing these
        self.missing_sandboxes: set[str] = set()
        self.commands: list[str] = []
        self.start_calls = 0
        self.stop_calls = 0
        self._next_pid = 1000

    # Scenario helpers

    def add_repository_dir(self, name: str) -> str:
        path = f"{self.root_dir}/projects/{name}"
        self.directories.add(path)
        return path

    def spawn(self, port: int, line: str | None = None) -> int:
        self._next_pid += 1
        pid = self._next_pid
        self.listening[port] = pid
        self.process_lines[port] = line or f"ttyd --port {port} --writable bash /tmp/x.sh"
        return pid

    def run_services(self, repository: Repository) -> None:
        for kind, port in repository.ports.items():
            if kind.value == "editor":
                self.spawn(port, f"code-server --bind-addr 0.0.0.0:{port} --auth none")
            else:
                self.spawn(port)

    def http_code(self, port: int) -> int:
        if port not in self.listening:
            return 0
        return self.http_codes.get(port, 200)

    def commands_containing(self, fragment: str) -> list[str]:
        return [c for c in self.commands if fragment in c]

    # SandboxProvider

    async def create(self, labels: dict[str, str] | None = None) -> str:
        return SANDBOX_ID

    async def get_state(self, sandbox_id: str) -> str:
        if sandbox_id in self.missing_sandboxes:
            raise SandboxNotFoundError(sandbox_id)
        return self.state

    async def start(self, sandbox_id: str, timeout: float | None = None) -> None:
        self.start_calls += 1
        self.state = "started"

    async def stop(self, sandbox_id: str, timeout: float | None = None) -> None:
        self.stop_calls += 1
        self.state = "stopped"
        self.listening.clear()
        self.process_lines.clear()

    async def delete(self, sandbox_id: str) -> None:
        self.missing_sandboxes.add(sandbox_id)

    async def get_root_dir(self, sandbox_id: str) -> str:
        return self.root_dir

    async def get_preview_link(self, sandbox_id: str, port: int) -> PreviewLink:
        return PreviewLink(
            url=f"https://{port}-{sandbox_id}.proxy.daytona.work",
            token=f"tok-{port}",
        )

    async def execute_command(
        self,
        sandbox_id: str,
        command: str,
        cwd: str | None = None,
        timeout: int | None = None,
    ) -> ExecResult:
        self.commands.append(command)
        for marker in self.fail_markers:
            if marker in command:
                raise RemoteCommandError(f"timed out running {marker}")
        if self.state != "started":
            raise RemoteCommandError("sandbox is not running")
        return self._interpret(command)

    def _interpret(self, command: str) -> ExecResult:
        if command == scripts.READY_COMMAND:
            return ExecResult(0, "ready\n")

        if command.startswith("test -d "):
            path = shlex.split(command)[2]
            found = scripts.DIRECTORY_FOUND if path in self.directories else "DIRECTORY_NOT_FOUND"
            return ExecResult(0, found + "\n")

        if command.startswith("for p in "):
            match = re.match(r"for p in ([\d ]+);", command)
            assert match
            lines = []
            for port in (int(p) for p in match.group(1).split()):
                if self.listening.pop(port, None) is not None:
                    self.process_lines.pop(port, None)
                    lines.append(f"{port}:killed")
                else:
                    lines.append(f"{port}:not_found")
            return ExecResult(0, "\n".join(lines) + "\n")

        if command.startswith("cat > "):
            return ExecResult(0, "")

        if "nohup " in command:
            match = re.search(r"code-server --bind-addr 0\.0\.0\.0:(\d+)", command) or re.search(
                r"ttyd --port (\d+)", command
            )
            assert match
            port = int(match.group(1))
            token = command.rsplit("echo ", 1)[1].strip()
            if port not in self.dead_ports:
                daemon = command.split("(nohup ", 1)[1].split(" >>", 1)[0]
                self.spawn(port, daemon)
            return ExecResult(0, token + "\n")

        if command.startswith("pid=$(lsof"):
            match = re.search(r"tcp:(\d+)", command)
            assert match
            port = int(match.group(1))
            pid = self.listening.get(port)
            return ExecResult(0, f"{pid or 'none'}|{self.http_code(port):03d}\n")

        if command.startswith("curl "):
            match = re.search(r"localhost:(\d+)", command)
            assert match
            return ExecResult(0, f"{self.http_code(int(match.group(1))):03d}")

        if command.startswith("ps -eo"):
            lines = [
                f"{self.listening[port]} {line}"
                for port, line in self.process_lines.items()
                if port in self.listening
            ]
            return ExecResult(0, "\n".join(lines))

        return ExecResult(127, "command not found")


# ============================================
# Repository helpers
# ============================================


def make_repository(name: str, slot: int, repo_id: str | None = None) -> Repository:
    return Repository(
        id=repo_id or f"repo-{slot}",
        name=name,
        slot=slot,
        ports=ports_for_slot(slot),
    )


def seeded_store(*repositories: Repository, sandbox_id: str = SANDBOX_ID) -> InMemoryRepositoryStore:
    return InMemoryRepositoryStore({sandbox_id: [dump_repository(r) for r in repositories]})


def zero_delay_config() -> LifecycleConfig:
    return LifecycleConfig(
        sandbox_ready_timeout=0.05,
        ready_poll_interval=0.0,
        kill_settle_seconds=0.0,
        launch_settle_seconds=0.0,
    )


# ============================================
# Fixtures
# ============================================


@pytest.fixture
def fake_provider() -> FakeSandboxProvider:
    return FakeSandboxProvider()


@pytest.fixture
def repositories(fake_provider: FakeSandboxProvider) -> list[Repository]:
    """Three repositories whose directories exist on the fake sandbox."""
    repos = [make_repository(name, slot) for slot, name in enumerate(["api", "web", "docs"])]
    for repo in repos:
        fake_provider.add_repository_dir(repo.name)
    return repos


@pytest.fixture
def store(repositories: list[Repository]) -> InMemoryRepositoryStore:
    return seeded_store(*repositories)


@pytest.fixture
def lifecycle(
    fake_provider: FakeSandboxProvider, store: InMemoryRepositoryStore
) -> ServiceLifecycleManager:
    return ServiceLifecycleManager(fake_provider, store, zero_delay_config())


@pytest.fixture
def prober(fake_provider: FakeSandboxProvider, store: InMemoryRepositoryStore) -> HealthProber:
    return HealthProber(fake_provider, store, command_timeout=10)


@pytest.fixture
def quiet_policy() -> HealthPolicy:
    """Policy whose timer never fires during a test."""
    return HealthPolicy(
        poll_interval=3600,
        restart_poll_interval=3600,
        restart_timeout=180,
        initial_check_delay=3600,
        restarting_check_delay=3600,
    )


@pytest.fixture
def monitors(
    prober: HealthProber,
    lifecycle: ServiceLifecycleManager,
    quiet_policy: HealthPolicy,
) -> HealthMonitorRegistry:
    return HealthMonitorRegistry(prober, lifecycle, policy=quiet_policy)


@pytest.fixture
def relay(fake_provider: FakeSandboxProvider, store: InMemoryRepositoryStore) -> TerminalRelay:
    return TerminalRelay(fake_provider, store, columns=80, rows=24, connect_timeout=1.0)


@pytest.fixture
def fastapi_client(
    fake_provider: FakeSandboxProvider,
    store: InMemoryRepositoryStore,
    lifecycle: ServiceLifecycleManager,
    prober: HealthProber,
    monitors: HealthMonitorRegistry,
    relay: TerminalRelay,
) -> Generator[TestClient, None, None]:
    """Test client with auth disabled and collaborators replaced by fakes."""
    from workspace_engine import deps
    from workspace_engine.main import app

    overrides: dict[Any, Any] = {
        deps.verify_internal_auth: lambda: None,
        deps.get_provider: lambda: fake_provider,
        deps.get_repository_store: lambda: store,
        deps.get_lifecycle_manager: lambda: lifecycle,
        deps.get_prober: lambda: prober,
        deps.get_monitors: lambda: monitors,
        deps.get_relay: lambda: relay,
    }
    app.dependency_overrides.update(overrides)
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()
