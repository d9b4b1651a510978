"""Shell command builders for the remote sandbox shell.

Every remote interaction of the lifecycle manager and health prober is one
of the commands built here, and every parser for their output lives next to
its builder.
"""

from __future__ import annotations

import re
import shlex
from dataclasses import dataclass

from workspace_engine.models.repository import ServiceKind
from workspace_engine.models.services import CleanupOutcome

READY_MARKER = "ready"
DIRECTORY_FOUND = "DIRECTORY_FOUND"
DIRECTORY_NOT_FOUND = "DIRECTORY_NOT_FOUND"
SCRIPT_HEREDOC_MARKER = "WORKSPACE_SCRIPT_EOF"

EDITOR_PROCESS = "code-server"
TERMINAL_PROCESS = "ttyd"

TMUX_HISTORY_LIMIT = 50000
CURL_MAX_TIME = 5

READY_COMMAND = f"echo {READY_MARKER}"
PROCESS_SNAPSHOT_COMMAND = (
    f"ps -eo pid,args | grep -E '({EDITOR_PROCESS}|{TERMINAL_PROCESS})' | grep -v grep || true"
)

_CLEANUP_LINE = re.compile(r"^(\d+):(killed|not_found|unknown)$")
_PROBE_LINE = re.compile(r"^(\d+|none)\|(\d{3})$")


def tmux_session_name(kind: ServiceKind, repo_name: str) -> str:
    prefix = "agent" if kind == ServiceKind.AGENT else "main"
    return f"{prefix}-{repo_name}"


def tmux_start_script(session: str, repo_dir: str, command: str | None = None) -> str:
    """Script run by ttyd for every new browser connection.

    Attaches to the repository's tmux session when it already exists so that
    reconnecting keeps shell history and running programs. A new session runs
    `command` (the agent CLI) instead of a login shell when one is given.
    """
    quoted_dir = shlex.quote(repo_dir)
    quoted_session = shlex.quote(session)
    new_session = f"exec tmux new-session -s {quoted_session} -c {quoted_dir}"
    if command:
        new_session += f" {shlex.quote(command)}"
    return "\n".join(
        [
            "#!/bin/bash",
            f"cd {quoted_dir} || exit 1",
            "export TERM=screen-256color",
            "export LANG=en_US.UTF-8",
            "export LC_ALL=en_US.UTF-8",
            "tmux start-server",
            "tmux set -g mouse on",
            f"tmux set -g history-limit {TMUX_HISTORY_LIMIT}",
            "tmux set -ga terminal-overrides 'xterm*:smcup@:rmcup@'",
            f"if tmux has-session -t {quoted_session} 2>/dev/null; then",
            f"  exec tmux attach-session -t {quoted_session}",
            "else",
            f"  {new_session}",
            "fi",
            "",
        ]
    )


def write_script_command(path: str, content: str) -> str:
    """Write a script through a quoted heredoc so nothing in it is expanded."""
    quoted = shlex.quote(path)
    return (
        f"cat > {quoted} <<'{SCRIPT_HEREDOC_MARKER}'\n"
        f"{content}\n"
        f"{SCRIPT_HEREDOC_MARKER}\n"
        f"chmod +x {quoted}"
    )


def directory_check_command(path: str) -> str:
    return f"test -d {shlex.quote(path)} && echo {DIRECTORY_FOUND} || echo {DIRECTORY_NOT_FOUND}"


def parse_directory_check(output: str) -> bool:
    # DIRECTORY_NOT_FOUND contains DIRECTORY_FOUND as a substring
    return DIRECTORY_NOT_FOUND not in output and DIRECTORY_FOUND in output


def cleanup_command(ports: list[int]) -> str:
    """Kill whatever listens on the given ports, reporting per port.

    Also matches our own daemons by command line, in case one is still
    starting and has not bound its port yet.
    """
    port_list = " ".join(str(p) for p in ports)
    return (
        f"for p in {port_list}; do "
        f'pkill -f "{EDITOR_PROCESS} --bind-addr 0.0.0.0:$p " 2>/dev/null; '
        f'pkill -f "{TERMINAL_PROCESS} --port $p " 2>/dev/null; '
        "pids=$(lsof -t -i tcp:$p -sTCP:LISTEN 2>/dev/null); "
        'if [ -z "$pids" ]; then echo "$p:not_found"; '
        'elif kill -9 $pids 2>/dev/null; then echo "$p:killed"; '
        'else echo "$p:unknown"; fi; '
        "done"
    )


def parse_cleanup_output(output: str, ports: list[int]) -> dict[int, CleanupOutcome]:
    """Map cleanup output to per-port outcomes. Unreported ports are UNKNOWN."""
    outcomes = dict.fromkeys(ports, CleanupOutcome.UNKNOWN)
    for line in output.splitlines():
        match = _CLEANUP_LINE.match(line.strip())
        if match and int(match.group(1)) in outcomes:
            outcomes[int(match.group(1))] = CleanupOutcome(match.group(2))
    return outcomes


def editor_daemon_command(port: int, repo_dir: str) -> str:
    return (
        f"{EDITOR_PROCESS} --bind-addr 0.0.0.0:{port} --auth none "
        f"--disable-telemetry {shlex.quote(repo_dir)}"
    )


def terminal_daemon_command(port: int, script_path: str) -> str:
    return (
        f"{TERMINAL_PROCESS} --port {port} --writable "
        "-t fontSize=14 -t disableLeaveAlert=true "
        f"bash {shlex.quote(script_path)}"
    )


def launch_command(daemon: str, repo_dir: str, log_path: str, token: str) -> str:
    """Submit a daemon as a detached job.

    The job token is written as the first line of the log and echoed back,
    so the submission can be correlated with the log later.
    """
    log = shlex.quote(log_path)
    return (
        f"cd {shlex.quote(repo_dir)} && "
        f"echo 'job {token}' > {log} && "
        f"(nohup {daemon} >> {log} 2>&1 &) && "
        f"echo {token}"
    )


def http_probe_command(port: int) -> str:
    return (
        f"curl -s -o /dev/null -w '%{{http_code}}' --max-time {CURL_MAX_TIME} "
        f"http://localhost:{port}"
    )


def parse_http_status(output: str) -> int | None:
    match = re.search(r"(\d{3})\s*$", output.strip())
    if not match:
        return None
    status = int(match.group(1))
    return status or None


def is_http_ok(status: int | None) -> bool:
    return status is not None and 200 <= status < 400


def port_probe_command(port: int) -> str:
    """Report the listening pid and HTTP status of a port in one round-trip."""
    return (
        f"pid=$(lsof -t -i tcp:{port} -sTCP:LISTEN 2>/dev/null | head -n 1); "
        f"code=$({http_probe_command(port)}); "
        'echo "${pid:-none}|${code:-000}"'
    )


@dataclass(frozen=True)
class PortProbe:
    listening_pid: int | None
    http_status: int | None

    @property
    def listening(self) -> bool:
        return self.listening_pid is not None


def parse_port_probe(output: str) -> PortProbe:
    for line in reversed(output.strip().splitlines()):
        match = _PROBE_LINE.match(line.strip())
        if match:
            pid = None if match.group(1) == "none" else int(match.group(1))
            return PortProbe(listening_pid=pid, http_status=parse_http_status(match.group(2)))
    return PortProbe(listening_pid=None, http_status=None)


def process_for_port(snapshot: list[str], port: int) -> int | None:
    """Find the pid of the daemon bound to a port in a process snapshot."""
    pattern = re.compile(rf"(?:0\.0\.0\.0:|--port ){port}(?!\d)")
    for line in snapshot:
        if pattern.search(line):
            head = line.strip().split(maxsplit=1)
            if head and head[0].isdigit():
                return int(head[0])
    return None


def parse_process_snapshot(output: str) -> list[str]:
    return [line.strip() for line in output.splitlines() if line.strip()]
