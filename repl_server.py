"""agent-repl — MCP server giving an agent a persistent Python session.

Exposes a long-lived Python worker as 6 MCP tools. Claude Code launches this
via .mcp.json; it manages repl_worker.py as a subprocess so imports and
definitions are paid for once per session instead of once per command.

Architecture:
  Claude Code --JSON-RPC/stdio--> repl_server.py --JSON/stdin--> repl_worker.py

The worker is spawned lazily on first use. ``reset`` replaces the process
(the only way to drop class definitions and imported modules); the activated
project survives the replacement and is re-applied to the new worker.
"""

import asyncio
import collections
import json
import os
import platform
import queue
import re
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field

from dotenv import load_dotenv
load_dotenv()

from mcp.server.fastmcp import FastMCP

_DOCS_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "docs")
_TOOL_DESC_DIR = os.path.join(_DOCS_DIR, "tool-descriptions")


def _load_tool_desc(tool_name: str) -> str:
    """Load tool description from markdown file."""
    with open(os.path.join(_TOOL_DESC_DIR, f"{tool_name}.md"), "r", encoding="utf-8") as f:
        return f.read()


mcp = FastMCP("python-repl")

WORKER_SCRIPT = os.path.join(os.path.dirname(os.path.abspath(__file__)), "repl_worker.py")

# Must match repl_worker.STDERR_MARKER
STDERR_MARKER = "\n[stderr]\n"

MAX_TRACEBACK_FRAMES = 5
DEFAULT_OUTPUT_LIMIT = 20000
DEFAULT_LOG_PATH = os.path.join(os.path.expanduser("~"), ".cache", "agent-repl", "repl.log")

PKG_ACTIONS = ("add", "rm", "status", "update", "instantiate", "resolve", "test", "develop", "free")
PKG_ACTIONS_NEEDING_PACKAGES = frozenset({"add", "rm", "develop", "free"})

_TOOL_DESCRIPTIONS = {
    "eval": _load_tool_desc("eval"),
    "reset": _load_tool_desc("reset"),
    "info": _load_tool_desc("info"),
    "pkg": _load_tool_desc("pkg"),
    "activate": _load_tool_desc("activate"),
    "log_viewer": _load_tool_desc("log_viewer"),
}


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class WorkerSpawnError(RuntimeError):
    """The worker process could not be started."""


class IPCError(RuntimeError):
    """A request to the worker could not complete (process died, pipe broke)."""


class WorkerTimeout(IPCError):
    """The worker exceeded the evaluation timeout and was killed."""


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

@dataclass
class WorkerState:
    """Session state owned by a WorkerSupervisor.

    ``project_path`` belongs to the session, not the process: it is kept
    across kill/respawn and only changed by a successful activation.
    """
    worker_id: int | None = None
    project_path: str | None = None


@dataclass
class EvaluationResult:
    value_repr: str
    output: str
    error: str | None = None


@dataclass
class PackageActionResult:
    error: str | None
    stdout: str
    stderr: str


@dataclass
class ActivationResult:
    success: bool
    project: str | None = None
    error: str | None = None


@dataclass
class WorkerInfo:
    version: str
    executable: str
    project: str
    variables: list[str] = field(default_factory=list)
    modules: int = 0


@dataclass
class ServerConfig:
    """Startup configuration. Read once; the core never re-reads the environment."""
    base_dir: str = field(default_factory=os.getcwd)
    project_dir: str | None = None
    python: str | None = None
    env_home: str = field(default_factory=lambda: os.path.join(os.path.expanduser("~"), ".virtualenvs"))
    viewer: str = "none"
    log_path: str = DEFAULT_LOG_PATH
    output_limit: int = DEFAULT_OUTPUT_LIMIT
    eval_timeout: float | None = None
    virtual_env: str | None = None

    @classmethod
    def from_env(cls, argv: list[str] | None = None, environ=None) -> "ServerConfig":
        env = os.environ if environ is None else environ
        project_dir = env.get("REPL_PROJECT") or None
        if argv:
            project_dir = argv[0]
        timeout = env.get("REPL_TIMEOUT_SECONDS")
        return cls(
            project_dir=os.path.abspath(os.path.expanduser(project_dir)) if project_dir else None,
            python=env.get("REPL_PYTHON") or None,
            env_home=os.path.expanduser(env.get("WORKON_HOME") or os.path.join("~", ".virtualenvs")),
            viewer=env.get("REPL_VIEWER", "none").strip().lower(),
            log_path=os.path.expanduser(env.get("REPL_LOG") or DEFAULT_LOG_PATH),
            output_limit=int(env.get("REPL_OUTPUT_LIMIT", str(DEFAULT_OUTPUT_LIMIT))),
            eval_timeout=float(timeout) if timeout else None,
            virtual_env=env.get("VIRTUAL_ENV") or None,
        )


def _find_python_in_venv(venv_path: str) -> str | None:
    """Try to find Python executable in a venv (Unix or Windows)."""
    unix_candidate = os.path.join(venv_path, "bin", "python3")
    if os.path.isfile(unix_candidate):
        return unix_candidate
    windows_candidate = os.path.join(venv_path, "Scripts", "python.exe")
    if os.path.isfile(windows_candidate):
        return windows_candidate
    return None


def detect_project_python(project_dir: str | None, configured: str | None = None,
                          virtual_env: str | None = None) -> str:
    """Pick the interpreter for a new worker.

    Order: explicit configuration, a venv inside the project directory, the
    project directory itself when it is a venv, VIRTUAL_ENV, then the
    server's own interpreter.
    """
    if configured:
        return configured
    if project_dir:
        for name in (".venv", "venv"):
            candidate = _find_python_in_venv(os.path.join(project_dir, name))
            if candidate:
                return candidate
        candidate = _find_python_in_venv(project_dir)
        if candidate:
            return candidate
    if virtual_env:
        candidate = _find_python_in_venv(virtual_env)
        if candidate:
            return candidate
    return sys.executable


def resolve_project_path(path: str, base_dir: str, env_home: str) -> str:
    """Expand activation shorthand into a concrete directory.

    ``.`` and ``@.`` mean the server's base directory; ``@name`` is the
    shared environment ``<env_home>/name``; anything else is resolved
    relative to the base directory after ``~`` expansion.
    """
    path = path.strip()
    if path in (".", "@."):
        return base_dir
    if path.startswith("@"):
        name = path[1:]
        if not name:
            raise ValueError("shared environment name missing after '@'")
        return os.path.join(env_home, name)
    return os.path.normpath(os.path.join(base_dir, os.path.expanduser(path)))


# ---------------------------------------------------------------------------
# WorkerSupervisor — manages the Python worker subprocess
# ---------------------------------------------------------------------------

class WorkerSupervisor:
    STDERR_BUFFER_SIZE = 200  # max lines to keep in ring buffer
    SIGTERM_GRACE_SECONDS = 2
    READY_TIMEOUT_SECONDS = 60

    def __init__(self, state: WorkerState | None = None, config: ServerConfig | None = None):
        self.state = state if state is not None else WorkerState()
        self.config = config if config is not None else ServerConfig()
        self.proc = None
        self.reactivation_error = None
        self._lock = threading.RLock()
        self._stderr_buffer = collections.deque(maxlen=self.STDERR_BUFFER_SIZE)
        self._stdout_queue = queue.Queue()

    # -- process lifecycle --------------------------------------------------

    def is_alive(self) -> bool:
        return self.proc is not None and self.proc.poll() is None

    def ensure(self) -> int:
        """Return the pid of a live worker, spawning one if needed."""
        with self._lock:
            if self.is_alive():
                return self.state.worker_id
            if self.proc is not None:
                print(f"[repl] worker {self.state.worker_id} exited (code {self.proc.returncode}), respawning",
                      file=sys.stderr, flush=True)
                self._discard()
            self._spawn()
            self.reactivation_error = None
            if self.state.project_path is not None:
                self._reactivate(self.state.project_path)
            return self.state.worker_id

    def _reactivate(self, path: str) -> None:
        try:
            result = self._activate_on_worker(path)
        except IPCError as e:
            result = ActivationResult(success=False, error=str(e))
        if not result.success:
            self.reactivation_error = result.error
            print(f"[repl] Warning: failed to re-activate project {path}: {result.error}",
                  file=sys.stderr, flush=True)

    def _spawn(self):
        python = detect_project_python(self.state.project_path or self.config.base_dir,
                                       self.config.python, self.config.virtual_env)
        env = os.environ.copy()
        env["PYTHONIOENCODING"] = "utf-8"
        try:
            proc = subprocess.Popen(
                [python, WORKER_SCRIPT],
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                cwd=self.config.base_dir,
                env=env,
            )
        except OSError as e:
            raise WorkerSpawnError(f"could not start worker with {python}: {e}") from e

        self.proc = proc
        # Fresh queue per process so a dying reader thread cannot post a
        # stale "eof" into the new worker's stream.
        self._stdout_queue = queue.Queue()
        threading.Thread(target=self._drain_stdout, args=(proc, self._stdout_queue),
                         daemon=True).start()
        self._stderr_buffer.clear()
        threading.Thread(target=self._drain_stderr, args=(proc,), daemon=True).start()

        try:
            ready = self._read_message(self.READY_TIMEOUT_SECONDS)
        except IPCError as e:
            self._discard()
            raise WorkerSpawnError(f"worker did not start: {e}") from e
        if ready.get("status") != "ready":
            self._terminate(proc)
            self._discard()
            raise WorkerSpawnError(f"unexpected worker handshake: {ready}")

        self.state.worker_id = proc.pid
        print(f"[repl] worker {proc.pid} started (python {ready.get('version')}: {python})",
              file=sys.stderr, flush=True)

    def _drain_stdout(self, proc, out_queue):
        """Background thread: read protocol lines from the worker into a queue."""
        try:
            for line in proc.stdout:
                out_queue.put(("line", line))
        except (ValueError, OSError) as e:
            out_queue.put(("error", str(e)))
        finally:
            out_queue.put(("eof", None))

    def _drain_stderr(self, proc):
        """Daemon thread: continuously read stderr lines into ring buffer."""
        try:
            for line in proc.stderr:
                stripped = line.rstrip("\n\r")
                if stripped:
                    self._stderr_buffer.append(stripped)
                    print(f"[worker-stderr] {stripped}", file=sys.stderr, flush=True)
        except (ValueError, OSError):
            # Pipe closed — process is shutting down
            pass

    def get_stderr_log(self) -> list[str]:
        """Return the last N lines from the worker's stderr."""
        return list(self._stderr_buffer)

    def _terminate(self, proc):
        proc.terminate()
        try:
            proc.wait(timeout=self.SIGTERM_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()

    def _discard(self):
        proc = self.proc
        self.proc = None
        self.state.worker_id = None
        if proc is not None and proc.stdin is not None:
            try:
                proc.stdin.close()
            except OSError:
                pass

    def kill(self) -> None:
        """Terminate the worker if one is running. Safe to call repeatedly."""
        with self._lock:
            if self.is_alive():
                pid = self.proc.pid
                self._terminate(self.proc)
                print(f"[repl] worker {pid} terminated", file=sys.stderr, flush=True)
            self._discard()

    def reset(self) -> int:
        """Hard reset: replace the worker process. Returns the new pid."""
        with self._lock:
            self.kill()
            return self.ensure()

    close = kill

    # -- channel --------------------------------------------------------------

    def _read_message(self, timeout: float | None) -> dict:
        proc = self.proc
        try:
            msg_type, data = self._stdout_queue.get(timeout=timeout)
        except queue.Empty:
            # Graceful shutdown: SIGTERM first, then SIGKILL after grace period.
            self._terminate(proc)
            self._discard()
            raise WorkerTimeout(f"worker timed out after {timeout}s and was killed")
        if msg_type == "eof":
            code = None
            if proc is not None:
                try:
                    code = proc.wait(timeout=self.SIGTERM_GRACE_SECONDS)
                except subprocess.TimeoutExpired:
                    pass
            raise IPCError(f"worker process exited (code {code}){self._stderr_tail()}")
        if msg_type == "error":
            raise IPCError(f"worker stdout reader error: {data}")
        try:
            return json.loads(data)
        except json.JSONDecodeError as e:
            raise IPCError(f"malformed response from worker: {data[:200]!r}") from e

    def _stderr_tail(self, lines: int = 5) -> str:
        tail = self.get_stderr_log()[-lines:]
        if not tail:
            return ""
        return "\nLast worker stderr:\n" + "\n".join(tail)

    def _request(self, cmd: dict, timeout: float | None = None) -> dict:
        if not self.is_alive():
            raise IPCError(f"worker is not running{self._stderr_tail()}")
        try:
            self.proc.stdin.write(json.dumps(cmd) + "\n")
            self.proc.stdin.flush()
        except (OSError, ValueError) as e:
            raise IPCError(f"could not write to worker: {e}") from e
        msg = self._read_message(timeout)
        if msg.get("status") == "error":
            raise IPCError(f"worker failed to handle {cmd.get('op')!r}: {msg.get('message')}")
        return msg

    def send(self, cmd: dict, timeout: float | None = None) -> dict:
        """Send one request to the worker (spawning it if needed) and return its response."""
        with self._lock:
            self.ensure()
            return self._request(cmd, timeout)

    # -- operations ---------------------------------------------------------

    def evaluate(self, code: str) -> EvaluationResult:
        resp = self.send({"op": "eval", "code": code}, timeout=self.config.eval_timeout)
        return EvaluationResult(
            value_repr=resp.get("value", "None"),
            output=resp.get("output", ""),
            error=resp.get("error"),
        )

    def run_package_action(self, action: str, packages: list[str]) -> PackageActionResult:
        resp = self.send({"op": "pkg", "action": action, "packages": list(packages)})
        return PackageActionResult(
            error=resp.get("error"),
            stdout=resp.get("stdout", ""),
            stderr=resp.get("stderr", ""),
        )

    def get_worker_info(self) -> WorkerInfo:
        resp = self.send({"op": "info"})
        return WorkerInfo(
            version=resp.get("version", "?"),
            executable=resp.get("executable", "?"),
            project=resp.get("project", "(no project)"),
            variables=list(resp.get("variables", [])),
            modules=resp.get("modules", 0),
        )

    def _activate_on_worker(self, path: str) -> ActivationResult:
        resp = self._request({"op": "activate", "path": path})
        if resp.get("success"):
            return ActivationResult(success=True, project=resp.get("project"))
        return ActivationResult(success=False, error=resp.get("error", "activation failed"))

    def activate_project(self, path: str) -> ActivationResult:
        """Activate *path* on the worker; remember it only if that succeeded."""
        try:
            resolved = resolve_project_path(path, self.config.base_dir, self.config.env_home)
        except ValueError as e:
            return ActivationResult(success=False, error=str(e))
        with self._lock:
            self.ensure()
            result = self._activate_on_worker(resolved)
            if result.success:
                self.state.project_path = result.project
                print(f"[repl] activated project {result.project}", file=sys.stderr, flush=True)
        return result


# ---------------------------------------------------------------------------
# Result formatting
# ---------------------------------------------------------------------------

_TRACEBACK_HEADER = re.compile(r" *(?:[|+] )?(?:Exception Group )?Traceback \(most recent call last\):")
# Exception groups indent their sub-tracebacks behind a "  | " margin.
_GROUP_MARGIN = re.compile(r" *\| ")


def truncate_traceback(error_str: str, max_frames: int = MAX_TRACEBACK_FRAMES) -> str:
    """Keep the innermost *max_frames* frames of each traceback section.

    A frame is a ``  File "..."`` line plus its indented source/caret lines.
    Dropped frames are replaced by a ``... (N more frames truncated)`` note.
    Sections nested inside an exception group are truncated the same way,
    keeping their ``|`` margin.
    """
    out = []
    frames = []  # (margin, lines)
    in_traceback = False

    def flush_frames():
        kept = frames
        if len(frames) > max_frames:
            margin = frames[0][0]
            out.append(f"{margin}  ... ({len(frames) - max_frames} more frames truncated)")
            kept = frames[-max_frames:]
        for _, frame in kept:
            out.extend(frame)
        frames.clear()

    for line in error_str.split("\n"):
        match = _GROUP_MARGIN.match(line)
        margin = match.group(0) if match else ""
        body = line[len(margin):]
        if _TRACEBACK_HEADER.match(line):
            flush_frames()
            out.append(line)
            in_traceback = True
        elif in_traceback and body.startswith("  File "):
            frames.append((margin, [line]))
        elif in_traceback and frames and body.startswith("  ") and margin == frames[-1][0]:
            frames[-1][1].append(line)
        else:
            if in_traceback:
                flush_frames()
                in_traceback = False
            out.append(line)
    flush_frames()
    return "\n".join(out)


def truncate_output(output: str, limit: int) -> str:
    if limit <= 0 or len(output) <= limit:
        return output
    return output[:limit] + f"\n... ({len(output)} chars total, truncated)"


def _prompt_lines(code: str) -> list[str]:
    code_lines = code.strip("\n").split("\n")
    lines = [">>> " + code_lines[0]]
    lines.extend("... " + line for line in code_lines[1:])
    return lines


def format_result(code: str, value_repr: str, output: str, error: str | None,
                  output_limit: int = DEFAULT_OUTPUT_LIMIT) -> str:
    """Render an evaluation REPL-style.

    Errors lead the response; output printed before the failure follows.
    """
    output = truncate_output(output.strip("\n"), output_limit)
    parts = []
    if error is not None:
        parts.append("Error:")
        parts.append(truncate_traceback(error))
        parts.append("")
        parts.extend(_prompt_lines(code))
        if output.strip():
            parts.append("")
            parts.append("Output before error:")
            parts.append(output)
        return "\n".join(parts)

    parts.extend(_prompt_lines(code))
    parts.append("")
    if output.strip():
        parts.append(output)
    parts.append(value_repr)
    return "\n".join(parts)


# ---------------------------------------------------------------------------
# Interaction log — file sink for watching the session with `less -R +F`
# ---------------------------------------------------------------------------

ANSI_RESET = "\033[0m"
ANSI_BOLD = "\033[1m"
ANSI_GREEN = "\033[32m"
ANSI_RED = "\033[31m"
ANSI_CYAN = "\033[36m"
ANSI_DIM = "\033[2m"


class InteractionLog:
    def __init__(self, path: str):
        self.path = path
        self._io = None

    @property
    def is_open(self) -> bool:
        return self._io is not None

    def open(self) -> str:
        self.close()
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        self._io = open(self.path, "w", encoding="utf-8")
        rule = "=" * 60
        self._io.write(f"{ANSI_GREEN}{rule}{ANSI_RESET}\n")
        self._io.write(f"{ANSI_GREEN}{ANSI_BOLD}Python REPL Session{ANSI_RESET} - {time.strftime('%Y-%m-%d %H:%M:%S')}\n")
        self._io.write(f"{ANSI_DIM}Scroll: Ctrl+C to pause, arrows to scroll, Shift+F to resume{ANSI_RESET}\n")
        self._io.write(f"{ANSI_GREEN}{rule}{ANSI_RESET}\n\n")
        self._io.flush()
        return self.path

    def record(self, code: str, value_repr: str, output: str, error: str | None) -> None:
        if self._io is None:
            return
        io = self._io
        io.write(f"{ANSI_DIM}{'-' * 60}{ANSI_RESET}\n")
        prompt = _prompt_lines(code)
        io.write(f"{ANSI_GREEN}{ANSI_BOLD}>>> {ANSI_RESET}{prompt[0][4:]}\n")
        for line in prompt[1:]:
            io.write(line + "\n")
        io.write("\n")
        if output.strip():
            io.write(f"{ANSI_CYAN}{output.strip()}{ANSI_RESET}\n")
        if error is not None:
            io.write(f"{ANSI_RED}{ANSI_BOLD}ERROR: {ANSI_RESET}{ANSI_RED}{error}{ANSI_RESET}\n")
        else:
            io.write(value_repr + "\n")
        io.write("\n")
        io.flush()

    def close(self) -> None:
        if self._io is None:
            return
        rule = "=" * 60
        self._io.write(f"\n{rule}\nSession ended - {time.strftime('%Y-%m-%d %H:%M:%S')}\n{rule}\n")
        self._io.close()
        self._io = None


# ---------------------------------------------------------------------------
# Singleton backend
# ---------------------------------------------------------------------------

_config = None
_backend = None
_interaction_log = None


def get_config() -> ServerConfig:
    global _config
    if _config is None:
        _config = ServerConfig.from_env()
    return _config


def get_backend() -> WorkerSupervisor:
    global _backend
    if _backend is None:
        config = get_config()
        _backend = WorkerSupervisor(WorkerState(project_path=config.project_dir), config)
    return _backend


def get_interaction_log() -> InteractionLog:
    global _interaction_log
    if _interaction_log is None:
        _interaction_log = InteractionLog(get_config().log_path)
    return _interaction_log


def configure(config: ServerConfig) -> None:
    """Install *config* for the tools; must run before the first tool call."""
    global _config, _backend, _interaction_log
    _config = config
    _backend = None
    _interaction_log = InteractionLog(config.log_path)
    if config.viewer == "file":
        path = _interaction_log.open()
        print(f"[repl] Logging interactions to {path} (view with: less -R +F {path})",
              file=sys.stderr, flush=True)
    elif config.viewer not in ("", "none"):
        print(f"[repl] Warning: unknown REPL_VIEWER={config.viewer!r}, expected 'file' or 'none'",
              file=sys.stderr, flush=True)


# ---------------------------------------------------------------------------
# MCP Tools
# ---------------------------------------------------------------------------

@mcp.tool(name="eval", description=_TOOL_DESCRIPTIONS["eval"])
async def eval_code(code: str) -> str:
    if not code.strip():
        return "Error: 'code' parameter cannot be empty"

    backend = get_backend()
    loop = asyncio.get_running_loop()
    result = await loop.run_in_executor(None, backend.evaluate, code)
    get_interaction_log().record(code, result.value_repr, result.output, result.error)
    return format_result(code, result.value_repr, result.output, result.error,
                         get_config().output_limit)


@mcp.tool(description=_TOOL_DESCRIPTIONS["reset"])
def reset() -> str:
    backend = get_backend()
    old_id = backend.state.worker_id
    new_id = backend.reset()

    lines = [
        "Session reset complete.",
        f"- Old worker (PID: {old_id if old_id is not None else 'none'}) terminated",
        f"- New worker (PID: {new_id}) spawned",
        "- All variables, functions, classes and imported modules cleared",
    ]
    project = backend.state.project_path
    if project is not None:
        if backend.reactivation_error is None:
            lines.append(f"- Project re-activated: {project}")
        else:
            lines.append(f"- Warning: could not re-activate project {project}: {backend.reactivation_error}")
    return "\n".join(lines) + "\n"


@mcp.tool(description=_TOOL_DESCRIPTIONS["info"])
def info() -> str:
    backend = get_backend()
    worker_info = backend.get_worker_info()
    variables = ", ".join(worker_info.variables) if worker_info.variables else "(none)"
    return (
        f"Python Version: {worker_info.version}\n"
        f"Interpreter: {worker_info.executable}\n"
        f"Active Project: {worker_info.project}\n"
        f"User Variables: {variables}\n"
        f"Loaded Modules: {worker_info.modules}\n"
        f"Worker PID: {backend.state.worker_id}\n"
    )


def parse_package_list(packages: str | None) -> list[str]:
    if not packages:
        return []
    return [part for part in re.split(r"[,\s]+", packages.strip()) if part]


def _pkg_summary(action: str, pkg_list: list[str]) -> str:
    names = ", ".join(pkg_list)
    count = len(pkg_list)
    if action == "add":
        return f"Added {count} package(s): {names}"
    if action == "rm":
        return f"Removed {count} package(s): {names}"
    if action == "status":
        return "Package Status:"
    if action == "update":
        return f"Updated {count} package(s): {names}" if pkg_list else "Updated all packages"
    if action == "instantiate":
        return "Installed project dependencies"
    if action == "resolve":
        return "Checked installed packages for dependency conflicts"
    if action == "test":
        return f"Ran tests for: {names}" if pkg_list else "Ran tests for current project"
    if action == "develop":
        return f"Installed {count} package(s) in editable mode: {names}"
    if action == "free":
        return f"Reinstalled {count} package(s) from the package index: {names}"
    return f"Completed action: {action}"


@mcp.tool(description=_TOOL_DESCRIPTIONS["pkg"])
def pkg(action: str, packages: str = "") -> str:
    action_lower = action.strip().lower()
    if action_lower not in PKG_ACTIONS:
        return f"Error: action must be one of: {', '.join(PKG_ACTIONS)} (got: '{action}')"

    pkg_list = parse_package_list(packages)
    if action_lower in PKG_ACTIONS_NEEDING_PACKAGES and not pkg_list:
        return f"Error: 'packages' parameter is required for action '{action_lower}'"

    result = get_backend().run_package_action(action_lower, pkg_list)
    if result.error is not None:
        parts = [f"Error during pkg {action_lower}:\n{result.error}"]
    else:
        parts = [_pkg_summary(action_lower, pkg_list)]
    if result.stdout.strip():
        parts.append(f"\nOutput:\n{result.stdout}")
    if result.stderr.strip():
        parts.append(f"{STDERR_MARKER}{result.stderr}")
    return "".join(parts)


@mcp.tool(description=_TOOL_DESCRIPTIONS["activate"])
def activate(path: str) -> str:
    if not path.strip():
        return "Error: 'path' parameter cannot be empty"
    result = get_backend().activate_project(path)
    if result.success:
        return (f"Activated project: {result.project}\n\n"
                "Use `pkg(action=\"instantiate\")` to install dependencies if needed.")
    return f"Error activating project: {result.error}"


@mcp.tool(description=_TOOL_DESCRIPTIONS["log_viewer"])
def log_viewer(mode: str) -> str:
    mode = mode.strip().lower()
    log = get_interaction_log()
    if mode == "off":
        log.close()
        return "Log viewer disabled."
    if mode != "file":
        return f"Error: mode must be 'file' or 'off' (got: '{mode}')"
    path = log.open()
    return f"Log viewer enabled.\nLog file: {path}\nWatch it with: less -R +F {path}"


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main(argv: list[str] | None = None) -> None:
    config = ServerConfig.from_env(sys.argv[1:] if argv is None else argv)
    if config.project_dir is not None and not os.path.isdir(config.project_dir):
        sys.exit(f"Cannot activate project: directory '{config.project_dir}' not found")
    configure(config)
    print(f"[repl] agent-repl server starting (python {platform.python_version()})",
          file=sys.stderr, flush=True)
    try:
        mcp.run()
    finally:
        if _backend is not None:
            _backend.close()
        if _interaction_log is not None:
            _interaction_log.close()


if __name__ == "__main__":
    main()
