#!/usr/bin/env python3
"""Persistent Python worker for agent-repl.

Reads JSON requests from stdin, writes one JSON response line per request to
a private copy of the original stdout. User code runs in a persistent
``__main__`` namespace that survives across requests.

Protocol:
  (on startup)                                   -> {"status": "ready", "pid": ..., "version": ...}
  {"op": "eval", "code": "..."}                  -> {"status": "ok", "value": "...", "output": "...", "error": null}
  {"op": "activate", "path": "..."}              -> {"status": "ok", "success": true, "project": "..."}
  {"op": "pkg", "action": "...", "packages": []} -> {"status": "ok", "error": null, "stdout": "...", "stderr": "..."}
  {"op": "info"}                                 -> {"status": "ok", "version": ..., "project": ..., "variables": [...], "modules": N}
  {"op": "ping"}                                 -> {"status": "ok"}

Only this file's standard-library imports are available here: the worker may
run under a project interpreter that has none of the server's dependencies.
"""

import ast
import contextlib
import importlib.metadata
import json
import linecache
import os
import site
import subprocess
import sys
import tempfile
import traceback
import types

# Shared with the server: these two strings are part of the wire contract.
STDERR_MARKER = "\n[stderr]\n"
NOTHING = "None"

VENV_DIRS = (".venv", "venv")

_proto_out = None
_eval_counter = 0

user_module = types.ModuleType("__main__")
user_module.__dict__["__builtins__"] = __builtins__
namespace = user_module.__dict__
_baseline_names = set()

active = {"project": os.getcwd(), "python": sys.executable}


# ---------------------------------------------------------------------------
# Protocol channel
# ---------------------------------------------------------------------------

def _open_protocol_channel():
    """Move the protocol off fd 0/1 so user code cannot read or corrupt it.

    fd 1 is pointed at stderr and fd 0 at /dev/null; requests and responses
    travel over private duplicates of the original descriptors.
    """
    global _proto_out
    proto_in = os.fdopen(os.dup(0), "r", encoding="utf-8")
    _proto_out = os.fdopen(os.dup(1), "w", encoding="utf-8")

    devnull = os.open(os.devnull, os.O_RDONLY)
    os.dup2(devnull, 0)
    os.close(devnull)
    sys.stdout.flush()
    os.dup2(2, 1)
    sys.stdin = open(os.devnull, "r")
    return proto_in


def respond(obj):
    """Write a JSON response to the protocol channel."""
    _proto_out.write(json.dumps(obj) + "\n")
    _proto_out.flush()


# ---------------------------------------------------------------------------
# Output capture
# ---------------------------------------------------------------------------

def _repair_stream(name, fd):
    """Rebind sys.stdout/sys.stderr to *fd* if user code closed or dropped it."""
    stream = getattr(sys, name)
    if stream is None or getattr(stream, "closed", False):
        setattr(sys, name, open(fd, "w", encoding="utf-8", closefd=False))


def _flush_streams():
    for stream in (sys.stdout, sys.stderr):
        try:
            stream.flush()
        except (AttributeError, OSError, ValueError):
            pass


@contextlib.contextmanager
def capture_output():
    """Redirect fds 1 and 2 into temp files for the duration of the block.

    Yields a dict that receives ``stdout`` and ``stderr`` once the block
    exits. The original descriptors are restored before the files are read,
    on both the success and failure paths.
    """
    captured = {"stdout": "", "stderr": ""}
    _repair_stream("stdout", 1)
    _repair_stream("stderr", 2)
    _flush_streams()
    with tempfile.TemporaryFile(mode="w+b") as out_file, \
            tempfile.TemporaryFile(mode="w+b") as err_file:
        saved = {}
        try:
            for fd, target in ((1, out_file), (2, err_file)):
                saved[fd] = os.dup(fd)
                os.dup2(target.fileno(), fd)
            yield captured
        finally:
            _flush_streams()
            for fd, copy in saved.items():
                os.dup2(copy, fd)
                os.close(copy)
        out_file.seek(0)
        err_file.seek(0)
        captured["stdout"] = out_file.read().decode("utf-8", errors="replace")
        captured["stderr"] = err_file.read().decode("utf-8", errors="replace")


def combine_output(stdout, stderr):
    if stderr:
        return stdout + STDERR_MARKER + stderr
    return stdout


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------

def safe_repr(value):
    """repr(), then str(), then a <TypeName> placeholder."""
    try:
        return repr(value)
    except Exception:
        try:
            return str(value)
        except Exception:
            return f"<{type(value).__name__}>"


def _trailing_name(node):
    """Name bound by a trailing ``x = ...`` / ``x += ...`` / ``x: T = ...``."""
    if isinstance(node, ast.Assign):
        if len(node.targets) == 1 and isinstance(node.targets[0], ast.Name):
            return node.targets[0].id
    elif isinstance(node, (ast.AugAssign, ast.AnnAssign)):
        if isinstance(node.target, ast.Name) and node.value is not None:
            return node.target.id
    return None


def run_code(code, filename):
    """Execute *code* in the user namespace and return the resulting value."""
    tree = ast.parse(code, filename, "exec")
    if not tree.body:
        return None
    last = tree.body[-1]
    if isinstance(last, ast.Expr):
        body = ast.Module(body=tree.body[:-1], type_ignores=[])
        exec(compile(body, filename, "exec"), namespace)
        expr = ast.Expression(body=last.value)
        return eval(compile(expr, filename, "eval"), namespace)
    exec(compile(tree, filename, "exec"), namespace)
    name = _trailing_name(last)
    if name is not None:
        return namespace.get(name)
    return None


def format_user_exception(exc):
    """Format *exc* without the worker's own frames."""
    if isinstance(exc, SyntaxError):
        tb = None
    else:
        tb = exc.__traceback__
        while tb is not None and tb.tb_frame.f_code.co_filename == __file__:
            tb = tb.tb_next
    return "".join(traceback.format_exception(type(exc), exc, tb)).rstrip("\n")


def evaluate(code):
    global _eval_counter
    _eval_counter += 1
    filename = f"<repl-{_eval_counter}>"
    linecache.cache[filename] = (len(code), None, code.splitlines(True), filename)

    value = None
    error = None
    with capture_output() as captured:
        try:
            value = run_code(code, filename)
        except BaseException as e:
            error = format_user_exception(e)
            value = None
    return {
        "status": "ok",
        "value": safe_repr(value),
        "output": combine_output(captured["stdout"], captured["stderr"]),
        "error": error,
    }


# ---------------------------------------------------------------------------
# Project activation
# ---------------------------------------------------------------------------

def find_venv_python(path):
    """Return the interpreter of a virtualenv rooted at *path*, if any."""
    for candidate in (os.path.join(path, "bin", "python3"),
                      os.path.join(path, "Scripts", "python.exe")):
        if os.path.isfile(candidate):
            return candidate
    return None


def find_project_venv(project):
    for name in VENV_DIRS:
        venv = os.path.join(project, name)
        if find_venv_python(venv):
            return venv
    if os.path.isfile(os.path.join(project, "pyvenv.cfg")):
        return project
    return None


def venv_site_packages(venv):
    if os.name == "nt":
        return [os.path.join(venv, "Lib", "site-packages")]
    lib = os.path.join(venv, "lib")
    if not os.path.isdir(lib):
        return []
    return [os.path.join(lib, entry, "site-packages")
            for entry in sorted(os.listdir(lib))
            if entry.startswith("python")]


def activate(path):
    project = os.path.realpath(os.path.expanduser(path))
    if not os.path.isdir(project):
        return {"status": "ok", "success": False,
                "error": f"project directory '{path}' not found"}

    for entry in (os.path.join(project, "src"), project):
        if os.path.isdir(entry) and entry not in sys.path:
            sys.path.insert(0, entry)

    python = sys.executable
    venv = find_project_venv(project)
    if venv is not None:
        python = find_venv_python(venv)
        for sp in venv_site_packages(venv):
            if os.path.isdir(sp):
                site.addsitedir(sp)

    active["project"] = project
    active["python"] = python
    return {"status": "ok", "success": True, "project": project}


# ---------------------------------------------------------------------------
# Package actions
# ---------------------------------------------------------------------------

def pip_command(*args):
    cmd = [sys.executable, "-m", "pip"]
    if active["python"] != sys.executable:
        cmd += ["--python", active["python"]]
    return cmd + list(args)


def run_command(cmd):
    """Run *cmd* in the active project; output lands on the captured fds."""
    proc = subprocess.run(cmd, cwd=active["project"], stdin=subprocess.DEVNULL)
    if proc.returncode != 0:
        raise RuntimeError(f"`{' '.join(cmd)}` exited with status {proc.returncode}")


def print_status():
    print(f"Project: {active['project']}")
    print(f"Python: {active['python']}")
    dists = {}
    for dist in importlib.metadata.distributions():
        name = dist.metadata["Name"]
        if name and name.lower() not in dists:
            dists[name.lower()] = (name, dist.version)
    for _, (name, version) in sorted(dists.items()):
        print(f"  {name} {version}")


def outdated_packages():
    proc = subprocess.run(
        pip_command("list", "--outdated", "--format=json"),
        cwd=active["project"], capture_output=True, text=True,
    )
    if proc.returncode != 0:
        sys.stderr.write(proc.stderr)
        raise RuntimeError("could not list outdated packages")
    return [entry["name"] for entry in json.loads(proc.stdout or "[]")]


def develop_target(pkg):
    if pkg.startswith(("/", ".", "~")):
        return os.path.abspath(os.path.join(active["project"], os.path.expanduser(pkg)))
    candidate = os.path.join(active["project"], pkg)
    if not os.path.isdir(candidate):
        raise ValueError(f"develop expects a local path; no directory '{pkg}' in {active['project']}")
    return candidate


def dispatch_pkg(action, pkgs):
    project = active["project"]
    if action == "add":
        run_command(pip_command("install", *pkgs))
    elif action == "rm":
        run_command(pip_command("uninstall", "-y", *pkgs))
    elif action == "status":
        print_status()
    elif action == "update":
        targets = pkgs or outdated_packages()
        if not targets:
            print("All packages are up to date")
        else:
            run_command(pip_command("install", "--upgrade", *targets))
    elif action == "instantiate":
        requirements = os.path.join(project, "requirements.txt")
        if os.path.isfile(requirements):
            run_command(pip_command("install", "-r", requirements))
        elif any(os.path.isfile(os.path.join(project, f)) for f in ("pyproject.toml", "setup.py")):
            run_command(pip_command("install", "-e", project))
        else:
            raise FileNotFoundError(
                f"no requirements.txt, pyproject.toml or setup.py in {project}")
    elif action == "resolve":
        run_command(pip_command("check"))
    elif action == "test":
        cmd = [active["python"], "-m", "pytest"]
        if pkgs:
            cmd += ["--pyargs", *pkgs]
        run_command(cmd)
    elif action == "develop":
        for pkg in pkgs:
            run_command(pip_command("install", "-e", develop_target(pkg)))
    elif action == "free":
        run_command(pip_command("install", "--force-reinstall", "--no-deps", *pkgs))


def run_pkg(action, pkgs):
    error = None
    with capture_output() as captured:
        try:
            dispatch_pkg(action, pkgs)
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
    return {
        "status": "ok",
        "error": error,
        "stdout": captured["stdout"],
        "stderr": captured["stderr"],
    }


# ---------------------------------------------------------------------------
# Session info
# ---------------------------------------------------------------------------

def user_names():
    """Names the user bound, excluding startup names and _private ones."""
    return sorted(
        name for name in namespace
        if name not in _baseline_names and not name.startswith("_")
    )


def info():
    return {
        "status": "ok",
        "version": sys.version.split()[0],
        "executable": sys.executable,
        "project": active["project"],
        "variables": user_names(),
        "modules": len(sys.modules),
    }


# ---------------------------------------------------------------------------
# Main loop
# ---------------------------------------------------------------------------

def handle(cmd):
    op = cmd.get("op")
    if op == "eval":
        return evaluate(cmd.get("code", ""))
    if op == "activate":
        return activate(cmd.get("path", ""))
    if op == "pkg":
        return run_pkg(cmd.get("action", ""), list(cmd.get("packages", [])))
    if op == "info":
        return info()
    if op == "ping":
        return {"status": "ok"}
    return {"status": "error", "message": f"Unknown op: {op}"}


def main():
    global _baseline_names
    proto_in = _open_protocol_channel()
    sys.modules["__main__"] = user_module
    _baseline_names = set(namespace)
    respond({"status": "ready", "pid": os.getpid(), "version": sys.version.split()[0]})

    for line in proto_in:
        line = line.strip()
        if not line:
            continue
        try:
            cmd = json.loads(line)
        except json.JSONDecodeError as e:
            respond({"status": "error", "message": f"Invalid JSON: {e}"})
            continue
        try:
            respond(handle(cmd))
        except Exception as e:
            respond({
                "status": "error",
                "message": str(e),
                "traceback": traceback.format_exc(),
            })


if __name__ == "__main__":
    main()
