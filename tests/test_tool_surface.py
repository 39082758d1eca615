"""Tests for the MCP tool functions.

Verifies that:
- the six tools are registered with FastMCP
- parameter validation answers with text and never touches the worker
- the eval/reset/pkg/activate scenario works end to end
- configuration is read from the environment once, via ServerConfig
"""

import asyncio
import os
import sys
from unittest.mock import MagicMock, patch

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))
import repl_server
from repl_server import (
    InteractionLog,
    PackageActionResult,
    ServerConfig,
    WorkerState,
    WorkerSupervisor,
    mcp,
    parse_package_list,
)


def run_eval(code: str) -> str:
    return asyncio.run(repl_server.eval_code(code))


@pytest.fixture
def backend():
    supervisor = WorkerSupervisor(WorkerState(), ServerConfig(python=sys.executable))
    with patch("repl_server.get_backend", return_value=supervisor):
        try:
            yield supervisor
        finally:
            supervisor.close()


# ============================================================
# Registration
# ============================================================


class TestRegistration:
    def test_tool_names(self):
        tools = asyncio.run(mcp.list_tools())
        names = {t.name for t in tools}
        assert names == {"eval", "reset", "info", "pkg", "activate", "log_viewer"}

    def test_descriptions_loaded_from_docs(self):
        tools = {t.name: t for t in asyncio.run(mcp.list_tools())}
        assert "persistent Python session" in tools["eval"].description
        assert "instantiate" in tools["pkg"].description


# ============================================================
# Validation
# ============================================================


class TestValidation:
    @pytest.mark.parametrize("code", ["", "   ", "\n\t\n"])
    def test_empty_code_rejected(self, code):
        mock_backend = MagicMock()
        with patch("repl_server.get_backend", return_value=mock_backend):
            result = run_eval(code)
        assert result == "Error: 'code' parameter cannot be empty"
        mock_backend.evaluate.assert_not_called()

    def test_unknown_pkg_action(self):
        mock_backend = MagicMock()
        with patch("repl_server.get_backend", return_value=mock_backend):
            result = repl_server.pkg("install")
        assert result.startswith("Error: action must be one of:")
        assert "(got: 'install')" in result
        mock_backend.run_package_action.assert_not_called()

    @pytest.mark.parametrize("action", ["add", "rm", "develop", "free"])
    def test_pkg_action_requires_packages(self, action):
        mock_backend = MagicMock()
        with patch("repl_server.get_backend", return_value=mock_backend):
            result = repl_server.pkg(action, " , ")
        assert result == f"Error: 'packages' parameter is required for action '{action}'"
        mock_backend.run_package_action.assert_not_called()

    def test_pkg_action_is_normalized(self):
        mock_backend = MagicMock()
        mock_backend.run_package_action.return_value = PackageActionResult(None, "ok\n", "")
        with patch("repl_server.get_backend", return_value=mock_backend):
            result = repl_server.pkg("  ADD ", "requests, numpy  pandas")
        mock_backend.run_package_action.assert_called_once_with("add", ["requests", "numpy", "pandas"])
        assert result.startswith("Added 3 package(s): requests, numpy, pandas")

    def test_pkg_error_leads(self):
        mock_backend = MagicMock()
        mock_backend.run_package_action.return_value = PackageActionResult(
            "RuntimeError: pip exited with status 1", "Collecting nope\n", "ERROR: no match\n")
        with patch("repl_server.get_backend", return_value=mock_backend):
            result = repl_server.pkg("add", "nope")
        assert result.startswith("Error during pkg add:\nRuntimeError")
        assert "Collecting nope" in result
        assert "[stderr]\nERROR: no match" in result

    def test_empty_activate_path(self):
        mock_backend = MagicMock()
        with patch("repl_server.get_backend", return_value=mock_backend):
            result = repl_server.activate("  ")
        assert result.startswith("Error:")
        mock_backend.activate_project.assert_not_called()

    def test_parse_package_list(self):
        assert parse_package_list("a, b  c,d") == ["a", "b", "c", "d"]
        assert parse_package_list("") == []
        assert parse_package_list(None) == []


# ============================================================
# End-to-end scenario
# ============================================================


class TestScenario:
    def test_eval_reset_pkg_activate(self, backend):
        first = run_eval("x = 10")
        assert not first.startswith("Error")
        assert first.endswith("10")

        assert run_eval("x * 2").endswith("20")

        reset_msg = repl_server.reset()
        assert "Session reset complete." in reset_msg

        after = run_eval("x")
        assert after.startswith("Error:")
        assert "NameError" in after

        status = repl_server.pkg(action="status")
        assert not status.startswith("Error")
        assert "Package Status:" in status

        activated = repl_server.activate(path=".")
        assert activated.startswith(f"Activated project: {os.path.realpath(os.getcwd())}")

    def test_eval_shows_output(self, backend):
        result = run_eval('print("X"); 1+1')
        assert result.split("\n") == ['>>> print("X"); 1+1', "", "X", "2"]

    def test_reset_reports_worker_ids(self, backend):
        old_id = backend.ensure()
        msg = repl_server.reset()
        assert f"Old worker (PID: {old_id}) terminated" in msg
        assert f"New worker (PID: {backend.state.worker_id}) spawned" in msg

    def test_reset_reports_reactivation(self, backend, tmp_path):
        repl_server.activate(str(tmp_path))
        msg = repl_server.reset()
        assert f"Project re-activated: {os.path.realpath(str(tmp_path))}" in msg

    def test_reset_reports_reactivation_failure(self, backend, tmp_path):
        project = tmp_path / "gone"
        project.mkdir()
        repl_server.activate(str(project))
        project.rmdir()
        msg = repl_server.reset()
        assert "Warning: could not re-activate project" in msg

    def test_info(self, backend):
        run_eval("alpha = 1\n_hidden = 2\nimport json")
        result = repl_server.info()
        assert "Python Version:" in result
        assert f"Worker PID: {backend.state.worker_id}" in result
        variables_line = next(l for l in result.split("\n") if l.startswith("User Variables:"))
        assert "alpha" in variables_line
        assert "json" in variables_line
        assert "_hidden" not in variables_line
        assert "__builtins__" not in variables_line

    def test_info_without_user_names(self, backend):
        assert "User Variables: (none)" in repl_server.info()

    def test_activate_failure(self, backend):
        result = repl_server.activate("/definitely/not/a/project")
        assert result.startswith("Error activating project:")
        assert backend.state.project_path is None


# ============================================================
# Log viewer
# ============================================================


class TestLogViewer:
    def test_file_mode_records_interactions(self, backend, tmp_path):
        log = InteractionLog(str(tmp_path / "logs" / "repl.log"))
        with patch("repl_server.get_interaction_log", return_value=log):
            msg = repl_server.log_viewer("file")
            assert "Log viewer enabled." in msg
            run_eval("print('logged'); 41 + 1")
            run_eval("1/0")
            assert repl_server.log_viewer("off") == "Log viewer disabled."
        content = (tmp_path / "logs" / "repl.log").read_text()
        assert "41 + 1" in content
        assert "logged" in content
        assert "ZeroDivisionError" in content
        assert "Session ended" in content

    def test_closed_log_ignores_records(self, tmp_path):
        log = InteractionLog(str(tmp_path / "repl.log"))
        log.record("1", "1", "", None)
        assert not log.is_open
        assert not (tmp_path / "repl.log").exists()

    def test_invalid_mode(self):
        assert repl_server.log_viewer("tmux").startswith("Error: mode must be 'file' or 'off'")


# ============================================================
# Configuration
# ============================================================


class TestServerConfig:
    def test_defaults(self):
        config = ServerConfig.from_env(environ={})
        assert config.project_dir is None
        assert config.python is None
        assert config.viewer == "none"
        assert config.eval_timeout is None
        assert config.output_limit == repl_server.DEFAULT_OUTPUT_LIMIT
        assert config.env_home == os.path.join(os.path.expanduser("~"), ".virtualenvs")

    def test_environment_values(self, tmp_path):
        config = ServerConfig.from_env(environ={
            "REPL_PROJECT": str(tmp_path),
            "REPL_PYTHON": "/usr/bin/python3",
            "WORKON_HOME": str(tmp_path / "envs"),
            "REPL_VIEWER": "FILE",
            "REPL_LOG": str(tmp_path / "x.log"),
            "REPL_OUTPUT_LIMIT": "500",
            "REPL_TIMEOUT_SECONDS": "2.5",
        })
        assert config.project_dir == str(tmp_path)
        assert config.python == "/usr/bin/python3"
        assert config.env_home == str(tmp_path / "envs")
        assert config.viewer == "file"
        assert config.log_path == str(tmp_path / "x.log")
        assert config.output_limit == 500
        assert config.eval_timeout == 2.5

    def test_argument_overrides_environment(self, tmp_path):
        config = ServerConfig.from_env([str(tmp_path)], environ={"REPL_PROJECT": "/elsewhere"})
        assert config.project_dir == str(tmp_path)

    def test_backend_gets_initial_project(self, tmp_path):
        config = ServerConfig(project_dir=str(tmp_path), python=sys.executable)
        with patch.object(repl_server, "_config", None), \
                patch.object(repl_server, "_backend", None), \
                patch.object(repl_server, "_interaction_log", None):
            repl_server.configure(config)
            sup = repl_server.get_backend()
            try:
                assert sup.state.project_path == str(tmp_path)
                assert sup.config is config
                assert sup.state.worker_id is None
            finally:
                sup.close()

    def test_main_rejects_missing_project(self, tmp_path):
        with pytest.raises(SystemExit):
            repl_server.main([str(tmp_path / "missing")])
