import subprocess

import pytest
import requests

from pasarctl.core import config, state
from pasarctl.services import docker_ops, system


class FakeRunner:
    """
    Scripted stand-in for system.run_cmd.
    Rules match a substring of the joined command, first match wins.
    """

    def __init__(self):
        self.rules = []
        self.calls = []
        self.inputs = []

    def add(self, pattern, returncode=0, stdout="", stderr="", write=None, action=None):
        self.rules.append((pattern, returncode, stdout, stderr, write, action))
        return self

    def __call__(self, cmd, capture=True, input=None, stdin=None, stdout=None, stderr=None,
                 cwd=None, env=None, timeout=None):
        line = " ".join(str(c) for c in cmd)
        self.calls.append(line)
        self.inputs.append(input if input is not None else (stdin.read() if stdin is not None else None))
        for pattern, returncode, out, err, write, action in self.rules:
            if pattern in line:
                if write is not None and stdout is not None:
                    stdout.write(write)
                if action is not None:
                    action(cmd, cwd)
                return subprocess.CompletedProcess(cmd, returncode, out, err)
        return subprocess.CompletedProcess(cmd, 0, "", "")

    def ran(self, pattern):
        return any(pattern in c for c in self.calls)

    def find(self, pattern):
        return [c for c in self.calls if pattern in c]


class FakeResponse:
    def __init__(self, status_code=200, json_data=None, text="", content=b""):
        self.status_code = status_code
        self._json = json_data
        self.text = text
        self.content = content

    def json(self):
        if self._json is None:
            raise ValueError("no json")
        return self._json

    def iter_content(self, chunk_size=1):
        yield self.content

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


@pytest.fixture(autouse=True)
def _no_network(monkeypatch):
    def blocked(*args, **kwargs):
        raise requests.ConnectionError("network disabled in tests")

    monkeypatch.setattr(requests.sessions.Session, "request", blocked)


@pytest.fixture()
def runner(monkeypatch):
    fake = FakeRunner()
    monkeypatch.setattr(system, "run_cmd", fake)
    monkeypatch.setattr(system, "run_interactive", lambda cmd: fake(cmd).returncode)
    monkeypatch.setattr(docker_ops.time, "sleep", lambda s: None)
    return fake


@pytest.fixture()
def tmp_path(tmp_path_factory):
    """Neutral temp dir name, so test names never leak into command lines that tests grep."""
    return tmp_path_factory.mktemp("case")


def _isolate(monkeypatch, tmp_path):
    roots = {
        "INSTALL_DIR": tmp_path / "opt",
        "DATA_ROOT": tmp_path / "var" / "lib",
        "LOG_DIR": tmp_path / "var" / "log",
        "TMP_DIR": tmp_path / "tmp",
        "BIN_DIR": tmp_path / "usr" / "local" / "bin",
        "SHARE_DIR": tmp_path / "usr" / "local" / "share",
    }
    for name, path in roots.items():
        path.mkdir(parents=True, exist_ok=True)
        monkeypatch.setattr(config, name, str(path))

    log_dir, tmp_dir = roots["LOG_DIR"], roots["TMP_DIR"]
    monkeypatch.setattr(config, "BACKUP_LOG_FILE", str(log_dir / "pasarguard_backup_error.log"))
    monkeypatch.setattr(config, "RESTORE_LOG_FILE", str(log_dir / "pasarguard_restore_error.log"))
    monkeypatch.setattr(config, "BACKUP_TMP_DIR", str(tmp_dir / "pasarguard_backup"))
    monkeypatch.setattr(config, "RESTORE_TMP_DIR", str(tmp_dir / "pasarguard_restore"))
    monkeypatch.setattr(config, "TELEGRAM_SPLIT_DIR", str(tmp_dir / "pasarguard_backup_split"))

    for name in ("APP_NAME", "APP_DIR", "DATA_DIR", "COMPOSE_FILE", "ENV_FILE", "SSL_CERT_FILE",
                 "SSL_KEY_FILE", "OS_NAME", "PKG_MANAGER", "NODE_IP_V4", "NODE_IP_V6"):
        monkeypatch.setattr(state, name, getattr(state, name))
    monkeypatch.setattr(state, "COMPOSE_CMD", ["docker", "compose"])
    monkeypatch.setattr(state, "AUTO_CONFIRM", False)


@pytest.fixture()
def panel_env(monkeypatch, tmp_path):
    """/opt/pasarguard + /var/lib/pasarguard inside tmp_path"""
    _isolate(monkeypatch, tmp_path)
    state.use_panel("pasarguard")
    import os
    os.makedirs(state.APP_DIR)
    os.makedirs(state.DATA_DIR)
    return tmp_path


@pytest.fixture()
def node_env(monkeypatch, tmp_path):
    """/opt/pg-node + /var/lib/pg-node inside tmp_path"""
    _isolate(monkeypatch, tmp_path)
    state.use_node("pg-node")
    import os
    os.makedirs(state.APP_DIR)
    os.makedirs(state.DATA_DIR)
    return tmp_path


def write_file(path, text):
    with open(path, "w", encoding="utf-8") as f:
        f.write(text)
    return path


def read_file(path):
    with open(path, "r", encoding="utf-8") as f:
        return f.read()
