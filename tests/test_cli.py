import os

import pytest
from typer.testing import CliRunner

from pasarctl.cli import install_core as core_cli
from pasarctl.cli import node as node_cli
from pasarctl.cli import panel as panel_cli
from pasarctl.core import config, state
from pasarctl.services import backup, cores, node, panel, restore, system

from conftest import write_file

cli = CliRunner()


@pytest.fixture(autouse=True)
def quiet(monkeypatch):
    for module in (panel_cli, node_cli, core_cli):
        monkeypatch.setattr(module, "setup_logging", lambda verbose=False: None)
    monkeypatch.setattr(system, "check_running_as_root", lambda: None)
    monkeypatch.setattr(system, "detect_os", lambda: "Ubuntu")


class TestPanelCli:
    def test_status_not_installed(self, panel_env, runner):
        os.rmdir(state.APP_DIR)
        result = cli.invoke(panel_cli.app, ["status"])
        assert result.exit_code == 1
        assert "Not Installed" in result.output

    def test_status_up(self, panel_env, runner):
        runner.add('ps -q -a', stdout="abc\n")
        runner.add('--format=json', stdout='[{"Service": "pasarguard", "State": "running"}]')
        result = cli.invoke(panel_cli.app, ["status"])
        assert result.exit_code == 0
        assert "Up" in result.output
        assert "- pasarguard: running" in result.output

    def test_down_when_already_down(self, panel_env, runner):
        result = cli.invoke(panel_cli.app, ["down"])
        assert result.exit_code == 1
        assert "pasarguard's already down" in result.output

    def test_up_without_logs(self, panel_env, runner):
        result = cli.invoke(panel_cli.app, ["up", "-n"])
        assert result.exit_code == 0
        assert runner.ran("up -d --remove-orphans")
        assert not runner.ran("logs -f")

    def test_cli_passthrough(self, panel_env, runner):
        runner.add('ps -q -a', stdout="abc\n")
        result = cli.invoke(panel_cli.app, ["cli", "admin", "list", "--json"])
        assert result.exit_code == 0
        assert runner.calls[-1].endswith("pasarguard pasarguard-cli admin list --json")

    def test_cli_requires_up(self, panel_env, runner):
        result = cli.invoke(panel_cli.app, ["tui"])
        assert result.exit_code == 1
        assert "pasarguard is not up." in result.output

    def test_backup_failure_exit_code(self, panel_env, runner, monkeypatch):
        monkeypatch.setattr(backup, "run_backup", lambda: False)
        assert cli.invoke(panel_cli.app, ["backup"]).exit_code == 1

    def test_restore_flags(self, panel_env, runner, monkeypatch):
        seen = {}

        def fake_restore(file_name=None):
            seen.update(file=file_name, auto=state.AUTO_CONFIRM)
            return 0

        monkeypatch.setattr(restore, "run_restore", fake_restore)
        result = cli.invoke(panel_cli.app, ["restore", "--file", "backup_1.zip", "-y"])
        assert result.exit_code == 0
        assert seen == {'file': "backup_1.zip", 'auto': True}

    def test_install_conflicting_flags(self, panel_env, runner):
        result = cli.invoke(panel_cli.app, ["install", "--dev", "--pre-release"])
        assert result.exit_code == 1
        assert "Cannot use --pre-release" in result.output

    def test_install_unknown_database(self, panel_env, runner):
        result = cli.invoke(panel_cli.app, ["install", "--database", "mongodb"])
        assert result.exit_code == 1

    def test_install_flow(self, panel_env, runner, monkeypatch):
        os.rmdir(state.APP_DIR)
        calls = []
        monkeypatch.setattr(system, "command_exists", lambda name: True)
        monkeypatch.setattr(panel, "check_version_exists", lambda v: (True, "v1.2.0", 1))
        monkeypatch.setattr(panel, "check_existing_database_volumes", lambda db: calls.append(("volumes", db)))
        monkeypatch.setattr(panel, "install_panel",
                            lambda version, major, db: calls.append(("install", version, major, db)) or (True, "ok"))
        monkeypatch.setattr(panel_cli, "confirm", lambda question, default=False: False)

        result = cli.invoke(panel_cli.app, ["install", "--database", "mariadb", "--version", "v1.2.0"])
        assert result.exit_code == 0, result.output
        assert calls == [("volumes", "mariadb"), ("install", "v1.2.0", 1, "mariadb")]
        assert "Skipping node installation." in result.output
        assert runner.ran("up -d") and runner.ran("logs -f")

    def test_install_invalid_version(self, panel_env, runner, monkeypatch):
        os.rmdir(state.APP_DIR)
        monkeypatch.setattr(system, "command_exists", lambda name: True)
        result = cli.invoke(panel_cli.app, ["install", "--version", "1.2"])
        assert result.exit_code == 1
        assert "Invalid version format" in result.output

    def test_install_node_switches_back_to_panel(self, panel_env, runner, monkeypatch):
        seen = []
        monkeypatch.setattr(node_cli, "run_install", lambda version: seen.append((version, state.APP_NAME)))
        result = cli.invoke(panel_cli.app, ["install-node"])
        assert result.exit_code == 0
        assert seen == [("latest", "pg-node")]
        assert state.APP_NAME == "pasarguard"

    def test_uninstall(self, panel_env, runner, monkeypatch):
        answers = iter([True, True])
        monkeypatch.setattr(panel_cli, "confirm", lambda question, default=False: next(answers))
        result = cli.invoke(panel_cli.app, ["uninstall"])
        assert result.exit_code == 0
        assert not os.path.exists(state.APP_DIR)
        assert not os.path.exists(state.DATA_DIR)


class TestNodeCli:
    def test_usage_when_not_installed(self, node_env, runner):
        os.rmdir(state.APP_DIR)
        result = cli.invoke(node_cli.app, [])
        assert result.exit_code == 0
        assert "pg-node Node CLI Help" in result.output

    def test_name_collides_with_command(self, node_env, runner):
        result = cli.invoke(node_cli.app, ["--name", "ls", "install"])
        assert result.exit_code == 1
        assert "existing Linux command" in result.output

    def test_conflicting_install_flags(self, node_env, runner):
        result = cli.invoke(node_cli.app, ["install", "-v", "v0.5.2", "--pre-release"])
        assert result.exit_code == 1

    def test_install_prints_connection_details(self, node_env, runner, monkeypatch):
        os.rmdir(state.APP_DIR)
        key = "3b241101-e2bb-4255-8caf-4136c566a962"
        monkeypatch.setattr(system, "command_exists", lambda name: True)
        monkeypatch.setattr(system, "get_public_ip", lambda family=4: "203.0.113.7" if family == 4 else "")
        monkeypatch.setattr(node, "check_version_exists", lambda v: (True, "latest"))

        def fake_install(version):
            os.makedirs(state.APP_DIR, exist_ok=True)
            write_file(_mk(state.SSL_CERT_FILE), "-----BEGIN CERTIFICATE-----\n")
            return 62050, key

        monkeypatch.setattr(node, "install_node", fake_install)
        result = cli.invoke(node_cli.app, ["install"])
        assert result.exit_code == 0, result.output
        assert "203.0.113.7 and Port: 62050" in result.output
        assert "-----BEGIN CERTIFICATE-----" in result.output
        assert key in result.output

    def test_core_update_options(self, node_env, runner, monkeypatch):
        seen = []
        monkeypatch.setattr(node, "update_cores", lambda core, version: seen.append((core, version)))
        result = cli.invoke(node_cli.app, ["core-update", "--core", "sing-box", "--version", "v1.9.3"])
        assert result.exit_code == 0
        assert seen == [("sing-box", "v1.9.3")]

    def test_geofiles_regions(self, node_env, runner, monkeypatch):
        seen = []
        monkeypatch.setattr(node, "download_geofiles", lambda regions: seen.append(regions))
        result = cli.invoke(node_cli.app, ["geofiles", "--china", "--iran"])
        assert result.exit_code == 0
        assert seen == [["iran", "china"]]

    def test_status_down(self, node_env, runner):
        result = cli.invoke(node_cli.app, ["status"])
        assert result.exit_code == 1
        assert "Down" in result.output

    def test_custom_name_selects_instance(self, node_env, runner):
        os.makedirs(os.path.join(config.INSTALL_DIR, "edge"))
        result = cli.invoke(node_cli.app, ["--name", "edge", "status"])
        assert result.exit_code == 1
        assert state.APP_NAME == "edge"
        assert runner.ran("-p edge ps -q -a")


def _mk(path):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    return path


class TestInstallCoreCli:
    def test_unsupported_core(self, panel_env, monkeypatch):
        monkeypatch.setattr(cores, "detect_arch", lambda: "64")
        result = cli.invoke(core_cli.app, ["--core", "v2ray"])
        assert result.exit_code == 1
        assert "unsupported core type 'v2ray'" in result.output

    def test_xray_install(self, panel_env, monkeypatch):
        import io
        import zipfile

        buf = io.BytesIO()
        with zipfile.ZipFile(buf, 'w') as zf:
            zf.writestr("xray", "bin")
            zf.writestr("geosite.dat", "site")
        urls = []

        def fake_download(url, dest, timeout=None):
            urls.append(url)
            with open(dest, 'wb') as f:
                f.write(buf.getvalue())
            return True, dest

        from pasarctl.services import github
        monkeypatch.setattr(github, "download_file", fake_download)
        monkeypatch.setattr(cores, "detect_arch", lambda: "arm64-v8a")

        result = cli.invoke(core_cli.app, ["v1.8.24", "--core", "xray"])
        assert result.exit_code == 0, result.output
        assert urls == ["https://github.com/XTLS/Xray-core/releases/download/v1.8.24/Xray-linux-arm64-v8a.zip"]
        assert os.path.isfile(os.path.join(config.BIN_DIR, "xray"))
        assert os.path.isfile(os.path.join(config.SHARE_DIR, "xray", "geosite.dat"))
