# pasarctl/cli/panel.py
import logging
from typing import Optional

import typer

from pasarctl.core import config, state
from pasarctl.core.console import colorized_echo, confirm, console, die
from pasarctl.main import setup_logging
from pasarctl.services import backup, backup_service, docker_ops, panel, restore, system
from pasarctl.utils.parsers import is_semver

logger = logging.getLogger("CLI.Panel")

app = typer.Typer(name="pasarguard", help="PasarGuard panel management", no_args_is_help=True,
                  add_completion=True)

PASSTHROUGH = {"allow_extra_args": True, "ignore_unknown_options": True}


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", help="Show diagnostic logs")):
    setup_logging(verbose)
    state.use_panel()


# ================= 前置检查 =================

def require_installed():
    if not state.is_installed():
        die(f"{state.APP_NAME}'s not installed!")
    docker_ops.detect_compose()


def require_up():
    require_installed()
    if not docker_ops.is_up():
        die(f"{state.APP_NAME} is not up.")


def print_status():
    """Status: Not Installed | Down | Up，返回退出码"""
    console.print("Status: ", end="")
    if not state.is_installed():
        colorized_echo("red", "Not Installed")
        return 1
    docker_ops.detect_compose()
    if not docker_ops.is_up():
        colorized_echo("blue", "Down")
        return 1
    colorized_echo("green", "Up")
    for service, service_state in docker_ops.service_states():
        console.print(f"- {service}: ", end="")
        colorized_echo("green" if service_state == 'running' else "red", service_state)
    return 0


# ================= 生命周期 =================

@app.command()
def up(no_logs: bool = typer.Option(False, "-n", "--no-logs", help="Do not follow logs after starting")):
    """Start services"""
    require_installed()
    if docker_ops.is_up():
        die(f"{state.APP_NAME}'s already up")
    docker_ops.up()
    if not no_logs:
        docker_ops.logs(follow=True)


@app.command()
def down():
    """Stop services"""
    require_installed()
    if not docker_ops.is_up():
        die(f"{state.APP_NAME}'s already down")
    docker_ops.down()


@app.command()
def restart(no_logs: bool = typer.Option(False, "-n", "--no-logs", help="Do not follow logs after starting")):
    """Restart services"""
    require_installed()
    docker_ops.down()
    docker_ops.up()
    if not no_logs:
        docker_ops.logs(follow=True)


@app.command()
def status():
    """Show status"""
    raise typer.Exit(code=print_status())


@app.command()
def logs(no_follow: bool = typer.Option(False, "-n", "--no-follow", help="Do not follow logs")):
    """Show logs"""
    require_up()
    docker_ops.logs(follow=not no_follow)


@app.command(context_settings=PASSTHROUGH)
def cli(ctx: typer.Context):
    """PasarGuard command-line interface"""
    require_up()
    raise typer.Exit(code=docker_ops.exec_cli('cli', ctx.args))


@app.command(context_settings=PASSTHROUGH)
def tui(ctx: typer.Context):
    """PasarGuard text user interface"""
    require_up()
    raise typer.Exit(code=docker_ops.exec_cli('tui', ctx.args))


# ================= 备份 / 恢复 =================

@app.command("backup")
def backup_cmd():
    """Manual backup launch"""
    require_installed()
    if not backup.run_backup():
        raise typer.Exit(code=1)


@app.command("backup-service")
def backup_service_cmd():
    """Backup service to ask for Telegram info and set up cron"""
    require_installed()
    backup_service.menu()


@app.command("restore")
def restore_cmd(file: Optional[str] = typer.Option(None, "--file", help="Backup file name inside the backup directory"),
                yes: bool = typer.Option(False, "-y", "--yes", help="Do not ask for confirmation")):
    """Restore database from backup file"""
    require_installed()
    if yes: state.AUTO_CONFIRM = True
    code = restore.run_restore(file)
    if code: raise typer.Exit(code=code)


# ================= 安装 / 更新 / 卸载 =================

@app.command()
def install(database: str = typer.Option("sqlite", "--database", help="mysql | mariadb | postgresql | timescaledb"),
            dev: bool = typer.Option(False, "--dev", help="Install the dev image"),
            pre_release: bool = typer.Option(False, "--pre-release", help="Install the newest pre-release"),
            version: Optional[str] = typer.Option(None, "--version", help="Install a specific version (e.g. v0.5.2)")):
    """Install PasarGuard"""
    system.check_running_as_root()
    if database != 'sqlite' and database not in config.DB_TYPES:
        die(f"Unsupported database type: {database}")
    if sum([dev, pre_release, version is not None]) > 1:
        die("Error: Cannot use --pre-release , --dev and --version options simultaneously.")
    requested = 'dev' if dev else 'pre-release' if pre_release else (version or 'latest')

    if state.is_installed():
        colorized_echo("red", f"{state.APP_NAME} is already installed at {state.APP_DIR}")
        if not confirm("Do you want to override the previous installation?", default=False):
            die("Aborted installation")

    system.detect_os()
    if not system.command_exists('docker'):
        system.install_docker()
    docker_ops.detect_compose()

    if requested not in ('latest', 'dev', 'pre-release') and not is_semver(requested):
        die("Invalid version format. Please enter a valid version (e.g. v0.5.2)")
    ok, resolved, major = panel.check_version_exists(requested)
    if not ok:
        die(f"Version {requested} does not exist. Please enter a valid version (e.g. v0.5.2)")

    panel.check_existing_database_volumes(database)
    ok, msg = panel.install_panel(resolved, major, database)
    if not ok: die(msg)
    colorized_echo("green", msg)
    colorized_echo(None, f"Installing {resolved} version")
    docker_ops.up()

    colorized_echo("blue", "=" * 30)
    colorized_echo("yellow", "PasarGuard doesn't have any core by default.")
    colorized_echo("yellow", "You need at least one node for proxy connection.")
    colorized_echo("cyan", "Want to install node on same server?")
    colorized_echo("red", "(Not recommended for commercial use)")
    if confirm("Do you want to install PasarGuard node?", default=False):
        _install_node_in_process()
    else:
        colorized_echo("yellow", "Skipping node installation.")
    docker_ops.logs(follow=True)


def _install_node_in_process():
    from pasarctl.cli import node as node_cli

    state.use_node(config.NODE_APP_NAME)
    try:
        node_cli.run_install('latest')
    finally:
        state.use_panel()


@app.command("install-node")
def install_node():
    """Install PasarGuard node on this server"""
    system.check_running_as_root()
    _install_node_in_process()


@app.command()
def update():
    """Update to latest version"""
    system.check_running_as_root()
    require_installed()
    colorized_echo("blue", "Pulling latest version")
    docker_ops.pull()
    colorized_echo("blue", f"Restarting {state.APP_NAME}'s services")
    docker_ops.down()
    docker_ops.up()
    colorized_echo("blue", f"{state.APP_NAME} updated successfully")


@app.command()
def uninstall():
    """Uninstall PasarGuard"""
    system.check_running_as_root()
    require_installed()
    if not confirm(f"Do you really want to uninstall {state.APP_NAME}?", default=False):
        die("Aborted")
    if docker_ops.is_up():
        docker_ops.down()
    remove_data = confirm(f"Do you want to remove {state.APP_NAME}'s data files too ({state.DATA_DIR})?",
                          default=False)
    panel.uninstall_panel(remove_data)
    colorized_echo("green", f"{state.APP_NAME} uninstalled successfully")


# ================= 编辑 =================

@app.command()
def edit():
    """Edit docker-compose.yml"""
    system.detect_os()
    system.edit_file(state.COMPOSE_FILE, f"Compose file not found at {state.COMPOSE_FILE}")


@app.command("edit-env")
def edit_env():
    """Edit .env file"""
    system.detect_os()
    system.edit_file(state.ENV_FILE, f"Environment file not found at {state.ENV_FILE}")
