# pasarctl/cli/node.py
import logging
import shutil
import sys
from typing import Optional

import typer

from pasarctl.core import config, state
from pasarctl.core.console import colorized_echo, confirm, console, die
from pasarctl.main import setup_logging
from pasarctl.services import cores, docker_ops, node, system
from pasarctl.utils.parsers import is_plain_version

logger = logging.getLogger("CLI.Node")

app = typer.Typer(name="pg-node", help="PasarGuard node management", invoke_without_command=True,
                  add_completion=True)


@app.callback()
def main(ctx: typer.Context,
         yes: bool = typer.Option(False, "-y", "--yes", help="Use default answers for all prompts"),
         name: Optional[str] = typer.Option(None, "--name", help="Target a specific node instance"),
         verbose: bool = typer.Option(False, "--verbose", help="Show diagnostic logs")):
    setup_logging(verbose)
    state.AUTO_CONFIRM = yes
    if name is not None and not name:
        die("Error: --name requires a value.")
    if name and ctx.invoked_subcommand == 'install' and shutil.which(name):
        die(f"Error: '{name}' is an existing Linux command. Please choose a different --name.")
    state.use_node(name or config.NODE_APP_NAME)
    if ctx.invoked_subcommand is None:
        print_usage()


def detect_node_ip():
    state.NODE_IP_V4 = system.get_public_ip(4)
    state.NODE_IP_V6 = system.get_public_ip(6)


def print_usage():
    colorized_echo("blue", "=" * 32)
    colorized_echo("magenta", f"       {state.APP_NAME} Node CLI Help")
    colorized_echo("blue", "=" * 32)
    console.print(f"Usage: {state.APP_NAME} [command] [options]  (see --help)")
    if not state.is_installed(): return
    detect_node_ip()
    colorized_echo("cyan", "Node Information:")
    colorized_echo("magenta", f"  Node IP: {node.node_ip()}")
    colorized_echo("magenta", f"  Service port: {node.read_env_value('SERVICE_PORT')}")
    colorized_echo("magenta", f"  Cert file path: {state.SSL_CERT_FILE}")
    colorized_echo("magenta", f"  API Key : {node.read_env_value('API_KEY')}")
    colorized_echo("cyan", "Current Xray-core version: ")
    colorized_echo("magenta", cores.current_xray_version())
    colorized_echo("blue", "=" * 33)


# ================= 前置检查 =================

def require_installed(message=None):
    if not state.is_installed():
        die(message or "node's not installed!")
    docker_ops.detect_compose()


# ================= 安装 =================

def run_install(version):
    """install 与面板 install-node 共用的流程"""
    if state.is_installed():
        colorized_echo("red", f"node is already installed at {state.APP_DIR}")
        if not confirm("Do you want to override the previous installation?", default=False):
            die("Aborted installation")

    system.detect_os()
    if not system.command_exists('docker'):
        system.install_docker()
    docker_ops.detect_compose()
    detect_node_ip()

    if version not in ('latest', 'pre-release') and not is_plain_version(version):
        die("Invalid version format. Please enter a valid version (e.g. v1.0.0)")
    ok, resolved = node.check_version_exists(version)
    if not ok:
        die(f"Version {version} does not exist. Please enter a valid version (e.g. v0.5.2)")

    port, api_key = node.install_node(resolved)
    colorized_echo(None, f"Installing {resolved} version")
    docker_ops.up()
    docker_ops.logs()

    colorized_echo("blue", "=" * 32)
    colorized_echo("magenta", f" node is set up with the following IP: {node.node_ip()} and Port: {port}.")
    colorized_echo("magenta", f"Please use the following Certificate in pasarguard Panel "
                              f"(it's located in {state.DATA_DIR}/certs):")
    with open(state.SSL_CERT_FILE, 'r', encoding='utf-8') as f:
        console.print(f.read(), markup=False, end="")
    colorized_echo("blue", "=" * 32)
    colorized_echo("magenta", "Next, use the API Key (UUID v4) in pasarguard Panel: ")
    colorized_echo("red", api_key)


@app.command()
def install(version: Optional[str] = typer.Option(None, "-v", "--version", help="Install specific version"),
            pre_release: bool = typer.Option(False, "--pre-release", help="Install pre-release version")):
    """Install/reinstall node"""
    system.check_running_as_root()
    if version and pre_release:
        die("Error: Cannot use --pre-release and --version options simultaneously.")
    run_install('pre-release' if pre_release else (version or 'latest'))


@app.command()
def update():
    """Update to latest version"""
    system.check_running_as_root()
    require_installed("node not installed!")
    colorized_echo("blue", "Pulling latest version")
    docker_ops.pull()
    colorized_echo("blue", "Restarting node services")
    node.restart()
    colorized_echo("blue", "node updated successfully")


@app.command()
def uninstall():
    """Uninstall node"""
    system.check_running_as_root()
    require_installed("node not installed!")
    if not confirm("Do you really want to uninstall node?", default=False):
        die("Aborted")
    if docker_ops.is_up():
        docker_ops.down()
    remove_data = confirm(f"Do you want to remove node data files too ({state.DATA_DIR})?", default=False)
    node.uninstall_node(remove_data)
    colorized_echo("green", "node uninstalled successfully")


# ================= 生命周期 =================

@app.command()
def up(no_logs: bool = typer.Option(False, "-n", "--no-logs", help="Do not follow logs after starting")):
    """Start services"""
    require_installed()
    if docker_ops.is_up():
        die("node's already up")
    docker_ops.up()
    if not no_logs:
        docker_ops.logs(follow=True)


@app.command()
def down():
    """Stop services"""
    require_installed("node not installed!")
    if not docker_ops.is_up():
        die("node already down")
    docker_ops.down()


@app.command()
def restart(no_logs: bool = typer.Option(False, "-n", "--no-logs", help="Do not follow logs after starting")):
    """Restart services"""
    require_installed("node not installed!")
    node.restart()
    if not no_logs:
        docker_ops.logs(follow=True)


@app.command()
def status():
    """Show status"""
    console.print("Status: ", end="")
    if not state.is_installed():
        colorized_echo("red", "Not Installed")
        raise typer.Exit(code=1)
    docker_ops.detect_compose()
    if not docker_ops.is_up():
        colorized_echo("blue", "Down")
        raise typer.Exit(code=1)
    colorized_echo("green", "Up")
    for service, service_state in docker_ops.service_states():
        console.print(f"- {service}: ", end="")
        colorized_echo("green" if service_state == 'running' else "red", service_state)


@app.command()
def logs(no_follow: bool = typer.Option(False, "-n", "--no-follow", help="Do not follow logs")):
    """Show logs"""
    require_installed()
    if not docker_ops.is_up():
        die("node is not up.")
    docker_ops.logs(follow=not no_follow)


# ================= 内核与地理文件 =================

@app.command("core-update")
def core_update(core: Optional[str] = typer.Option(None, "--core", help="xray | sing-box | all"),
                version: str = typer.Option("", "--version", help="Core version tag (e.g. v25.1.1)")):
    """Update/Change node cores (xray or sing-box)"""
    system.check_running_as_root()
    require_installed()
    node.update_cores(core, version)


@app.command()
def geofiles(iran: bool = typer.Option(False, "--iran", help="Iran geofiles"),
             russia: bool = typer.Option(False, "--russia", help="Russia geofiles"),
             china: bool = typer.Option(False, "--china", help="China geofiles")):
    """Download geoip and geosite files for specific regions"""
    system.check_running_as_root()
    require_installed()
    regions = [r for r, chosen in (('iran', iran), ('russia', russia), ('china', china)) if chosen]
    node.download_geofiles(regions)


# ================= 编辑 =================

@app.command()
def edit():
    """Edit docker-compose.yml (via nano or vi)"""
    system.detect_os()
    system.edit_file(state.COMPOSE_FILE, f"Compose file not found at {state.COMPOSE_FILE}")


@app.command("edit-env")
def edit_env():
    """Edit .env file (via nano or vi)"""
    system.detect_os()
    system.edit_file(state.ENV_FILE, f"Environment file not found at {state.ENV_FILE}")
