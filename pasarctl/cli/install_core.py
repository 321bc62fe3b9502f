# pasarctl/cli/install_core.py
import logging
import os
import sys
import tempfile
import zipfile
from typing import Optional

import typer

from pasarctl.core import config
from pasarctl.core.console import ask, colorized_echo, confirm, die
from pasarctl.main import setup_logging
from pasarctl.services import cores, github, system
from pasarctl.utils.common import extract_zip

logger = logging.getLogger("CLI.InstallCore")

app = typer.Typer(name="pg-install-core", help="Install Xray and/or Sing-Box on this host", add_completion=False)


# ================= 安装步骤 =================

def install_xray_release(tag, arch):
    """/usr/local/bin/xray + /usr/local/share/xray/"""
    tag = tag or 'latest'
    with tempfile.TemporaryDirectory() as tmp:
        url = cores.xray_download_url(tag, arch)
        archive = os.path.join(tmp, f"Xray-linux-{arch}.zip")
        colorized_echo(None, f"Downloading Xray archive: {url}")
        ok, msg = github.download_file(url, archive)
        if not ok: die("error: Download failed! Please check your network or try again.")
        try:
            extract_zip(archive, tmp)
        except (ValueError, OSError, zipfile.BadZipFile) as e:
            logger.error(f"❌ 解压 Xray 失败: {e}")
            die("error: Xray decompression failed.")
        colorized_echo(None, f"Extracted Xray archive to {tmp}")
        cores.place_xray(tmp)


def install_singbox_release(tag, arch):
    """/usr/local/bin/sing-box + /usr/local/share/sing-box/"""
    resolved = cores.resolve_singbox_version(tag or 'latest')
    if not resolved: die("error: failed to resolve latest sing-box release")
    ok, msg = cores.install_singbox(resolved, arch, os.path.join(config.BIN_DIR, 'sing-box'),
                                    os.path.join(config.SHARE_DIR, 'sing-box'))
    if not ok: die(f"error: {msg}")
    colorized_echo("green", "Sing-Box files installed")


def _choose_core():
    colorized_echo(None, "Select which core to install:")
    for line in ("  1) Xray", "  2) Sing-Box", "  3) Both"):
        colorized_echo(None, line)
    choice = ask("Choice", default="1")
    return {'2': 'sing-box', '3': 'both'}.get(choice, 'xray')


def _offer_other(installed, arch, interactive):
    if not interactive: return
    other = 'sing-box' if installed == 'xray' else 'xray'
    if not confirm(f"Install {other} as well?", default=False): return
    if other == 'sing-box':
        install_singbox_release(ask("Enter Sing-Box version tag", default="latest"), arch)
    else:
        install_xray_release(ask("Enter Xray version tag", default="latest"), arch)


# ================= 命令 =================

@app.command()
def main(version: str = typer.Argument("latest", help="Release tag, latest by default"),
         core: Optional[str] = typer.Option(None, "--core", help="xray | sing-box | both"),
         verbose: bool = typer.Option(False, "--verbose", help="Show diagnostic logs")):
    """Install Xray and/or Sing-Box. When no version is provided the latest stable release will be installed."""
    setup_logging(verbose)
    interactive = sys.stdin.isatty()
    if core is None:
        core = _choose_core() if interactive else 'xray'
    core = (core or 'xray').lower()

    system.check_running_as_root()
    arch = cores.detect_arch()

    if core == 'xray':
        install_xray_release(version, arch)
        _offer_other('xray', arch, interactive)
    elif core in ('sing-box', 'singbox', 'sing'):
        install_singbox_release(version, arch)
        _offer_other('sing-box', arch, interactive)
    elif core in ('both', 'all'):
        install_xray_release(version, arch)
        singbox_tag = ask("Enter Sing-Box version tag", default="latest") if interactive else 'latest'
        install_singbox_release(singbox_tag, arch)
    else:
        die(f"error: unsupported core type '{core}'")
