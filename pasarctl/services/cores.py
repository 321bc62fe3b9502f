# pasarctl/services/cores.py
import logging
import os
import platform
import shutil
import stat
import tarfile
import tempfile
import zipfile

from rich.table import Table

from pasarctl.core import config, state
from pasarctl.core.console import ask, colorized_echo, console, die
from pasarctl.services import github, system
from pasarctl.services.docker_ops import is_container_running
from pasarctl.utils.common import extract_tar, extract_zip

logger = logging.getLogger("Services.Cores")

# uname -m -> Xray 发布包架构名
_ARCH_MAP = {
    'i386': '32', 'i686': '32',
    'amd64': '64', 'x86_64': '64',
    'armv5tel': 'arm32-v5',
    'armv6l': 'arm32-v6',
    'armv7': 'arm32-v7a', 'armv7l': 'arm32-v7a',
    'armv8': 'arm64-v8a', 'aarch64': 'arm64-v8a',
    'mips': 'mips32', 'mipsle': 'mips32le',
    'mips64': 'mips64', 'mips64le': 'mips64le',
    'ppc64': 'ppc64', 'ppc64le': 'ppc64le',
    'riscv64': 'riscv64', 's390x': 's390x',
}
_SINGBOX_ARCH = {'64': 'amd64', 'arm64-v8a': 'arm64', 'arm32-v7a': 'armv7', '32': '386'}


# ================= 架构探测 =================

def _cpu_features():
    try:
        with open('/proc/cpuinfo', 'r', encoding='utf-8', errors='replace') as f:
            for line in f:
                if line.startswith('Features'):
                    return line.split(':', 1)[-1].split()
    except OSError as e:
        logger.debug(f"读取 /proc/cpuinfo 失败: {e}")
    return []


def detect_arch(machine=None, cpu_features=None, lscpu_text=None, system_name=None):
    system_name = system_name or platform.system()
    if system_name != 'Linux':
        die("error: This operating system is not supported.")

    machine = machine or platform.machine()
    arch = _ARCH_MAP.get(machine)
    if not arch:
        die("error: The architecture is not supported.")

    if machine in ('armv6l', 'armv7', 'armv7l'):
        features = cpu_features if cpu_features is not None else _cpu_features()
        if 'vfp' not in features: arch = 'arm32-v5'
    elif machine == 'mips64':
        if lscpu_text is None: lscpu_text = system.run_cmd(['lscpu']).stdout or ''
        if 'Little Endian' in lscpu_text: arch = 'mips64le'
    return arch


def singbox_arch(arch):
    return _SINGBOX_ARCH.get(arch, '')


# ================= 下载地址 =================

def xray_download_url(tag, arch):
    base = f"{config.GITHUB_WEB}/{config.XRAY_REPO}/releases"
    if tag == 'latest':
        return f"{base}/latest/download/Xray-linux-{arch}.zip"
    return f"{base}/download/{tag}/Xray-linux-{arch}.zip"


def singbox_package_name(tag, arch):
    return f"sing-box-{tag.lstrip('v')}-linux-{singbox_arch(arch)}"


def singbox_download_url(tag, arch):
    return (f"{config.GITHUB_WEB}/{config.SINGBOX_REPO}/releases/download/"
            f"{tag}/{singbox_package_name(tag, arch)}.tar.gz")


def _install_file(src, dest, mode):
    """等价于 install -m <mode>"""
    folder = os.path.dirname(dest)
    if folder: os.makedirs(folder, exist_ok=True)
    shutil.copyfile(src, dest)
    os.chmod(dest, mode)


def _make_executable(path):
    os.chmod(path, os.stat(path).st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


# ================= Xray =================

def install_xray(tag, arch, target_dir):
    """下载 Xray 压缩包并全部解压到 target_dir"""
    url = xray_download_url(tag, arch)
    colorized_echo("blue", f"Downloading Xray-core {tag}: {url}")
    os.makedirs(target_dir, exist_ok=True)
    with tempfile.TemporaryDirectory() as tmp:
        archive = os.path.join(tmp, f"Xray-linux-{arch}.zip")
        ok, msg = github.download_file(url, archive)
        if not ok: return False, f"Download failed: {msg}"
        try:
            extract_zip(archive, target_dir)
        except (ValueError, OSError, zipfile.BadZipFile) as e:
            logger.error(f"❌ 解压 Xray 失败: {e}")
            return False, "Xray decompression failed."
    binary = os.path.join(target_dir, 'xray')
    if not os.path.isfile(binary):
        return False, "xray binary not found in archive"
    _make_executable(binary)
    logger.info(f"✅ Xray {tag} -> {target_dir}")
    return True, binary


def place_xray(extract_dir, bin_path=None, share_dir=None):
    """独立安装布局: /usr/local/bin/xray + /usr/local/share/xray/*.dat"""
    bin_path = bin_path or os.path.join(config.BIN_DIR, 'xray')
    share_dir = share_dir or os.path.join(config.SHARE_DIR, 'xray')
    _install_file(os.path.join(extract_dir, 'xray'), bin_path, 0o755)
    os.makedirs(share_dir, exist_ok=True)
    for name in config.GEOFILE_NAMES:
        src = os.path.join(extract_dir, name)
        if os.path.isfile(src):
            _install_file(src, os.path.join(share_dir, name), 0o644)
    colorized_echo("green", "Xray files installed")


# ================= Sing-Box =================

def install_singbox(tag, arch, bin_path, assets_dir):
    sing_arch = singbox_arch(arch)
    if not sing_arch:
        return False, f"Unsupported architecture {arch} for sing-box"

    url = singbox_download_url(tag, arch)
    colorized_echo("blue", f"Downloading Sing-Box core {tag}...")
    with tempfile.TemporaryDirectory() as tmp:
        archive = os.path.join(tmp, f"{singbox_package_name(tag, arch)}.tar.gz")
        ok, msg = github.download_file(url, archive)
        if not ok: return False, "Failed to download Sing-Box package"
        try:
            extract_tar(archive, tmp)
        except (ValueError, OSError, tarfile.TarError) as e:
            logger.error(f"❌ 解压 Sing-Box 失败: {e}")
            return False, "Failed to extract Sing-Box archive"

        extracted = os.path.join(tmp, singbox_package_name(tag, arch))
        binary = os.path.join(extracted, 'sing-box')
        if not os.path.isfile(binary):
            return False, "sing-box binary not found in archive"
        _install_file(binary, bin_path, 0o755)
        os.makedirs(assets_dir, exist_ok=True)
        for name in config.SINGBOX_ASSET_FILES:
            src = os.path.join(extracted, name)
            if os.path.isfile(src):
                _install_file(src, os.path.join(assets_dir, name), 0o644)
    logger.info(f"✅ Sing-Box {tag} -> {bin_path}")
    return True, bin_path


def resolve_singbox_version(requested=''):
    if not requested or requested == 'latest':
        return github.latest_release_tag(config.SINGBOX_REPO)
    if github.release_tag_exists(config.SINGBOX_REPO, requested):
        return requested
    return ''


# ================= 版本探测 =================

def _first_line(text):
    lines = (text or '').strip().splitlines()
    return lines[0].strip() if lines else ''


def current_xray_version(binary=None, container=None):
    binary = binary or os.path.join(state.DATA_DIR, 'xray-core', 'xray')
    if os.path.isfile(binary):
        result = system.run_cmd([binary, '-version'])
        fields = _first_line(result.stdout).split()
        if result.returncode == 0 and len(fields) > 1:
            return fields[1]

    container = container or state.APP_NAME
    if is_container_running(container, strict=True):
        result = system.run_cmd(['docker', 'exec', container, 'xray', '-version'])
        fields = _first_line(result.stdout).split()
        if result.returncode == 0 and len(fields) > 1:
            return f"{fields[1]} (in container)"
    return "Not installed"


def current_singbox_version(binary=None):
    binary = binary or os.path.join(state.DATA_DIR, 'sing-box-core', 'sing-box')
    if os.path.isfile(binary):
        line = _first_line(system.run_cmd([binary, 'version']).stdout)
        if line: return line
    return "Not installed"


# ================= 版本选择菜单 =================

def _print_xray_menu(versions):
    console.rule("[green]Xray-core Installer[/green]")
    colorized_echo("yellow", f">>>> Current Xray-core version: {current_xray_version()}")
    table = Table(title="Available Xray-core versions", show_header=False)
    table.add_column("#", style="blue")
    table.add_column("tag")
    for i, tag in enumerate(versions, 1):
        table.add_row(str(i), tag)
    table.add_row("M", "Enter a version manually")
    table.add_row("Q", "Quit")
    console.print(table)


def choose_xray_version(forced=None, auto=False):
    """返回选中的版本号，用户退出返回 None"""
    if forced:
        if not github.release_tag_exists(config.XRAY_REPO, forced):
            die(f"Invalid Xray-core version: {forced}")
        return forced

    versions = github.list_release_tags(config.XRAY_REPO, config.LAST_XRAY_CORES)
    if auto:
        if not versions: die("Failed to fetch Xray-core releases")
        return versions[0]

    while True:
        _print_xray_menu(versions)
        choice = ask(f"Choose a version to install (1-{len(versions)}), or press M to enter manually, Q to quit")
        if choice.isdigit() and 1 <= int(choice) <= len(versions):
            selected = versions[int(choice) - 1]
            break
        if choice in ('M', 'm'):
            while True:
                custom = ask("Enter the version manually (e.g., v1.2.3)")
                if custom and github.release_tag_exists(config.XRAY_REPO, custom):
                    selected = custom
                    break
                colorized_echo("red", "Invalid version or version does not exist. Please try again.")
            break
        if choice in ('Q', 'q'):
            colorized_echo("red", "Exiting.")
            return None
        colorized_echo("red", "Invalid choice. Please try again.")

    colorized_echo("green", f"Selected version {selected} for installation.")
    return selected
