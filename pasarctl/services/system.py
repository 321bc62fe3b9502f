# pasarctl/services/system.py
import logging
import os
import shutil
import subprocess

import requests
from requests.adapters import HTTPAdapter

from pasarctl.core import config, state
from pasarctl.core.console import colorized_echo, die
from pasarctl.utils.parsers import parse_listening_ports

logger = logging.getLogger("Services.System")


# ================= 子进程封装 =================

def run_cmd(cmd, capture=True, input=None, stdin=None, stdout=None, stderr=None,
            cwd=None, env=None, timeout=None):
    """
    统一的子进程入口，从不抛异常
    - 可执行文件不存在时返回 returncode=127
    - stdout 传入文件句柄时直接写入文件 (用于数据库导出)
    """
    logger.debug(f"🚀 执行: {' '.join(str(c) for c in cmd)}")
    if capture:
        stdout = stdout if stdout is not None else subprocess.PIPE
        stderr = stderr if stderr is not None else subprocess.PIPE
    try:
        return subprocess.run(
            [str(c) for c in cmd], input=input, stdin=stdin, stdout=stdout, stderr=stderr,
            cwd=cwd, env=env, timeout=timeout, text=True,
        )
    except FileNotFoundError:
        return subprocess.CompletedProcess(cmd, 127, '', f"{cmd[0]}: command not found")
    except subprocess.TimeoutExpired as e:
        logger.warning(f"⚠️ 命令超时: {cmd[0]} ({e.timeout}s)")
        return subprocess.CompletedProcess(cmd, 124, '', f"{cmd[0]}: timed out")


def run_interactive(cmd):
    """直接连接终端运行 (logs -f / cli / tui / 编辑器)，返回退出码"""
    logger.debug(f"🚀 交互执行: {' '.join(cmd)}")
    try:
        return subprocess.call(cmd)
    except FileNotFoundError:
        colorized_echo("red", f"{cmd[0]}: command not found")
        return 127
    except KeyboardInterrupt:
        return 130


def command_exists(name):
    return shutil.which(name) is not None


# ================= 权限与系统探测 =================

def check_running_as_root():
    if os.geteuid() != 0:
        die("This command must be run as root.")


def _read_key_value_file(path):
    values = {}
    with open(path, 'r', encoding='utf-8', errors='replace') as f:
        for line in f:
            if '=' not in line: continue
            key, _, value = line.strip().partition('=')
            values[key] = value.strip().strip('"')
    return values


def detect_os():
    """按 lsb-release -> os-release -> redhat-release -> arch-release 顺序识别"""
    name = ''
    if os.path.isfile('/etc/lsb-release'):
        result = run_cmd(['lsb_release', '-si'])
        if result.returncode == 0 and result.stdout.strip():
            name = result.stdout.strip()
        else:
            name = _read_key_value_file('/etc/lsb-release').get('DISTRIB_ID', '')
    elif os.path.isfile('/etc/os-release'):
        name = _read_key_value_file('/etc/os-release').get('NAME', '')
    elif os.path.isfile('/etc/redhat-release'):
        with open('/etc/redhat-release', 'r', encoding='utf-8', errors='replace') as f:
            parts = f.read().split()
        name = parts[0] if parts else ''
    elif os.path.isfile('/etc/arch-release'):
        name = 'Arch Linux'

    if not name:
        die("Unsupported operating system")
    state.OS_NAME = name
    logger.info(f"✅ 操作系统: {name}")
    return name


_UPDATE_CMDS = (
    (('Ubuntu', 'Debian'), 'apt-get', [['apt-get', 'update']]),
    (('CentOS', 'AlmaLinux'), 'yum', [['yum', 'update', '-y'], ['yum', 'install', '-y', 'epel-release']]),
    (('Fedora',), 'dnf', [['dnf', 'update']]),
    (('Arch',), 'pacman', [['pacman', '-Sy']]),
    (('openSUSE',), 'zypper', [['zypper', 'refresh']]),
)

_INSTALL_CMDS = {
    'apt-get': ['apt-get', 'install', '-y'],
    'yum': ['yum', 'install', '-y'],
    'dnf': ['dnf', 'install', '-y'],
    'pacman': ['pacman', '-S', '--noconfirm'],
    'zypper': ['zypper', '--quiet', 'install', '-y'],
}


def detect_and_update_package_manager():
    colorized_echo("blue", "Updating package manager")
    if not state.OS_NAME: detect_os()
    for prefixes, manager, cmds in _UPDATE_CMDS:
        if any(state.OS_NAME.startswith(p) for p in prefixes):
            state.PKG_MANAGER = manager
            for cmd in cmds:
                run_cmd(cmd)
            return manager
    die("Unsupported operating system")


def install_package(package):
    if not state.PKG_MANAGER:
        detect_and_update_package_manager()
    colorized_echo("blue", f"Installing {package}")
    result = run_cmd(_INSTALL_CMDS[state.PKG_MANAGER] + [package])
    if result.returncode != 0:
        colorized_echo("red", f"Failed to install {package}")
        return False
    return True


def ensure_command(command, package=None):
    """命令不存在时自动安装对应软件包"""
    if command_exists(command): return True
    return install_package(package or command)


def install_docker():
    """下载 get.docker.com 并交给 sh 执行"""
    colorized_echo("blue", "Installing Docker")
    try:
        resp = requests.get(config.DOCKER_INSTALL_URL, timeout=config.HTTP_TIMEOUT)
        resp.raise_for_status()
    except requests.RequestException as e:
        logger.error(f"❌ 下载 Docker 安装脚本失败: {e}")
        die("Failed to download the Docker install script")
    result = run_cmd(['sh'], input=resp.text, capture=False)
    if result.returncode != 0:
        die("Failed to install Docker")
    colorized_echo("green", "Docker installed successfully")


# ================= 端口 =================

def get_occupied_ports():
    if command_exists('ss'):
        return parse_listening_ports(run_cmd(['ss', '-tuln']).stdout, 5)
    if command_exists('netstat'):
        return parse_listening_ports(run_cmd(['netstat', '-tuln']).stdout, 4)

    colorized_echo("yellow", "Neither ss nor netstat found. Attempting to install net-tools.")
    if not install_package('net-tools') or not command_exists('netstat'):
        die("Failed to install net-tools. Please install it manually.")
    return parse_listening_ports(run_cmd(['netstat', '-tuln']).stdout, 4)


def is_port_occupied(port, ports=None):
    if ports is None: ports = get_occupied_ports()
    return int(port) in ports


# ================= 公网 IP =================

class FamilyAdapter(HTTPAdapter):
    """绑定本地地址 0.0.0.0 / :: 的连接池，只走对应地址族 (等价于 curl -4 / -6)"""

    def __init__(self, bind_address, **kwargs):
        self.bind_address = bind_address
        super().__init__(**kwargs)

    def init_poolmanager(self, *args, **kwargs):
        kwargs['source_address'] = (self.bind_address, 0)
        super().init_poolmanager(*args, **kwargs)


def family_session(family=4):
    session = requests.Session()
    adapter = FamilyAdapter('::' if family == 6 else '0.0.0.0')
    session.mount('http://', adapter)
    session.mount('https://', adapter)
    return session


def get_public_ip(family=4):
    try:
        with family_session(family) as session:
            resp = session.get(config.NODE_IP_ECHO_URL, timeout=5)
        if resp.status_code == 200:
            return resp.text.strip()
    except requests.RequestException as e:
        logger.info(f"⚠️ 获取 IPv{family} 失败: {e}")
    return ''


# ================= 编辑器 =================

def check_editor():
    editor = os.environ.get('EDITOR', '')
    if editor: return editor
    for candidate in ('nano', 'vi'):
        if command_exists(candidate): return candidate
    install_package('nano')
    return 'nano'


def edit_file(path, missing_msg=None):
    if not os.path.isfile(path):
        die(missing_msg or f"File not found at {path}")
    editor = check_editor()
    return run_interactive(editor.split() + [path])
