# pasarctl/core/state.py
import os

from pasarctl.core import config

# ================= 当前实例 (面板 / 节点) =================
# 实例名称，决定 /opt/<name> 与 /var/lib/<name>
APP_NAME = config.PANEL_APP_NAME
APP_DIR = os.path.join(config.INSTALL_DIR, APP_NAME)
DATA_DIR = os.path.join(config.DATA_ROOT, APP_NAME)
COMPOSE_FILE = os.path.join(APP_DIR, 'docker-compose.yml')
ENV_FILE = os.path.join(APP_DIR, '.env')

# 节点证书 (仅节点实例使用)
SSL_CERT_FILE = ''
SSL_KEY_FILE = ''

# ================= 运行环境探测结果 =================
# docker compose 命令，例如 ['docker', 'compose'] 或 ['docker-compose']
COMPOSE_CMD = []

# 操作系统与包管理器 (detect_os 后填充)
OS_NAME = ''
PKG_MANAGER = ''

# 节点公网 IP (安装节点时探测)
NODE_IP_V4 = ''
NODE_IP_V6 = ''

# -y/--yes: 所有交互取默认值
AUTO_CONFIRM = False


def _apply(name, app_dir):
    global APP_NAME, APP_DIR, DATA_DIR, COMPOSE_FILE, ENV_FILE
    APP_NAME = name
    APP_DIR = app_dir
    DATA_DIR = os.path.join(config.DATA_ROOT, name)
    COMPOSE_FILE = os.path.join(app_dir, 'docker-compose.yml')
    ENV_FILE = os.path.join(app_dir, '.env')


def use_panel(name=None):
    """切换到面板实例"""
    global SSL_CERT_FILE, SSL_KEY_FILE
    name = name or config.PANEL_APP_NAME
    _apply(name, os.path.join(config.INSTALL_DIR, name))
    SSL_CERT_FILE = ''
    SSL_KEY_FILE = ''


def use_node(name=None):
    """
    切换到节点实例
    目录优先级: /opt/<name> -> /opt/node (旧版安装) -> /opt/<name>
    """
    global SSL_CERT_FILE, SSL_KEY_FILE
    name = name or config.NODE_APP_NAME
    preferred = os.path.join(config.INSTALL_DIR, name)
    legacy = os.path.join(config.INSTALL_DIR, config.NODE_LEGACY_DIR)
    if os.path.isdir(preferred):
        app_dir = preferred
    elif os.path.isdir(legacy):
        app_dir = legacy
    else:
        app_dir = preferred
    _apply(name, app_dir)
    SSL_CERT_FILE = os.path.join(DATA_DIR, 'certs', 'ssl_cert.pem')
    SSL_KEY_FILE = os.path.join(DATA_DIR, 'certs', 'ssl_key.pem')


def is_installed():
    return os.path.isdir(APP_DIR)
