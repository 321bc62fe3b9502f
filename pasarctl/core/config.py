# pasarctl/core/config.py
import os

# ================= 基础目录 (可通过环境变量覆盖) =================
INSTALL_DIR = os.getenv('PASARGUARD_INSTALL_DIR', '/opt')
DATA_ROOT = os.getenv('PASARGUARD_DATA_ROOT', '/var/lib')
LOG_DIR = os.getenv('PASARGUARD_LOG_DIR', '/var/log')
TMP_DIR = os.getenv('PASARGUARD_TMP_DIR', '/tmp')
BIN_DIR = os.getenv('PASARGUARD_BIN_DIR', '/usr/local/bin')
SHARE_DIR = os.getenv('PASARGUARD_SHARE_DIR', '/usr/local/share')

# 面板与节点的默认名称
PANEL_APP_NAME = os.getenv('APP_NAME', 'pasarguard')
NODE_APP_NAME = 'pg-node'
NODE_LEGACY_DIR = 'node'

# 网络请求
HTTP_TIMEOUT = int(os.getenv('PASARGUARD_HTTP_TIMEOUT', '30'))
GITHUB_TOKEN = os.getenv('GITHUB_TOKEN', '')
GITHUB_API = 'https://api.github.com'
GITHUB_RAW = 'https://raw.githubusercontent.com'
GITHUB_WEB = 'https://github.com'
TELEGRAM_API = 'https://api.telegram.org'
DOCKER_INSTALL_URL = 'https://get.docker.com'
IP_ECHO_URL = 'https://ifconfig.me'
NODE_IP_ECHO_URL = 'https://ifconfig.io'

# ================= 仓库坐标 =================
PANEL_REPO = 'toonbr1me/panel'
NODE_REPO = 'toonbr1me/node'
SCRIPTS_REPO = 'toonbr1me/scripts'
PANEL_IMAGE = 'toonbr1me/panel'
XRAY_REPO = 'XTLS/Xray-core'
SINGBOX_REPO = 'SagerNet/sing-box'

PANEL_ENV_URL = f"{GITHUB_RAW}/{PANEL_REPO}/main/.env.example"
PANEL_SQLITE_COMPOSE_URL = f"{GITHUB_RAW}/{PANEL_REPO}/main/docker-compose.yml"
PANEL_DB_COMPOSE_URL = GITHUB_RAW + "/" + SCRIPTS_REPO + "/main/pasarguard-{db}.yml"
NODE_ENV_URL = f"{GITHUB_RAW}/{NODE_REPO}/main/.env.example"
NODE_COMPOSE_URL = f"{GITHUB_RAW}/{SCRIPTS_REPO}/main/node.yml"

# ================= 数据库 =================
DB_TYPES = ('mysql', 'mariadb', 'postgresql', 'timescaledb')
LOCAL_DB_HOSTS = ('127.0.0.1', 'localhost', '::1')
SYSTEM_DATABASES = ('mysql', 'performance_schema', 'information_schema', 'sys')
DEFAULT_DB_NAME = 'pasarguard'
DEFAULT_DB_USER = 'pasarguard'
PGADMIN_EMAIL = 'pg@github.io'
TIMESCALE_IMAGE_MARKER = 'image: timescale/timescaledb'

# ================= 备份 =================
BACKUP_SPLIT_SIZE = '47m'  # zip 分卷大小，保证每卷 < 50MB
TELEGRAM_SPLIT_BYTES = 49 * 1000 * 1000
TELEGRAM_MAX_MESSAGE = 1000
BACKUP_EXCLUDES = ('xray-core', 'mysql')
BACKUP_ENV_MARKER = '# Backup service configuration'
BACKUP_ENV_KEYS = (
    'BACKUP_SERVICE_ENABLED', 'BACKUP_TELEGRAM_BOT_KEY', 'BACKUP_TELEGRAM_CHAT_ID',
    'BACKUP_CRON_SCHEDULE', 'BACKUP_PROXY_ENABLED', 'BACKUP_PROXY_URL',
)
CRON_TAG = '# pasarguard-backup-service'
CRON_PATH = 'PATH=/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin'

BACKUP_LOG_FILE = os.path.join(LOG_DIR, 'pasarguard_backup_error.log')
RESTORE_LOG_FILE = os.path.join(LOG_DIR, 'pasarguard_restore_error.log')
BACKUP_TMP_DIR = os.path.join(TMP_DIR, 'pasarguard_backup')
RESTORE_TMP_DIR = os.path.join(TMP_DIR, 'pasarguard_restore')
TELEGRAM_SPLIT_DIR = os.path.join(TMP_DIR, 'pasarguard_backup_split')

# ================= 节点 =================
DEFAULT_SERVICE_PORT = 62050
NODE_CONTAINER_PATH = '/var/lib/pg-node'
NODE_SERVICE = 'node'
LAST_XRAY_CORES = 5
CERT_VALID_DAYS = 36500
CERT_KEY_SIZE = 4096

# 地理文件来源 (区域 -> GitHub 仓库)
GEOFILE_SOURCES = {
    'iran': 'Chocolate4U/Iran-v2ray-rules',
    'russia': 'runetfreedom/russia-v2ray-rules-dat',
    'china': 'Loyalsoldier/v2ray-rules-dat',
}
GEOFILE_NAMES = ('geoip.dat', 'geosite.dat')
SINGBOX_ASSET_FILES = ('geoip.db', 'geosite.db', 'geoip.mmdb', 'geosite.mmdb')
