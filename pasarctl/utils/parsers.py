# pasarctl/utils/parsers.py
import ipaddress
import json
import re

from pasarctl.core import config

# ================= 数据库连接串 =================

_DB_SCHEME = re.compile(r'^(mysql|mariadb|postgresql)[^:]*://')
_AUTH = re.compile(r'^([^@]+)@(.+)$')
_USER_PASS = re.compile(r'^([^:]+):(.+)$')
_HOST_PORT_DB = re.compile(r'^([^:/]+)(:([0-9]+))?/(.+)$')


def _strip_query(text):
    return text.split('?', 1)[0].split('#', 1)[0]


def parse_database_url(url, compose_text=""):
    """
    手工解析 SQLALCHEMY_DATABASE_URL
    返回 {'type', 'sqlite_file', 'host', 'port', 'user', 'password', 'name'}，无法识别返回 None
    """
    if not url: return None
    info = {'type': '', 'sqlite_file': '', 'host': '', 'port': '', 'user': '', 'password': '', 'name': ''}

    if url.startswith('sqlite'):
        info['type'] = 'sqlite'
        part = _strip_query(url.split('://', 1)[1] if '://' in url else '')
        # sqlite:////abs -> //abs -> /abs ; sqlite:///abs -> /abs ; 其余按相对路径
        if part.startswith('//'):
            info['sqlite_file'] = '/' + part[2:]
        elif part.startswith('/'):
            info['sqlite_file'] = part
        else:
            info['sqlite_file'] = part
        return info

    match = _DB_SCHEME.match(url)
    if not match: return None

    scheme = match.group(1)
    if scheme == 'postgresql':
        info['type'] = 'timescaledb' if config.TIMESCALE_IMAGE_MARKER in (compose_text or '') else 'postgresql'
    else:
        info['type'] = scheme

    rest = _strip_query(url.split('://', 1)[1])
    auth = _AUTH.match(rest)
    if auth:
        rest = auth.group(2)
        user_pass = _USER_PASS.match(auth.group(1))
        if user_pass:
            info['user'], info['password'] = user_pass.group(1), user_pass.group(2)
        else:
            info['user'] = auth.group(1)

    location = _HOST_PORT_DB.match(rest)
    if location:
        info['host'] = location.group(1)
        info['port'] = location.group(3) or ''
        info['name'] = location.group(4)
        if not info['port']:
            info['port'] = '3306' if info['type'] in ('mysql', 'mariadb') else '5432'
    return info


def is_local_host(host):
    return host in config.LOCAL_DB_HOSTS


def engine_label(db_type):
    return {
        'mysql': 'MySQL', 'mariadb': 'MariaDB', 'postgresql': 'PostgreSQL',
        'timescaledb': 'TimescaleDB', 'sqlite': 'SQLite',
    }.get(db_type, db_type)


# ================= 代理 =================

_PROXY_PREFIX = re.compile(r'^(http|https|socks|socks4|socks4a|socks5|socks5h)://')


def is_valid_proxy_url(url):
    return bool(url) and bool(_PROXY_PREFIX.match(url))


def resolve_backup_proxy(env):
    """BACKUP_PROXY_URL 优先，其次 BACKUP_PROXY；显式关闭时返回 None"""
    value = env.get('BACKUP_PROXY_URL') or env.get('BACKUP_PROXY') or ''
    if not value: return None
    enabled = env.get('BACKUP_PROXY_ENABLED', '')
    if enabled and enabled not in ('true', 'True', 'yes', 'Yes', '1'):
        return None
    return value


# ================= 证书 SAN =================

def validate_san_entry(entry):
    entry = (entry or '').strip()
    if entry.startswith('DNS:') and len(entry) > 4:
        return True
    if entry.startswith('IP:') and len(entry) > 3:
        try:
            ipaddress.ip_address(entry[3:])
            return True
        except ValueError:
            return False
    return False


def parse_san_input(text):
    """逗号分隔输入 -> (有效项, 无效项)"""
    valid, invalid = [], []
    for item in (text or '').split(','):
        item = item.strip()
        if not item: continue
        (valid if validate_san_entry(item) else invalid).append(item)
    return valid, invalid


# ================= 版本号 =================

_SEMVER = re.compile(r'^v[0-9]+\.[0-9]+\.[0-9]+(-[0-9A-Za-z.-]+)?(\+[0-9A-Za-z.-]+)?$')
_PLAIN_VERSION = re.compile(r'^v[0-9]+\.[0-9]+\.[0-9]+$')


def is_semver(tag):
    return bool(_SEMVER.match(tag or ''))


def is_plain_version(tag):
    return bool(_PLAIN_VERSION.match(tag or ''))


def version_key(tag):
    """与 sort -V 等价的自然排序键"""
    parts = re.split(r'(\d+)', (tag or '').lstrip('v'))
    return [(1, int(p)) if p.isdigit() else (0, p) for p in parts if p != '']


def newest_version(*tags):
    tags = [t for t in tags if t]
    if not tags: return ''
    return max(tags, key=version_key)


def major_version(tag):
    match = re.match(r'^v?(\d+)', tag or '')
    return int(match.group(1)) if match else 0


def is_uuid(value):
    return bool(re.match(r'^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$', value or ''))


# ================= 定时备份间隔 =================

def cron_for_interval(hours):
    try:
        hours = int(hours)
    except (TypeError, ValueError):
        return None
    if hours == 24: return "0 0 * * *"
    if 1 <= hours <= 23: return f"0 */{hours} * * *"
    return None


def interval_from_cron(schedule):
    schedule = (schedule or '').strip().strip('"')
    if schedule == "0 0 * * *": return 24
    match = re.search(r'\*/(\d+)', schedule)
    return int(match.group(1)) if match else None


# ================= 备份文件名 =================

_PARTS = re.compile(r'\.part\d{2}\.zip$')
_ZSPLIT = re.compile(r'\.z\d{2}$')


def classify_backup(name):
    if _PARTS.search(name): return 'parts'
    if _ZSPLIT.search(name): return 'zsplit'
    if name.endswith('.zip'): return 'zip'
    if name.endswith('.tar.gz'): return 'targz'
    if name.endswith('.gz'): return 'gz'
    return None


def backup_base(name):
    kind = classify_backup(name)
    if kind == 'parts': return name.split('.part', 1)[0]
    if kind == 'zsplit': return name[:-4]
    if kind == 'zip': return name[:-4]
    if kind == 'targz': return name[:-7]
    if kind == 'gz': return name[:-3]
    return name


# ================= Telegram =================

_MD_SPECIAL = re.compile(r'([_*\[\]()~`>#+\-=|{}!.])')


def escape_markdown_v2(text):
    return _MD_SPECIAL.sub(r'\\\1', text or '')


# ================= 命令输出解析 =================

def parse_compose_ps(text):
    """兼容 JSON 数组 / 单个对象 / 每行一个对象 三种输出"""
    text = (text or '').strip()
    if not text: return []
    try:
        data = json.loads(text)
        if isinstance(data, list): return [d for d in data if isinstance(d, dict)]
        if isinstance(data, dict): return [data]
    except ValueError:
        pass
    rows = []
    for line in text.splitlines():
        line = line.strip()
        if not line: continue
        try:
            item = json.loads(line)
        except ValueError:
            continue
        if isinstance(item, dict): rows.append(item)
    return rows


def parse_listening_ports(output, column):
    """从 ss/netstat 输出的指定列 (从 1 开始) 中提取端口"""
    ports = set()
    for line in (output or '').splitlines():
        fields = line.split()
        if len(fields) < column: continue
        match = re.search(r'(\d+)$', fields[column - 1])
        if match: ports.add(int(match.group(1)))
    return ports
