# pasarctl/services/panel.py
import logging
import os
import shutil

import yaml

from pasarctl.core import config, envfile, state
from pasarctl.core.console import ask, colorized_echo, confirm
from pasarctl.services import docker_ops, github, system
from pasarctl.utils.common import dir_size, format_bytes, random_password
from pasarctl.utils.parsers import engine_label, major_version

logger = logging.getLogger("Services.Panel")

_VOLUME_DIRS = {
    'mysql': ('/var/lib/mysql/pasarguard',),
    'mariadb': ('/var/lib/mysql/pasarguard',),
    'postgresql': ('/var/lib/postgresql/pasarguard',),
    'timescaledb': ('/var/lib/postgresql/pasarguard',),
}
_NAMED_VOLUMES = {
    'postgresql': ('pgadmin',),
    'timescaledb': ('pgadmin',),
}


# ================= 版本检查 =================

def check_version_exists(version):
    """
    返回 (ok, resolved_version, major)
    latest / dev / pre-release 或具体 tag
    """
    repo = config.PANEL_REPO
    if version == 'latest':
        tag = github.latest_release_tag(repo)
        return True, 'latest', major_version(tag) if tag else 1

    if version == 'dev':
        return True, 'dev', 0

    if version == 'pre-release':
        chosen = github.resolve_prerelease(repo)
        if not chosen: return False, version, 0
        return True, chosen, 1 if chosen.startswith('v1') else 0

    if github.release_tag_exists(repo, version):
        return True, version, major_version(version)
    return False, version, 0


# ================= 旧数据卷 =================

def _list_volume_names():
    output = system.run_cmd(['docker', 'volume', 'ls', '--format', '{{.Name}}']).stdout or ''
    return output.split()


def _find_named_volume(name, existing):
    for candidate in (f"{state.APP_NAME}_{name}", name):
        if candidate in existing: return candidate
    return ''


def check_existing_database_volumes(db_type):
    """发现上次安装残留的数据库目录与 docker 卷时询问是否删除，返回删除数量"""
    paths = [p for p in _VOLUME_DIRS.get(db_type, ()) if os.path.isdir(p) and os.listdir(p)]
    volumes = []
    if _NAMED_VOLUMES.get(db_type) and system.command_exists('docker'):
        existing = _list_volume_names()
        for name in _NAMED_VOLUMES[db_type]:
            found = _find_named_volume(name, existing)
            if found: volumes.append(found)
    if not paths and not volumes: return 0

    colorized_echo("yellow", "⚠️  WARNING: Found existing volumes/directories that may conflict with the installation:")
    for path in paths:
        colorized_echo("yellow", f"  - Directory: {path} (Size: {format_bytes(dir_size(path))})")
    for volume in volumes:
        mountpoint = docker_ops.volume_mountpoint(volume)
        size = format_bytes(dir_size(mountpoint)) if mountpoint and os.path.isdir(mountpoint) else "unknown size"
        colorized_echo("yellow", f"  - Docker volume: {volume} (Size: {size})")

    colorized_echo("red", "⚠️  DANGER: These volumes may contain data from a previous pasarguard installation.")
    colorized_echo("yellow", "If you proceed without deleting them, there may be conflicts or data corruption.")
    colorized_echo("yellow", "WARNING: This will PERMANENTLY delete all data in these volumes!")
    if not confirm("Delete volumes?", default=False):
        colorized_echo("yellow", "Keeping existing volumes. Proceeding with installation...")
        colorized_echo("yellow", "Note: If you encounter conflicts, you may need to manually remove these volumes later.")
        return 0

    colorized_echo("yellow", "Deleting volumes...")
    removed = 0
    for path in paths:
        try:
            shutil.rmtree(path)
            colorized_echo("green", f"✓ Deleted directory: {path}")
            removed += 1
        except OSError as e:
            logger.error(f"❌ 删除 {path} 失败: {e}")
            colorized_echo("red", f"✗ Failed to delete directory: {path} (may be in use or permission denied)")
    for volume in volumes:
        if docker_ops.remove_volume(volume):
            colorized_echo("green", f"✓ Deleted Docker volume: {volume}")
            removed += 1
        else:
            colorized_echo("red", f"✗ Failed to delete Docker volume: {volume} (may be in use)")
    colorized_echo("green", "Volume cleanup completed.")
    return removed


# ================= 安装 =================

def _prompt_password(question, intro=()):
    for line in intro:
        colorized_echo("cyan", line)
    password = ask(question, password=True)
    if not password:
        password = random_password()
        colorized_echo("green", "A secure password has been generated automatically.")
    return password


def build_database_url(db_type, major, user, password, port, name):
    if major == 1:
        scheme = 'mysql+asyncmy' if db_type in ('mysql', 'mariadb') else 'postgresql+asyncpg'
    else:
        scheme = 'mysql+pymysql'
    return f"{scheme}://{user}:{password}@127.0.0.1:{port}/{name}"


def sqlite_database_url(major):
    scheme = 'sqlite+aiosqlite' if major == 1 else 'sqlite'
    return f"{scheme}:////{state.DATA_DIR.lstrip('/')}/db.sqlite3"


def set_panel_image(version, compose_file=None):
    """services.pasarguard.image = toonbr1me/panel:<version>"""
    compose_file = compose_file or state.COMPOSE_FILE
    with open(compose_file, 'r', encoding='utf-8') as f:
        data = yaml.safe_load(f) or {}
    service = data.setdefault('services', {}).setdefault('pasarguard', {})
    service['image'] = f"{config.PANEL_IMAGE}:{version}"
    with open(compose_file, 'w', encoding='utf-8') as f:
        yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)


def _fetch_to(url, dest):
    text = github.fetch_text(url)
    if text is None: return False
    with open(dest, 'w', encoding='utf-8') as f:
        f.write(text)
    return True


def _configure_database(db_type, major):
    label = 'TimeScaleDB' if db_type == 'timescaledb' else engine_label(db_type)
    colorized_echo("red", f"Using {label} as database")
    colorized_echo("blue", f"Fetching compose file for pasarguard+{label}")
    if not _fetch_to(config.PANEL_DB_COMPOSE_URL.format(db=db_type), state.COMPOSE_FILE):
        return False, "Failed to fetch compose file"

    envfile.sub_lines(r'^(SQLALCHEMY_DATABASE_URL = "sqlite)', r'#\1')

    password = _prompt_password(
        "Enter the password for the database (or press Enter to generate a secure default password)",
        intro=("This password will be used to access the database and should be strong.",
               "If you do not enter a custom password, a secure 20-character password will be generated automatically."))
    colorized_echo("green", "This password will be recorded in the .env file for future use.")
    envfile.append_block(["# Database configuration",
                          f"DB_NAME={config.DEFAULT_DB_NAME}",
                          f"DB_USER={config.DEFAULT_DB_USER}",
                          f"DB_PASSWORD={password}"])

    if db_type in ('postgresql', 'timescaledb'):
        port = 6432
        pgadmin_password = _prompt_password(
            "Enter the password for PGAdmin panel (or press Enter to generate a secure default password)")
        colorized_echo("green", "pgAdmin address: 0.0.0.0:8010")
        colorized_echo("green", f"pgAdmin default email: {config.PGADMIN_EMAIL}")
        colorized_echo("green", f"pgAdmin Password: {pgadmin_password}")
        envfile.append_block(["# PGAdmin configuration",
                              f"PGADMIN_EMAIL={config.PGADMIN_EMAIL}",
                              f"PGADMIN_PASSWORD={pgadmin_password}"])
    else:
        port = 3306
        colorized_echo("green", "phpMyAdmin address: 0.0.0.0:8010")
        envfile.append_block([f"MYSQL_ROOT_PASSWORD={random_password()}"])

    url = build_database_url(db_type, major, config.DEFAULT_DB_USER, password, port, config.DEFAULT_DB_NAME)
    envfile.append_block(["# SQLAlchemy Database URL", f'SQLALCHEMY_DATABASE_URL="{url}"'])
    return True, url


def _configure_sqlite(major):
    colorized_echo("red", "Using SQLite as database")
    colorized_echo("blue", "Fetching compose file")
    if not _fetch_to(config.PANEL_SQLITE_COMPOSE_URL, state.COMPOSE_FILE):
        return False, "Failed to fetch compose file"
    url = sqlite_database_url(major)
    envfile.sub_lines(r'^#\s*(SQLALCHEMY_DATABASE_URL = .*)$', r'\1')
    envfile.sub_lines(r'^(SQLALCHEMY_DATABASE_URL = ).*$', r'\g<1>"' + url.replace('\\', '\\\\') + '"')
    return True, url


def install_panel(version, major, db_type='sqlite'):
    """下载 .env 与 compose 并写入数据库配置，返回 (ok, msg)"""
    os.makedirs(state.DATA_DIR, exist_ok=True)
    os.makedirs(state.APP_DIR, exist_ok=True)

    colorized_echo("blue", "Fetching .env file")
    if not _fetch_to(config.PANEL_ENV_URL, state.ENV_FILE):
        return False, "Failed to fetch .env file"
    colorized_echo("green", f"File saved in {state.ENV_FILE}")

    if db_type in config.DB_TYPES:
        ok, msg = _configure_database(db_type, major)
    else:
        ok, msg = _configure_sqlite(major)
    if not ok: return False, msg

    set_panel_image(version)
    colorized_echo("green", f"File saved in {state.COMPOSE_FILE}")
    logger.info(f"✅ 面板已安装: {version} ({db_type})")
    return True, "pasarguard installed successfully"


# ================= 卸载 =================

def uninstall_panel(remove_data=False):
    if os.path.isdir(state.APP_DIR):
        shutil.rmtree(state.APP_DIR)
        colorized_echo("green", "Removed pasarguard files")
    docker_ops.remove_images('pasarguard')
    if remove_data and os.path.isdir(state.DATA_DIR):
        shutil.rmtree(state.DATA_DIR)
        colorized_echo("green", "Removed pasarguard data files")
    logger.info("🗑️ 面板已卸载")
