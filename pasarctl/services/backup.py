# pasarctl/services/backup.py
import glob
import logging
import os
import re
import shutil
import stat

from pasarctl.core import config, envfile, state
from pasarctl.core.console import colorized_echo
from pasarctl.core.runlog import close_run_log, open_run_log
from pasarctl.services import docker_ops, system, telegram
from pasarctl.utils.common import format_bytes, timestamp
from pasarctl.utils.parsers import engine_label, is_local_host, parse_database_url

logger = logging.getLogger("Services.Backup")

DUMP_FILE = 'db_backup.sql'
SQLITE_DUMP_FILE = 'db_backup.sqlite'
DATA_ARCHIVE_DIR = 'pasarguard_data'


def backup_dir():
    return os.path.join(state.APP_DIR, 'backup')


def read_compose_text():
    if not os.path.isfile(state.COMPOSE_FILE): return ''
    with open(state.COMPOSE_FILE, 'r', encoding='utf-8', errors='replace') as f:
        return f.read()


# ================= 数据库导出 =================

class DumpContext:
    """一次导出所需的上下文: 容器、凭据、输出目录、错误列表、运行日志"""

    def __init__(self, db, env, container, temp_dir, errors, run_log):
        self.db = db
        self.env = env
        self.container = container
        self.temp_dir = temp_dir
        self.errors = errors
        self.log = run_log
        self.label = engine_label(db['type'])

    @property
    def app_user(self):
        default = 'postgres' if self.db['type'] in ('postgresql', 'timescaledb') else ''
        return self.db['user'] or self.env.get('DB_USER') or default

    @property
    def app_password(self):
        return self.db['password'] or self.env.get('DB_PASSWORD', '')

    def fail(self, message, detail=None):
        colorized_echo("red", message)
        self.log.error(detail or message)

    def dump(self, cmd, env=None):
        """docker exec 导出到 db_backup.sql，stderr 写入运行日志"""
        path = os.path.join(self.temp_dir, DUMP_FILE)
        with open(path, 'w', encoding='utf-8') as out:
            result = docker_ops.docker_exec(self.container, cmd, env=env, stdout=out)
        if result.stderr: self.log.info(result.stderr.rstrip())
        return result.returncode == 0


def _dump_as_app_user(ctx, dump_cmd, fallback_reason):
    """回退到连接串中的应用用户，只导出单个库"""
    password, name = ctx.app_password, ctx.db['name']
    if not password or not name:
        colorized_echo("red", "Error: Cannot fallback - missing database name or password in SQLALCHEMY_DATABASE_URL")
        ctx.errors.append(f"{ctx.label} backup failed - {fallback_reason} and fallback credentials incomplete.")
        return
    _run_app_user_dump(ctx, dump_cmd)


def _run_app_user_dump(ctx, dump_cmd):
    name = ctx.db['name']
    colorized_echo("blue", f"Backing up {ctx.label} database '{name}' from container: {ctx.container} (using app user)")
    cmd = [dump_cmd, '-u', ctx.app_user, f"-p{ctx.app_password}", name, '--events', '--triggers']
    if ctx.dump(cmd):
        colorized_echo("green", f"{ctx.label} backup completed successfully")
    else:
        ctx.fail(f"{ctx.label} dump failed. Check log file for details.")
        ctx.errors.append(f"{ctx.label} dump failed.")


def _dump_app_user_required(ctx, dump_cmd, engine):
    if not ctx.app_password:
        colorized_echo("red", "Error: Database password not found. Check MYSQL_ROOT_PASSWORD or SQLALCHEMY_DATABASE_URL in .env")
        ctx.errors.append(f"{engine} password not found.")
    elif not ctx.db['name']:
        colorized_echo("red", "Error: Database name not found in SQLALCHEMY_DATABASE_URL")
        ctx.errors.append(f"{engine} database name not found.")
    else:
        _run_app_user_dump(ctx, dump_cmd)


def dump_mariadb(ctx):
    root_password = ctx.env.get('MYSQL_ROOT_PASSWORD', '')
    if not root_password:
        _dump_app_user_required(ctx, 'mariadb-dump', 'MariaDB')
        return

    colorized_echo("blue", f"Backing up all MariaDB databases from container: {ctx.container} (using root user)")
    cmd = ['mariadb-dump', '-u', 'root', f"-p{root_password}", '--all-databases']
    cmd += [f"--ignore-database={name}" for name in config.SYSTEM_DATABASES]
    cmd += ['--events', '--triggers']
    if ctx.dump(cmd):
        colorized_echo("green", "MariaDB backup completed successfully (all databases)")
        return
    colorized_echo("yellow", "Root backup failed, falling back to app user for specific database")
    _dump_as_app_user(ctx, 'mariadb-dump', "root backup failed")


def _list_user_databases(ctx, client, root_password):
    result = docker_ops.docker_exec(ctx.container, [client, '-u', 'root', f"-p{root_password}", '-e', 'SHOW DATABASES;'])
    if result.stderr: ctx.log.info(result.stderr.rstrip())
    skip = ('Database',) + tuple(config.SYSTEM_DATABASES)
    return [line.strip() for line in (result.stdout or '').splitlines() if line.strip() and line.strip() not in skip]


def dump_mysql(ctx):
    # MySQL 服务名下也可能跑的是 MariaDB 镜像
    is_mariadb = docker_ops.docker_exec(ctx.container, ['mariadb-dump', '--version']).returncode == 0
    client, dump_cmd = ('mariadb', 'mariadb-dump') if is_mariadb else ('mysql', 'mysqldump')
    label = 'MariaDB' if is_mariadb else 'MySQL'
    ctx.label = label

    root_password = ctx.env.get('MYSQL_ROOT_PASSWORD', '')
    if not root_password:
        _dump_app_user_required(ctx, dump_cmd, 'MySQL')
        return

    colorized_echo("blue", f"Backing up all {label} databases from container: {ctx.container} (using root user)")
    databases = _list_user_databases(ctx, client, root_password)
    if not databases:
        colorized_echo("yellow", "No user databases found, falling back to specific database backup")
        _dump_as_app_user(ctx, dump_cmd, "no databases found")
        return

    cmd = [dump_cmd, '-u', 'root', f"-p{root_password}", '--databases'] + databases + ['--events', '--triggers']
    if ctx.dump(cmd):
        colorized_echo("green", f"{label} backup completed successfully (all databases)")
        return
    colorized_echo("yellow", "Root backup failed, falling back to app user for specific database")
    _dump_as_app_user(ctx, dump_cmd, "root backup failed")


def _pg_dump(ctx):
    """pg_dump 单库导出，PGPASSWORD 通过 docker exec -e 传入容器"""
    user, password, name = ctx.app_user, ctx.app_password, ctx.db['name']
    colorized_echo("blue", f"Backing up {ctx.label} database '{name}' from container: {ctx.container} (using user: {user})")
    cmd = ['pg_dump', '-U', user, '-d', name, '--clean', '--if-exists']
    if ctx.dump(cmd, env={'PGPASSWORD': password}):
        colorized_echo("green", f"{ctx.label} backup completed successfully")
        return True
    ctx.fail(f"{ctx.label} dump failed. Check log file for details.")
    return False


def dump_postgresql(ctx):
    superuser_password = ctx.env.get('DB_PASSWORD', '')
    if superuser_password:
        colorized_echo("blue", f"Backing up all PostgreSQL databases from container: {ctx.container} (using postgres superuser)")
        if ctx.dump(['pg_dumpall', '-U', 'postgres'], env={'PGPASSWORD': superuser_password}):
            colorized_echo("green", "PostgreSQL backup completed successfully (all databases)")
            return
        colorized_echo("yellow", "pg_dumpall failed, falling back to pg_dump for specific database")
        if not ctx.app_password or not ctx.db['name']:
            colorized_echo("red", "Error: Cannot fallback - missing database name or password in SQLALCHEMY_DATABASE_URL")
            ctx.errors.append("PostgreSQL backup failed - pg_dumpall failed and fallback credentials incomplete.")
            return
    elif not ctx.app_password:
        colorized_echo("red", "Error: Database password not found. Check DB_PASSWORD or SQLALCHEMY_DATABASE_URL in .env")
        ctx.errors.append("PostgreSQL password not found.")
        return
    elif not ctx.db['name']:
        colorized_echo("red", "Error: Database name not found in SQLALCHEMY_DATABASE_URL")
        ctx.errors.append("PostgreSQL database name not found.")
        return

    if not _pg_dump(ctx):
        ctx.errors.append("PostgreSQL dump failed.")


def resolve_timescale_container(name):
    """inspect -> compose timescaledb/postgresql -> <APP>-timescaledb-1 / <APP>-postgresql-1"""
    if docker_ops.container_exists(name): return name
    for service in ('timescaledb', 'postgresql'):
        found = docker_ops.compose_ps_id(service)
        if found: return found
    for suffix in ('timescaledb', 'postgresql'):
        candidate = f"{state.APP_NAME}-{suffix}-1"
        if docker_ops.container_exists(candidate): return candidate
    return ''


def dump_timescaledb(ctx):
    if not ctx.app_password:
        colorized_echo("red", "Error: Database password not found. Check DB_PASSWORD or SQLALCHEMY_DATABASE_URL in .env")
        ctx.errors.append("TimescaleDB password not found.")
    elif not ctx.db['name']:
        colorized_echo("red", "Error: Database name not found in SQLALCHEMY_DATABASE_URL")
        ctx.errors.append("TimescaleDB database name not found.")
    elif not _pg_dump(ctx):
        ctx.errors.append(f"TimescaleDB dump failed for database '{ctx.db['name']}'.")


_DUMPERS = {
    'mariadb': dump_mariadb,
    'mysql': dump_mysql,
    'postgresql': dump_postgresql,
    'timescaledb': dump_timescaledb,
}


def dump_database(db, env, temp_dir, errors, run_log):
    """按数据库类型导出到 temp_dir"""
    if not db or not db['type']:
        colorized_echo("yellow", "Warning: No database type detected. Skipping database backup.")
        run_log.warning("Warning: No database type detected.")
        return

    db_type = db['type']
    label = engine_label(db_type)
    run_log.info(f"Database detected: {db_type}")
    run_log.info(f"Database host: {db['host'] or 'localhost'}")
    colorized_echo("blue", f"Database detected: {db_type}")
    colorized_echo("blue", "Backing up database...")

    if db_type == 'sqlite':
        if not os.path.isfile(db['sqlite_file']):
            errors.append(f"SQLite database file not found at {db['sqlite_file']}.")
            return
        try:
            shutil.copyfile(db['sqlite_file'], os.path.join(temp_dir, SQLITE_DUMP_FILE))
        except OSError as e:
            run_log.error(str(e))
            errors.append("Failed to copy SQLite database.")
        return

    if not is_local_host(db['host']):
        client = 'postgresql-client' if db_type in ('postgresql', 'timescaledb') else f"{db_type}-client"
        message = f"Remote {label} backup not yet supported. Please use local database or install {client}."
        colorized_echo("red", message)
        errors.append(message)
        return

    container = docker_ops.find_container(db_type)
    run_log.info(f"Container name/ID for {db_type}: {container}")
    if not container:
        colorized_echo("red", f"Error: {label} container not found. Is the container running?")
        errors.append(f"{label} container not found or not running.")
        return

    if db_type == 'timescaledb':
        verified = resolve_timescale_container(container)
    else:
        verified = docker_ops.check_container(container, db_type)
    if not verified:
        colorized_echo("red", f"Error: {label} container not found or not running.")
        run_log.error(f"Container not found or not running: {container}")
        errors.append(f"{label} container not found or not running.")
        return

    ctx = DumpContext(db, env, verified, temp_dir, errors, run_log)
    _DUMPERS[db_type](ctx)


# ================= 文件收集 =================

def _copy_ignore(root):
    """顶层排除 xray-core / mysql，所有层级排除 Unix socket"""
    def ignore(folder, names):
        skipped = set()
        if os.path.abspath(folder) == os.path.abspath(root):
            skipped.update(n for n in names if n in config.BACKUP_EXCLUDES)
        for n in names:
            try:
                if stat.S_ISSOCK(os.lstat(os.path.join(folder, n)).st_mode):
                    skipped.add(n)
            except OSError:
                skipped.add(n)
        return skipped
    return ignore


def copy_data_dir(temp_dir, errors, run_log):
    target = os.path.join(temp_dir, DATA_ARCHIVE_DIR)
    if not os.path.isdir(state.DATA_DIR):
        colorized_echo("yellow", f"Data directory {state.DATA_DIR} does not exist. Skipping data directory backup.")
        run_log.warning(f"Data directory {state.DATA_DIR} does not exist. Skipping.")
        os.makedirs(target, exist_ok=True)
        return
    try:
        shutil.copytree(state.DATA_DIR, target, symlinks=True, ignore=_copy_ignore(state.DATA_DIR))
    except (shutil.Error, OSError) as e:
        run_log.error(f"Failed to copy data directory: {e}")
        errors.append("Failed to copy data directory.")


def remove_sockets(folder, run_log):
    removed = []
    for root, _dirs, files in os.walk(folder):
        for name in files:
            path = os.path.join(root, name)
            if stat.S_ISSOCK(os.lstat(path).st_mode):
                os.remove(path)
                removed.append(path)
    if removed:
        colorized_echo("yellow", "Removing Unix socket files before archiving (zip cannot archive sockets).")
        run_log.info("\n".join(removed))
    return removed


def clean_old_backups(folder):
    patterns = ('backup_*.tar.gz', 'backup_*.zip', 'backup_*.z[0-9][0-9]')
    for pattern in patterns:
        for path in glob.glob(os.path.join(folder, pattern)):
            os.remove(path)


def archive_parts(folder, stamp):
    """backup_<ts>.zNN (排序) + backup_<ts>.zip"""
    final_zip = os.path.join(folder, f"backup_{stamp}.zip")
    if not os.path.isfile(final_zip): return []
    splits = sorted(p for p in glob.glob(os.path.join(folder, f"backup_{stamp}.z*"))
                    if re.search(r'\.z\d{2}$', p))
    return splits + [final_zip]


# ================= 主流程 =================

def run_backup():
    """pasarguard backup，成功返回 True"""
    colorized_echo("blue", "Starting backup process...")
    if not state.is_installed():
        colorized_echo("red", "pasarguard is not installed!")
        return False

    run_log = open_run_log("Services.Backup.run", config.BACKUP_LOG_FILE, "Backup Log")
    try:
        return _run_backup(run_log)
    finally:
        close_run_log(run_log)


def _run_backup(run_log):
    target_dir = backup_dir()
    temp_dir = config.BACKUP_TMP_DIR
    stamp = timestamp()
    backup_file = os.path.join(target_dir, f"backup_{stamp}.zip")
    errors = []

    colorized_echo("blue", "Reading environment configuration...")
    system.ensure_command('zip')

    os.makedirs(target_dir, exist_ok=True)
    clean_old_backups(target_dir)
    shutil.rmtree(temp_dir, ignore_errors=True)
    os.makedirs(temp_dir)

    env = envfile.load_env(state.ENV_FILE)
    if env is None:
        errors.append("Environment file (.env) not found.")
        run_log.error("Environment file (.env) not found.")
        colorized_echo("red", "Environment file (.env) not found.")
        telegram.send_backup_error({}, errors, config.BACKUP_LOG_FILE)
        shutil.rmtree(temp_dir, ignore_errors=True)
        return False

    url = env.get('SQLALCHEMY_DATABASE_URL', '')
    run_log.info(f"SQLALCHEMY_DATABASE_URL from environment: {url.split('@')[0] if url else 'not set'}")
    if not url:
        colorized_echo("red", "Error: SQLALCHEMY_DATABASE_URL not found in .env file or not set")
        run_log.error(f"Please check {state.ENV_FILE} for SQLALCHEMY_DATABASE_URL")
        colorized_echo("yellow", f"Please check the log file for details: {config.BACKUP_LOG_FILE}")
        shutil.rmtree(temp_dir, ignore_errors=True)
        return False

    db = parse_database_url(url, read_compose_text())
    dump_database(db, env, temp_dir, errors, run_log)

    colorized_echo("blue", "Copying configuration files...")
    for name, path in (('.env', state.ENV_FILE), ('docker-compose.yml', state.COMPOSE_FILE)):
        try:
            shutil.copy2(path, os.path.join(temp_dir, name))
        except OSError as e:
            run_log.error(f"Failed to copy {name} file: {e}")
            errors.append(f"Failed to copy {name} file.")

    colorized_echo("blue", "Copying data directory...")
    copy_data_dir(temp_dir, errors, run_log)
    remove_sockets(temp_dir, run_log)

    colorized_echo("blue", "Creating backup archive...")
    if not os.listdir(temp_dir):
        errors.append("Temporary directory is empty or missing. Cannot create archive.")
        run_log.error(f"Temporary directory is empty or missing: {temp_dir}")
    else:
        result = system.run_cmd(['zip', '-rq', '-s', config.BACKUP_SPLIT_SIZE, backup_file, '.'], cwd=temp_dir)
        if result.returncode != 0:
            run_log.error(result.stderr or "Failed to create backup archive.")
            errors.append("Failed to create backup archive.")
        elif os.path.isfile(backup_file):
            size = format_bytes(sum(os.path.getsize(p) for p in archive_parts(target_dir, stamp)))
            colorized_echo("green", f"Backup archive created: {backup_file} (Size: {size})")

    parts = archive_parts(target_dir, stamp)
    shutil.rmtree(temp_dir, ignore_errors=True)

    if errors:
        colorized_echo("red", "Backup completed with errors:")
        for error in errors:
            colorized_echo("red", f"  - {error}")
        colorized_echo("yellow", f"Check log file: {config.BACKUP_LOG_FILE}")
        logger.error(f"❌ 备份失败: {'; '.join(errors)}")
        if os.path.isfile(state.ENV_FILE):
            telegram.send_backup_error(env, errors, config.BACKUP_LOG_FILE)
        return False

    if not parts:
        colorized_echo("red", f"Backup file was not created. Check log file: {config.BACKUP_LOG_FILE}")
        return False

    if len(parts) == 1:
        colorized_echo("green", f"Backup completed successfully: {parts[0]}")
    else:
        colorized_echo("green", f"Backup completed successfully in {len(parts)} parts:")
        for part in parts:
            colorized_echo("green", f"  - {os.path.basename(part)}")
    logger.info(f"✅ 备份完成: {len(parts)} 个文件")

    if os.path.isfile(state.ENV_FILE):
        telegram.send_backup(env, target_dir)
    return True
