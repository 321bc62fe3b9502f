# pasarctl/services/restore.py
import glob
import gzip
import logging
import os
import re
import shutil
import tarfile
import zipfile

from rich.table import Table

from pasarctl.core import config, envfile, state
from pasarctl.core.console import ask, ask_yes_no, colorized_echo, console
from pasarctl.core.runlog import close_run_log, open_run_log
from pasarctl.services import docker_ops, system
from pasarctl.services.backup import DATA_ARCHIVE_DIR, DUMP_FILE, SQLITE_DUMP_FILE, backup_dir
from pasarctl.utils.common import extract_tar, extract_zip, file_date, format_bytes, timestamp
from pasarctl.utils.parsers import backup_base, classify_backup, is_local_host, parse_database_url

logger = logging.getLogger("Services.Restore")


class RestoreAborted(Exception):
    """恢复流程中止，message 为面向用户的错误信息"""

    def __init__(self, message, code=1):
        super().__init__(message)
        self.code = code


# ================= 备份文件列表 =================

def _siblings(folder, base, pattern):
    regex = re.compile(re.escape(base) + pattern)
    return sorted(p for p in glob.glob(os.path.join(folder, base + '*')) if regex.match(os.path.basename(p)))


def list_backups(folder):
    """可恢复的备份: .gz / .tar.gz / .zip，分卷只保留 part01，跳过 .zNN"""
    files = []
    for name in sorted(os.listdir(folder)):
        path = os.path.join(folder, name)
        if not os.path.isfile(path): continue
        kind = classify_backup(name)
        if kind not in ('parts', 'zip', 'targz', 'gz'): continue
        if kind == 'parts' and not name.endswith('.part01.zip'): continue
        files.append(path)
    return files


def describe_backup(path):
    """(大小说明, 日期)"""
    folder, name = os.path.split(path)
    kind = classify_backup(name)
    base = backup_base(name)
    if kind == 'parts':
        parts = _siblings(folder, base, r'\.part\d+\.zip$')
        total = sum(os.path.getsize(p) for p in parts)
        return f"Parts: {len(parts) or 1}, Total Size: {format_bytes(total)}", file_date(path)
    if kind == 'zip':
        splits = _siblings(folder, base, r'\.z\d{2}$')
        if splits:
            total = sum(os.path.getsize(p) for p in splits) + os.path.getsize(path)
            return f"Zip splits: {len(splits) + 1} parts, Total Size: {format_bytes(total)}", file_date(path)
    return f"Size: {format_bytes(os.path.getsize(path))}", file_date(path)


def print_backups(files):
    table = Table(title="Available backup files")
    table.add_column("#", style="blue", justify="right")
    table.add_column("File")
    table.add_column("Date")
    table.add_column("Size")
    for i, path in enumerate(files, 1):
        size, date = describe_backup(path)
        table.add_row(str(i), os.path.basename(path), date, size)
    console.print(table)


def select_backup(files, file_name=None):
    if file_name:
        for path in files:
            if os.path.basename(path) == os.path.basename(file_name):
                return path
        raise RestoreAborted(f"Backup file not found: {file_name}")

    if state.AUTO_CONFIRM:
        return max(files, key=os.path.getmtime)

    while True:
        selection = ask(f"Select backup file to restore from (1-{len(files)})")
        if selection.isdigit() and 1 <= int(selection) <= len(files):
            return files[int(selection) - 1]
        colorized_echo("red", f"Invalid selection. Please enter a number between 1 and {len(files)}.")


# ================= 归档准备与解压 =================

def prepare_archive(path, temp_dir, run_log):
    """返回 (待解压文件, 'zip' | 'tar')"""
    folder, name = os.path.split(path)
    kind = classify_backup(name)
    base = backup_base(name)

    if kind == 'parts':
        colorized_echo("yellow", "Detected split zip backup. Checking available parts...")
        if not os.path.isfile(os.path.join(folder, f"{base}.part01.zip")):
            raise RestoreAborted(f"Missing {base}.part01.zip. Cannot restore split backup.")
        parts = _siblings(folder, base, r'\.part\d+\.zip$')
        combined = os.path.join(temp_dir, f"{base}_combined.zip")
        with open(combined, 'wb') as out:
            for part in parts:
                with open(part, 'rb') as src:
                    shutil.copyfileobj(src, out)
        colorized_echo("green", f"✓ Combined {len(parts)} part(s)")
        return combined, 'zip'

    if kind == 'zip':
        if not _siblings(folder, base, r'\.z\d{2}$'):
            return path, 'zip'
        colorized_echo("yellow", "Detected zip split archive. Joining parts...")
        combined = os.path.join(temp_dir, f"{base}_combined.zip")
        result = system.run_cmd(['zip', '-s', '0', path, '--out', combined])
        if result.returncode != 0 or not os.path.isfile(combined):
            run_log.error(result.stderr or f"zip -s 0 failed for {path}")
            raise RestoreAborted("Failed to join split zip archive.")
        return combined, 'zip'

    try:
        with gzip.open(path, 'rb') as f:
            f.read(1)
    except OSError:
        run_log.error(f"File is not a valid gzip archive: {path}")
        raise RestoreAborted("ERROR: The backup file is not a valid gzip archive.")
    return path, 'tar'


def extract_archive(archive, fmt, temp_dir, run_log):
    if fmt == 'zip':
        try:
            with zipfile.ZipFile(archive) as zf:
                broken = zf.testzip()
        except zipfile.BadZipFile as e:
            broken = str(e)
        if broken:
            run_log.error(f"File is not a valid zip archive: {archive} ({broken})")
            raise RestoreAborted("ERROR: The backup file is not a valid zip archive.")
    try:
        if fmt == 'zip':
            extract_zip(archive, temp_dir)
        else:
            extract_tar(archive, temp_dir)
    except (ValueError, OSError, zipfile.BadZipFile, tarfile.TarError) as e:
        run_log.error(f"Failed to extract {archive}: {e}")
        raise RestoreAborted("Failed to extract backup file.")
    colorized_echo("green", "✓ Archive extracted successfully")


def load_backup_env(temp_dir):
    env_path = os.path.join(temp_dir, '.env')
    if not os.path.isfile(env_path):
        raise RestoreAborted("Environment file not found in backup.")
    if envfile.has_null_bytes(env_path):
        colorized_echo("yellow", "WARNING: .env file contains null bytes, cleaning...")

    env = envfile.load_env(env_path) or {}
    colorized_echo("green", f"✓ Loaded {len(env)} environment variables")
    if not env.get('SQLALCHEMY_DATABASE_URL'):
        colorized_echo("red", "SQLALCHEMY_DATABASE_URL not found in backup .env file")
        colorized_echo("yellow", "Available environment variables:")
        for key in list(env)[:10]:
            colorized_echo("yellow", key)
        raise RestoreAborted("SQLALCHEMY_DATABASE_URL not found in backup .env file")
    colorized_echo("green", f"✓ Found SQLALCHEMY_DATABASE_URL: {env['SQLALCHEMY_DATABASE_URL'][:50]}...")
    return env


# ================= 数据库恢复 =================

def _keep_copy(path, stamp):
    if os.path.isfile(path):
        shutil.copy2(path, f"{path}.backup.{stamp}")


def restore_sqlite(db, temp_dir, run_log, stamp):
    source = os.path.join(temp_dir, SQLITE_DUMP_FILE)
    if not os.path.isfile(source):
        raise RestoreAborted("SQLite backup file not found in backup archive.")
    try:
        _keep_copy(db['sqlite_file'], stamp)
        os.makedirs(os.path.dirname(db['sqlite_file']) or '.', exist_ok=True)
        shutil.copyfile(source, db['sqlite_file'])
    except OSError as e:
        run_log.error(f"SQLite restore failed: {e}")
        raise RestoreAborted("Failed to restore SQLite database.")
    colorized_echo("green", "SQLite database restored successfully.")


def _pipe_sql(container, cmd, sql_path, run_log, env=None):
    with open(sql_path, 'r', encoding='utf-8', errors='replace') as f:
        result = docker_ops.docker_exec(container, cmd, env=env, stdin=f)
    if result.stderr: run_log.info(result.stderr.rstrip())
    return result.returncode == 0


def restore_mysql(db, env, container, temp_dir, run_log):
    sql_path = os.path.join(temp_dir, DUMP_FILE)
    if not os.path.isfile(sql_path):
        raise RestoreAborted("Database backup file not found in backup archive.")
    if not is_local_host(db['host']):
        raise RestoreAborted(f"Remote {db['type']} restore not supported yet.")
    if not container:
        run_log.error("MySQL/MariaDB container not found. Container name: empty")
        raise RestoreAborted("Error: MySQL/MariaDB container not found. Is the container running?")

    verified = docker_ops.verify_and_start_container(container, db['type'])
    if not verified:
        raise RestoreAborted("Failed to start database container. Please start it manually.")

    is_mariadb = docker_ops.docker_exec(verified, ['mariadb', '--version']).returncode == 0
    client, label = ('mariadb', 'MariaDB') if is_mariadb else ('mysql', 'MySQL')
    colorized_echo("blue", f"Restoring {label} database from container: {verified}")

    root_password = env.get('MYSQL_ROOT_PASSWORD', '')
    if root_password:
        colorized_echo("blue", "Using root user for restore...")
        cmd = [client, '-u', 'root', f"-p{root_password}"]
        failure = f"{label} restore failed with root user"
    else:
        user = db['user'] or env.get('DB_USER', '')
        password = db['password'] or env.get('DB_PASSWORD', '')
        if not password:
            raise RestoreAborted("No database password found for restore.")
        colorized_echo("blue", f"Using app user '{user}' for restore...")
        cmd = [client, '-u', user, f"-p{password}", db['name']]
        failure = f"{label} restore failed with app user"

    if not _pipe_sql(verified, cmd, sql_path, run_log):
        run_log.error(failure)
        raise RestoreAborted(f"Failed to restore {label} database.")
    colorized_echo("green", f"{label} database restored successfully.")


def restore_postgres(db, env, container, temp_dir, run_log):
    sql_path = os.path.join(temp_dir, DUMP_FILE)
    if not os.path.isfile(sql_path):
        raise RestoreAborted("Database backup file not found in backup archive.")
    if os.path.getsize(sql_path) == 0:
        raise RestoreAborted("Database backup file is empty or unreadable.")
    colorized_echo("blue", f"Backup file size: {format_bytes(os.path.getsize(sql_path))}")
    if not is_local_host(db['host']) or not container:
        raise RestoreAborted(f"Remote {db['type']} restore not supported yet.")

    verified = docker_ops.verify_and_start_container(container, db['type'])
    if not verified:
        raise RestoreAborted("Failed to start database container. Please start it manually.")
    colorized_echo("blue", f"Restoring {db['type']} database from container: {verified}")

    user = db['user'] or env.get('DB_USER') or 'postgres'
    password = db['password'] or env.get('DB_PASSWORD', '')
    if not password:
        raise RestoreAborted("No database password found for restore.")

    colorized_echo("blue", f"Attempting restore using app user '{user}' to database '{db['name']}'...")
    attempts = [(user, db['name']), ('postgres', db['name']), ('postgres', 'postgres')]
    for i, (as_user, database) in enumerate(attempts):
        if i == 1: colorized_echo("yellow", "Trying with postgres superuser...")
        cmd = ['psql', '-U', as_user, '-d', database]
        if _pipe_sql(verified, cmd, sql_path, run_log, env={'PGPASSWORD': password}):
            colorized_echo("green", f"{db['type']} database restored successfully.")
            return
    colorized_echo("yellow", f"Check log file for details: {config.RESTORE_LOG_FILE}")
    raise RestoreAborted(f"Failed to restore {db['type']} database.")


# ================= 配置文件 =================

def restore_config_files(temp_dir, run_log, stamp):
    colorized_echo("blue", "Restoring configuration files...")
    for name, target, label in (('.env', state.ENV_FILE, "Environment file"),
                                ('docker-compose.yml', state.COMPOSE_FILE, "Docker Compose file")):
        source = os.path.join(temp_dir, name)
        if not os.path.isfile(source): continue
        try:
            _keep_copy(target, stamp)
            shutil.copyfile(source, target)
            colorized_echo("green", f"{label} restored.")
        except OSError as e:
            run_log.error(f"Failed to restore {name}: {e}")
            colorized_echo("red", f"Failed to restore {name}.")

    data_source = os.path.join(temp_dir, DATA_ARCHIVE_DIR)
    if os.path.isdir(data_source):
        try:
            shutil.copytree(data_source, state.DATA_DIR, symlinks=True, dirs_exist_ok=True)
            colorized_echo("green", f"Data directory restored to {state.DATA_DIR}.")
        except (shutil.Error, OSError) as e:
            run_log.error(f"Failed to restore data directory: {e}")
            colorized_echo("red", "Failed to restore data directory.")


# ================= 主流程 =================

def run_restore(file_name=None):
    """pasarguard restore，返回退出码"""
    colorized_echo("blue", "Starting restore process...")
    if not state.is_installed():
        colorized_echo("red", "pasarguard's not installed!")
        return 1
    if not docker_ops.is_up():
        colorized_echo("red", "pasarguard is not up. Please start pasarguard first.")
        return 1

    temp_dir = config.RESTORE_TMP_DIR
    run_log = open_run_log("Services.Restore.run", config.RESTORE_LOG_FILE, "Restore Log")
    shutil.rmtree(temp_dir, ignore_errors=True)
    os.makedirs(temp_dir)
    try:
        _run_restore(file_name, temp_dir, run_log)
    except RestoreAborted as e:
        if e.code == 0:
            colorized_echo("yellow", str(e))
        else:
            colorized_echo("red", str(e))
            logger.error(f"❌ 恢复失败: {e}")
        return e.code
    finally:
        shutil.rmtree(temp_dir, ignore_errors=True)
        close_run_log(run_log)
    return 0


def _run_restore(file_name, temp_dir, run_log):
    folder = backup_dir()
    if not os.path.isdir(folder):
        raise RestoreAborted(f"Backup directory not found: {folder}")

    files = list_backups(folder)
    if not files:
        colorized_echo("yellow", "Looking for files with extensions: .gz, .zip, .tar.gz or containing 'backup'")
        raise RestoreAborted(f"No backup files found in {folder}")

    print_backups(files)
    selected = select_backup(files, file_name)
    colorized_echo("blue", f"Selected backup: {os.path.basename(selected)}")

    colorized_echo("blue", "Preparing archive for extraction...")
    archive, fmt = prepare_archive(selected, temp_dir, run_log)
    colorized_echo("blue", "Extracting backup...")
    extract_archive(archive, fmt, temp_dir, run_log)

    colorized_echo("blue", "Loading configuration from backup...")
    env = load_backup_env(temp_dir)

    colorized_echo("blue", "Detecting database type...")
    compose_text = ''
    archived_compose = os.path.join(temp_dir, 'docker-compose.yml')
    if os.path.isfile(archived_compose):
        with open(archived_compose, 'r', encoding='utf-8', errors='replace') as f:
            compose_text = f.read()
    db = parse_database_url(env['SQLALCHEMY_DATABASE_URL'], compose_text)
    if not db or not db['type']:
        colorized_echo("yellow", f"SQLALCHEMY_DATABASE_URL: {env['SQLALCHEMY_DATABASE_URL']}")
        raise RestoreAborted("Could not determine database type from backup.")
    db_type = db['type']
    if db_type == 'sqlite':
        colorized_echo("blue", f"Database file: {db['sqlite_file']}")

    container = ''
    if db_type != 'sqlite' and is_local_host(db['host']):
        container = docker_ops.find_container(db_type)
    colorized_echo("green", f"✓ Database configuration detected: {db_type}")

    colorized_echo("red", f"⚠️  DANGER: This will PERMANENTLY overwrite your current {db_type} database!")
    colorized_echo("blue", f"Database type: {db_type}")
    if db['name']: colorized_echo("blue", f"Database name: {db['name']}")
    if container: colorized_echo("blue", f"Container: {container}")
    if not ask_yes_no("Do you want to proceed with the restore?"):
        raise RestoreAborted("Restore cancelled.", code=0)

    colorized_echo("blue", "Stopping pasarguard services for clean restore...")
    if db_type == 'sqlite':
        docker_ops.down()
    else:
        docker_ops.stop('pasarguard')

    colorized_echo("red", "⚠️  DANGER: Starting database restore - this will overwrite existing data!")
    stamp = timestamp()
    if db_type == 'sqlite':
        restore_sqlite(db, temp_dir, run_log, stamp)
    elif db_type in ('mysql', 'mariadb'):
        restore_mysql(db, env, container, temp_dir, run_log)
    else:
        restore_postgres(db, env, container, temp_dir, run_log)

    restore_config_files(temp_dir, run_log, stamp)

    colorized_echo("blue", "Restarting pasarguard services...")
    if db_type == 'sqlite':
        docker_ops.up()
    else:
        docker_ops.start('pasarguard')
    colorized_echo("green", "Restore completed successfully!")
    colorized_echo("green", "PasarGuard services have been restarted.")
    logger.info(f"✅ 已从 {os.path.basename(selected)} 恢复")
