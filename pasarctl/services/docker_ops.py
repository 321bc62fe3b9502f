# pasarctl/services/docker_ops.py
import json
import logging
import os
import time

from pasarctl.core import state
from pasarctl.core.console import colorized_echo, die
from pasarctl.services import system
from pasarctl.utils.parsers import parse_compose_ps

logger = logging.getLogger("Services.Docker")

# 数据库类型 -> compose 服务名候选 (按优先级)
_FIND_SERVICES = {
    'mariadb': ('mariadb',),
    'mysql': ('mysql', 'mariadb'),
    'postgresql': ('timescaledb', 'postgresql'),
    'timescaledb': ('timescaledb', 'postgresql'),
}
_RESOLVE_SERVICES = {
    'mariadb': ('mariadb',),
    'mysql': ('mysql', 'mariadb'),
    'postgresql': ('postgresql', 'timescaledb'),
    'timescaledb': ('postgresql', 'timescaledb'),
}
_DEFAULT_SUFFIX = {
    'mariadb': 'mariadb', 'mysql': 'mysql',
    'postgresql': 'postgresql', 'timescaledb': 'postgresql',
}


# ================= Compose 命令 =================

def detect_compose():
    """docker compose 优先，其次 docker-compose"""
    if state.COMPOSE_CMD: return state.COMPOSE_CMD
    if system.run_cmd(['docker', 'compose', 'version']).returncode == 0:
        state.COMPOSE_CMD = ['docker', 'compose']
    elif system.run_cmd(['docker-compose', 'version']).returncode == 0:
        state.COMPOSE_CMD = ['docker-compose']
    else:
        die("docker compose not found")
    logger.debug(f"✅ compose: {' '.join(state.COMPOSE_CMD)}")
    return state.COMPOSE_CMD


def compose_args(*args):
    return list(detect_compose()) + ['-f', state.COMPOSE_FILE, '-p', state.APP_NAME] + list(args)


def compose(*args, capture=True):
    return system.run_cmd(compose_args(*args), capture=capture)


def _first_line(text):
    for line in (text or '').splitlines():
        if line.strip(): return line.strip()
    return ''


def compose_ps_id(service):
    return _first_line(compose('ps', '-q', service).stdout)


# ================= 生命周期 =================

def up():
    return compose('up', '-d', '--remove-orphans', capture=False).returncode == 0


def down():
    return compose('down', capture=False).returncode == 0


def pull():
    return compose('pull', capture=False).returncode == 0


def logs(follow=False):
    if follow:
        return system.run_interactive(compose_args('logs', '-f'))
    return compose('logs', capture=False).returncode


def start(service=None):
    args = ['start'] + ([service] if service else [])
    return compose(*args).returncode == 0


def stop(service=None):
    args = ['stop'] + ([service] if service else [])
    return compose(*args).returncode == 0


def exec_cli(kind, args=()):
    """面板容器内的 pasarguard-cli / pasarguard-tui"""
    prog = f"{kind.upper()}_PROG_NAME=pasarguard {kind}"
    cmd = compose_args('exec', '-e', prog, 'pasarguard', f'pasarguard-{kind}') + list(args)
    return system.run_interactive(cmd)


def is_up():
    return bool(compose('ps', '-q', '-a').stdout.strip())


def service_states():
    """[(service, state)]"""
    rows = parse_compose_ps(compose('ps', '-a', '--format=json').stdout)
    return [(r.get('Service', ''), r.get('State', '')) for r in rows]


# ================= 数据库容器查找 =================

def _compose_ps_json_name(services):
    rows = parse_compose_ps(compose('ps', '--format', 'json', *services).stdout)
    for row in rows:
        if row.get('Name'): return row['Name']
    return ''


def _docker_ps_id(*names):
    cmd = ['docker', 'ps']
    for n in names:
        cmd += ['--filter', f'name={n}']
    return _first_line(system.run_cmd(cmd + ['--format', '{{.ID}}']).stdout)


def find_container(db_type):
    """按多级回退查找数据库容器 (compose ps -q -> compose json -> docker ps -> 默认名)"""
    detect_compose()
    services = _FIND_SERVICES.get(db_type)
    if not services: return ''

    for service in services:
        found = compose_ps_id(service)
        if found: return found

    found = _compose_ps_json_name(services)
    if found: return found

    if db_type in ('mariadb', 'mysql'):
        for service in services:
            found = _docker_ps_id(state.APP_NAME, service)
            if found: return found
        return db_type
    return f"{state.APP_NAME}-timescaledb-1"


def container_exists(name):
    return bool(name) and system.run_cmd(['docker', 'inspect', name]).returncode == 0


def resolve_container(name, db_type):
    """inspect 成功直接使用，否则退回 compose 服务与默认容器名"""
    if container_exists(name): return name
    for service in _RESOLVE_SERVICES.get(db_type, ()):
        found = compose_ps_id(service)
        if found: return found
    suffix = _DEFAULT_SUFFIX.get(db_type)
    if suffix and os.path.isfile(state.COMPOSE_FILE):
        return f"{state.APP_NAME}-{suffix}-1"
    return ''


def _docker_ps(*args):
    return system.run_cmd(['docker', 'ps'] + list(args)).stdout or ''


def is_container_running(name, strict=False):
    if not name: return False
    if _docker_ps('--filter', f'id={name}', '--format', '{{.ID}}').strip(): return True
    if _docker_ps('--filter', f'name={name}', '--format', '{{.Names}}').strip(): return True
    if strict: return False
    names = _docker_ps('--format', '{{.Names}}').split()
    if name in names or any(n.endswith('/' + name) for n in names): return True
    ids = _docker_ps('--format', '{{.ID}}').split()
    return any(i.startswith(name) for i in ids)


def check_container(name, db_type):
    actual = resolve_container(name, db_type)
    if actual and is_container_running(actual): return actual
    return ''


def verify_and_start_container(name, db_type):
    actual = resolve_container(name, db_type)
    if not actual: return ''
    if is_container_running(actual): return actual

    colorized_echo("yellow", f"Database container '{actual}' is not running. Attempting to start it...")
    if system.run_cmd(['docker', 'start', actual]).returncode != 0:
        compose('start', db_type)
    time.sleep(2)
    return actual if is_container_running(actual, strict=True) else ''


def docker_exec(container, cmd, env=None, stdin=None, stdout=None, input=None):
    """docker exec [-i] [-e K=V] <container> <cmd...>"""
    args = ['docker', 'exec']
    if stdin is not None or input is not None: args.append('-i')
    for key, value in (env or {}).items():
        args += ['-e', f'{key}={value}']
    return system.run_cmd(args + [container] + list(cmd), stdin=stdin, stdout=stdout, input=input)


# ================= 镜像与卷 =================

def remove_images(keyword):
    output = system.run_cmd(['docker', 'images', '--format', '{{.Repository}} {{.ID}}']).stdout or ''
    ids = []
    for line in output.splitlines():
        parts = line.split()
        if len(parts) == 2 and keyword in parts[0] and parts[1] not in ids:
            ids.append(parts[1])
    if not ids: return 0

    colorized_echo("yellow", f"Removing Docker images of {keyword}")
    removed = 0
    for image in ids:
        if system.run_cmd(['docker', 'rmi', image]).returncode == 0:
            colorized_echo("yellow", f"Image {image} removed")
            removed += 1
    return removed


def named_volume_exists(name):
    return system.run_cmd(['docker', 'volume', 'inspect', name]).returncode == 0


def volume_mountpoint(name):
    result = system.run_cmd(['docker', 'volume', 'inspect', name])
    if result.returncode != 0: return ''
    try:
        data = json.loads(result.stdout)
    except ValueError:
        return ''
    return data[0].get('Mountpoint', '') if data else ''


def remove_volume(name):
    return system.run_cmd(['docker', 'volume', 'rm', name]).returncode == 0
