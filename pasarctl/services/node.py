# pasarctl/services/node.py
import logging
import os
import shutil
import sys
import uuid

import yaml

from pasarctl.core import config, envfile, state
from pasarctl.core.console import ask, colorized_echo, confirm, die
from pasarctl.services import certs, cores, docker_ops, github, system
from pasarctl.utils.parsers import is_uuid, newest_version, parse_san_input

logger = logging.getLogger("Services.Node")

SINGBOX_ALIASES = ('sing-box', 'singbox', 'sing')


# ================= compose / .env =================

def _load_compose():
    with open(state.COMPOSE_FILE, 'r', encoding='utf-8') as f:
        return yaml.safe_load(f) or {}


def _save_compose(data):
    with open(state.COMPOSE_FILE, 'w', encoding='utf-8') as f:
        yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)


def _node_service(data):
    return data.setdefault('services', {}).setdefault(config.NODE_SERVICE, {})


def _split_volume(entry):
    """'host:container' -> container；没有冒号时整个条目就是容器路径"""
    if not entry: return ''
    entry = str(entry)
    return entry.split(':', 1)[1] if ':' in entry else entry


def node_ip():
    return state.NODE_IP_V4 or state.NODE_IP_V6


def sync_volume_and_get_container_path():
    """把第一个卷的宿主机路径指向 DATA_DIR，返回容器内路径"""
    data = _load_compose()
    service = _node_service(data)
    volumes = service.get('volumes') or []
    container_path = _split_volume(volumes[0] if volumes else '') or config.NODE_CONTAINER_PATH
    entry = f"{state.DATA_DIR}:{container_path}"
    if volumes:
        volumes[0] = entry
    else:
        volumes = [entry]
    service['volumes'] = volumes
    _save_compose(data)
    return container_path


def update_core_env_paths(core, container_path):
    core = (core or '').lower()
    if core == 'xray':
        pairs = (('XRAY_EXECUTABLE_PATH', f"{container_path}/xray-core/xray"),
                 ('XRAY_ASSETS_PATH', f"{container_path}/assets"))
    elif core in SINGBOX_ALIASES:
        pairs = (('SINGBOX_EXECUTABLE_PATH', f"{container_path}/sing-box-core/sing-box"),
                 ('SINGBOX_ASSETS_PATH', f"{container_path}/sing-box-core/assets"))
    else:
        return False
    for key, value in pairs:
        envfile.ensure_env_value(key, value)
    return True


def configure_compose(version):
    data = _load_compose()
    service = _node_service(data)
    if state.APP_NAME != config.NODE_APP_NAME:
        service['container_name'] = state.APP_NAME

    volumes = service.get('volumes') or []
    if volumes:
        volumes[0] = f"{state.DATA_DIR}:{_split_volume(volumes[0])}"

    image = service.get('image', '')
    if version != 'latest' and ':' in image:
        service['image'] = f"{image.split(':', 1)[0]}:{version}"
    _save_compose(data)
    colorized_echo("green", "compose file modified successfully")


def configure_env(port, api_key, use_rest):
    envfile.sub_lines(r'^SERVICE_PORT *= *.*', f"SERVICE_PORT= {port}")
    envfile.sub_lines(r'^API_KEY *= *.*', f"API_KEY= {api_key}")
    protocol = 'rest' if use_rest else 'grpc'
    envfile.sub_lines(r'^# (SERVICE_PROTOCOL *=.*)', f'SERVICE_PROTOCOL= "{protocol}"')
    base = config.NODE_CONTAINER_PATH
    for key, value in (('XRAY_EXECUTABLE_PATH', f"{base}/xray-core/xray"),
                       ('XRAY_ASSETS_PATH', f"{base}/assets"),
                       ('SINGBOX_EXECUTABLE_PATH', f"{base}/sing-box-core/sing-box"),
                       ('SINGBOX_ASSETS_PATH', f"{base}/sing-box-core/assets")):
        envfile.ensure_env_value(key, value)
    colorized_echo("green", ".env file modified successfully")


def read_env_value(key):
    env = envfile.load_env(state.ENV_FILE) or {}
    return env.get(key, '')


# ================= 安装过程中的交互 =================

def _read_pem_lines(prompt):
    colorized_echo(None, prompt)
    colorized_echo(None, "Press ENTER on a new line when finished: ")
    lines = []
    for line in sys.stdin:
        line = line.rstrip('\n')
        if not line: break
        lines.append(line)
        if len(lines) == 1 and os.path.isfile(line.strip()): break
    return lines


def setup_certificate():
    colorized_echo(None, "A self-signed certificate will be generated by default.")
    if confirm("Do you want to use your own public certificate instead?", default=False):
        certs.save_pem_input(
            _read_pem_lines("Please paste the content OR the path to the Client Certificate file."),
            state.SSL_CERT_FILE)
        colorized_echo("blue", f"Certificate saved to {state.SSL_CERT_FILE}")
        certs.save_pem_input(
            _read_pem_lines("Please paste the content OR the path to the Private Key file."),
            state.SSL_KEY_FILE)
        colorized_echo("blue", f"Private key saved to {state.SSL_KEY_FILE}")
        return

    san = certs.build_san_list(state.NODE_IP_V4, state.NODE_IP_V6)
    colorized_echo(None, f"Current SAN entries: {' '.join(san)}")
    extra = ask("Enter additional SAN entries (comma separated, format: DNS:example.com or IP:1.2.3.4), "
                "or leave empty to keep current")
    if extra:
        valid, invalid = parse_san_input(extra)
        if invalid:
            colorized_echo("yellow", f"Warning: Invalid SAN entries ignored: {' '.join(invalid)}")
            colorized_echo("yellow", "Valid format examples: DNS:example.com, IP:192.168.1.1, IP:2001:db8::1")
        if valid:
            san = certs.build_san_list(state.NODE_IP_V4, state.NODE_IP_V6, valid)
            colorized_echo("green", f"Added {len(valid)} valid SAN entry/entries")

    ok, msg = certs.generate_self_signed(state.SSL_CERT_FILE, state.SSL_KEY_FILE, node_ip(), san)
    if not ok: die(msg)
    colorized_echo("green", msg)
    colorized_echo("blue", "self-signed certificate successfully generated")


def prompt_api_key():
    while True:
        api_key = ask("Enter your API Key (must be a valid UUID (any version), leave blank to auto-generate)")
        if not api_key:
            colorized_echo("green", "No API Key provided. A random UUID version 4 has been generated")
            return str(uuid.uuid4())
        if is_uuid(api_key): return api_key
        colorized_echo("red", "Invalid UUID format. Please enter a valid UUID.")


def prompt_service_port():
    occupied = system.get_occupied_ports()
    if state.AUTO_CONFIRM:
        port = config.DEFAULT_SERVICE_PORT
        if system.is_port_occupied(port, occupied):
            die(f"Port {port} is already in use. Run without -y to choose another port.")
        return port

    while True:
        value = ask(f"Enter the SERVICE_PORT (default {config.DEFAULT_SERVICE_PORT})") or str(config.DEFAULT_SERVICE_PORT)
        if not value.isdigit() or not 1 <= int(value) <= 65535:
            colorized_echo("red", "Invalid port. Please enter a port between 1 and 65535.")
            continue
        if system.is_port_occupied(int(value), occupied):
            colorized_echo("red", f"Port {value} is already in use. Please enter another port.")
            continue
        return int(value)


def _fetch_to(url, dest):
    text = github.fetch_text(url)
    if text is None: die(f"Failed to download {url}")
    with open(dest, 'w', encoding='utf-8') as f:
        f.write(text)
    colorized_echo("green", f"File saved in {dest}")


# ================= 安装 =================

def check_version_exists(version):
    """返回 (ok, resolved_version)"""
    repo = config.NODE_REPO
    if version == 'latest':
        if not github.latest_release_tag(repo):
            colorized_echo("yellow", "No GitHub releases found for node fork; falling back to 'latest' tag.")
        return True, 'latest'

    if version == 'pre-release':
        chosen = newest_version(github.latest_release_tag(repo), github.latest_prerelease_tag(repo))
        if not chosen:
            colorized_echo("yellow", "No releases found for node fork; defaulting pre-release to 'latest'.")
            return True, 'latest'
        return True, chosen

    return github.release_tag_exists(repo, version), version


def install_node(version):
    """安装节点，返回 (port, api_key)"""
    os.makedirs(os.path.join(state.DATA_DIR, 'certs'), exist_ok=True)
    os.makedirs(state.APP_DIR, exist_ok=True)

    setup_certificate()
    api_key = prompt_api_key()
    use_rest = confirm("GRPC is recommended by default. Do you want to use REST protocol instead?", default=False)
    port = prompt_service_port()

    colorized_echo("blue", "Fetching .env and compose file")
    _fetch_to(config.NODE_ENV_URL, state.ENV_FILE)
    _fetch_to(config.NODE_COMPOSE_URL, state.COMPOSE_FILE)

    configure_env(port, api_key, use_rest)
    configure_compose(version)

    container_path = sync_volume_and_get_container_path()
    update_core_env_paths('xray', container_path)

    if confirm("Install Sing-Box core alongside Xray?", default=False):
        tag = cores.resolve_singbox_version('latest')
        if not tag:
            colorized_echo("yellow", "Unable to determine latest Sing-Box release; skipping installation.")
        else:
            ok, msg = _install_singbox_into_data(tag)
            if ok:
                update_core_env_paths('sing-box', container_path)
                colorized_echo("green", f"Sing-Box core {tag} installed.")
            else:
                colorized_echo("red", msg)
    logger.info(f"✅ 节点 {state.APP_NAME} 已安装 (port={port})")
    return port, api_key


def uninstall_node(remove_data=False):
    if os.path.isdir(state.APP_DIR):
        colorized_echo("yellow", f"Removing directory: {state.APP_DIR}")
        shutil.rmtree(state.APP_DIR)
    docker_ops.remove_images('node')
    if remove_data and os.path.isdir(state.DATA_DIR):
        colorized_echo("yellow", f"Removing directory: {state.DATA_DIR}")
        shutil.rmtree(state.DATA_DIR)
    logger.info(f"🗑️ 节点 {state.APP_NAME} 已卸载")


def restart():
    docker_ops.down()
    docker_ops.up()


# ================= 地理文件 =================

def download_geofiles(regions=()):
    """下载 geoip.dat / geosite.dat 到 DATA_DIR/assets 并重启"""
    assets_dir = os.path.join(state.DATA_DIR, 'assets')
    os.makedirs(assets_dir, exist_ok=True)
    if not regions:
        colorized_echo("blue", "No region specified, defaulting to Iran geofiles...")
        regions = ('iran',)

    for region in regions:
        repo = config.GEOFILE_SOURCES.get(region)
        if not repo: die(f"Unknown option: --{region}")
        colorized_echo("blue", f"Downloading {region.capitalize()} geofiles...")
        for name in config.GEOFILE_NAMES:
            url = f"{config.GITHUB_WEB}/{repo}/releases/latest/download/{name}"
            ok, msg = github.download_file(url, os.path.join(assets_dir, name))
            if not ok: die(f"Failed to download {name}: {msg}")
        colorized_echo("green", f"{region.capitalize()} geofiles downloaded to {assets_dir}")

    data = _load_compose()
    service = _node_service(data)
    volumes = service.get('volumes') or []
    container_path = config.NODE_CONTAINER_PATH
    if volumes and ':' in str(volumes[0]):
        container_path = _split_volume(volumes[0])
        xray_assets = f"{container_path}/assets"
    else:
        xray_assets = assets_dir
        if volumes:
            volumes[0] = f"{state.DATA_DIR}:{container_path}"
            _save_compose(data)

    envfile.ensure_env_value('XRAY_ASSETS_PATH', xray_assets)
    envfile.ensure_env_value('SINGBOX_ASSETS_PATH', f"{container_path}/sing-box-core/assets")
    colorized_echo("blue", f"XRAY_ASSETS_PATH updated in {state.ENV_FILE}")
    colorized_echo("blue", "Restarting node services...")
    restart()
    colorized_echo("green", "Geofiles updated and node restarted.")


# ================= 内核更新 =================

def _install_singbox_into_data(tag):
    arch = cores.detect_arch()
    core_dir = os.path.join(state.DATA_DIR, 'sing-box-core')
    return cores.install_singbox(tag, arch, os.path.join(core_dir, 'sing-box'), os.path.join(core_dir, 'assets'))


def _choose_core():
    colorized_echo("cyan", "Select which core to update:")
    for line in ("  1) Xray", "  2) Sing-Box", "  3) Both"):
        colorized_echo(None, line)
    choice = ask("Choice", default="1")
    return {'2': 'sing-box', '3': 'all'}.get(choice, 'xray')


def update_cores(core=None, version=''):
    """core-update，返回是否有内核被更新"""
    if core is None and sys.stdin.isatty() and not state.AUTO_CONFIRM:
        core = _choose_core()
    core = (core or 'xray').lower()
    if core == 'all' and version:
        die("--version can only be used with --core xray or --core sing-box")

    container_path = sync_volume_and_get_container_path()
    updated = False

    if core in ('xray', 'all'):
        tag = cores.choose_xray_version(forced=version if core == 'xray' else None, auto=state.AUTO_CONFIRM)
        if tag:
            arch = cores.detect_arch()
            ok, msg = cores.install_xray(tag, arch, os.path.join(state.DATA_DIR, 'xray-core'))
            if not ok: die(msg)
            update_core_env_paths('xray', container_path)
            updated = True
            colorized_echo("blue", f"Installation of XRAY-CORE version {tag} completed.")

    if core in SINGBOX_ALIASES or core == 'all':
        desired = 'latest' if core == 'all' else (version or 'latest')
        tag = cores.resolve_singbox_version(desired)
        if not tag: die(f"Sing-Box version '{desired}' not found")
        ok, msg = _install_singbox_into_data(tag)
        if not ok: die(msg)
        update_core_env_paths('sing-box', container_path)
        updated = True
        colorized_echo("blue", f"Installation of Sing-Box core version {tag} completed.")

    if updated:
        colorized_echo("red", "Restarting node...")
        restart()
    else:
        colorized_echo("yellow", "No core updated. Use --core xray|sing-box|all")
    return updated
