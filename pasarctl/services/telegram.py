# pasarctl/services/telegram.py
import logging
import os
import re
import shutil
from datetime import datetime

import requests

from pasarctl.core import config
from pasarctl.core.console import colorized_echo
from pasarctl.services import system
from pasarctl.utils.parsers import backup_base, classify_backup, escape_markdown_v2, resolve_backup_proxy

logger = logging.getLogger("Services.Telegram")

_IPV4 = re.compile(r'^[0-9]+\.[0-9]+\.[0-9]+\.[0-9]+$')
_ZPART = re.compile(r'\.z\d{2}$')


# ================= 会话与服务器信息 =================

def build_session(env):
    """带可选代理的 requests 会话 (socks 需要 PySocks)"""
    session = requests.Session()
    proxy = resolve_backup_proxy(env or {})
    if proxy:
        session.proxies = {'http': proxy, 'https': proxy}
        logger.info(f"🌐 Telegram 使用代理: {proxy}")
    return session


def get_server_ip(session):
    try:
        resp = session.get(config.IP_ECHO_URL, timeout=5)
        text = resp.text.strip() if resp.status_code == 200 else ''
        if _IPV4.match(text): return text
    except requests.RequestException as e:
        logger.info(f"⚠️ ifconfig.me 不可用: {e}")

    fields = (system.run_cmd(['hostname', '-I']).stdout or '').split()
    if fields: return fields[0]
    return "Unknown IP"


def now_with_zone():
    return datetime.now().astimezone().strftime('%Y-%m-%d %H:%M:%S %Z')


# ================= 备份分卷收集 =================

def _files_in(folder):
    return [os.path.join(folder, n) for n in os.listdir(folder) if os.path.isfile(os.path.join(folder, n))]


def _split_file(path, dest_dir, chunk_size):
    """等价于 split -b: <name>_part_aa, _part_ab ..."""
    name = os.path.basename(path)
    letters = 'abcdefghijklmnopqrstuvwxyz'
    index = 0
    with open(path, 'rb') as src:
        while True:
            chunk = src.read(chunk_size)
            if not chunk: break
            suffix = letters[index // 26] + letters[index % 26]
            with open(os.path.join(dest_dir, f"{name}_part_{suffix}"), 'wb') as out:
                out.write(chunk)
            index += 1


def collect_backup_parts(backup_dir, split_dir=None):
    """
    根据最新的备份文件收集需要上传的所有分卷
    返回 (paths, error)
    """
    split_dir = split_dir or config.TELEGRAM_SPLIT_DIR
    files = _files_in(backup_dir) if os.path.isdir(backup_dir) else []
    if not files: return [], "No backups found to send."

    latest = max(files, key=os.path.getmtime)
    name = os.path.basename(latest)
    kind = classify_backup(name)
    base = backup_base(name)

    if kind == 'parts':
        paths = sorted(f for f in files if re.match(re.escape(base) + r'\.part\d+\.zip$', os.path.basename(f)))
        if not paths: return [], f"Incomplete backup parts for {base}"
        return paths, None

    if kind in ('zsplit', 'zip'):
        paths = sorted(f for f in files if re.match(re.escape(base) + r'\.z\d{2}$', os.path.basename(f)))
        final_zip = os.path.join(backup_dir, f"{base}.zip")
        if not os.path.isfile(final_zip):
            return [], f"Missing final .zip file for split archive {base}"
        return paths + [final_zip], None

    if kind == 'targz':
        shutil.rmtree(split_dir, ignore_errors=True)
        os.makedirs(split_dir, exist_ok=True)
        if os.path.getsize(latest) > config.TELEGRAM_SPLIT_BYTES:
            colorized_echo("yellow", "Legacy backup is larger than 49MB. Splitting before upload...")
            _split_file(latest, split_dir, config.TELEGRAM_SPLIT_BYTES)
        else:
            shutil.copyfile(latest, os.path.join(split_dir, name))
        paths = sorted(_files_in(split_dir))
        if not paths: return [], "Failed to prepare legacy backup for upload."
        return paths, None

    return [], f"Unsupported backup format: {name}"


# ================= Bot API =================

def _api_url(token, method):
    return f"{config.TELEGRAM_API}/bot{token}/{method}"


def _error_of(resp):
    try:
        data = resp.json()
    except ValueError:
        data = {}
    if resp.status_code == 200 and data.get('ok') is True:
        return None
    return data.get('description') or f"HTTP {resp.status_code}"


def send_document(session, token, chat_id, path, caption='', parse_mode=None, filename=None):
    """上传文件，返回 (ok, error_description)"""
    data = {'chat_id': chat_id, 'caption': caption}
    if parse_mode: data['parse_mode'] = parse_mode
    try:
        with open(path, 'rb') as f:
            resp = session.post(_api_url(token, 'sendDocument'), data=data,
                                files={'document': (filename or os.path.basename(path), f)}, timeout=300)
    except (requests.RequestException, OSError) as e:
        logger.error(f"❌ sendDocument 失败: {e}")
        return False, str(e)
    error = _error_of(resp)
    if error:
        logger.debug(f"Telegram API Response: {resp.status_code} {resp.text}")
        return False, error
    return True, None


def send_message(session, token, chat_id, text, parse_mode=None):
    data = {'chat_id': chat_id, 'text': text}
    if parse_mode: data['parse_mode'] = parse_mode
    try:
        resp = session.post(_api_url(token, 'sendMessage'), data=data, timeout=config.HTTP_TIMEOUT)
    except requests.RequestException as e:
        logger.error(f"❌ sendMessage 失败: {e}")
        return False, str(e)
    error = _error_of(resp)
    return error is None, error


# ================= 消息模板 =================

def build_backup_caption(ip, filename, time_str):
    return (
        "📦 *Backup Information*\n"
        f"🌐 *Server IP*: `{escape_markdown_v2(ip)}`\n"
        f"📁 *Backup File*: `{escape_markdown_v2(filename)}`\n"
        f"⏰ *Backup Time*: `{escape_markdown_v2(time_str)}`"
    )


def build_upload_summary(ip, time_str, files):
    lines = [
        "📦 Backup Upload Summary",
        "──────────────────────",
        f"🌐 Server IP: {ip}",
        f"⏰ Time: {time_str}",
        "",
        "✅ Files Uploaded:",
    ]
    lines += [f"- {name}" for name in files]
    lines += [
        "",
        "📂 Extraction Guide:",
        "🪟 Windows: Install and use 7-Zip. Place the .zip and every .zXX part together, then start extraction from the .zip file.",
        "🐧 Linux: Run unzip (e.g., unzip backup_xxx.zip) with all .zXX parts in the same directory.",
        "🍎 macOS: Use Archive Utility or run unzip backup_xxx.zip from Terminal with the .zXX parts beside the .zip file.",
        "⚠️ Always download the .zip and every .zXX part before extracting.",
    ]
    return "\n".join(lines)


def build_error_message(ip, errors, time_str):
    message = (
        "⚠️ Backup Error Notification\n"
        f"🌐 Server IP: {ip}\n"
        f"❌ Errors: {errors}\n"
        f"⏰ Time: {time_str}"
    )
    limit = config.TELEGRAM_MAX_MESSAGE
    if len(message) > limit:
        message = message[:limit - 25] + "...\n[Message truncated]"
    return message


# ================= 备份上传 =================

def send_backup(env, backup_dir):
    """上传最新备份的所有分卷，全部成功才返回 True"""
    env = env or {}
    if env.get('BACKUP_SERVICE_ENABLED') != 'true':
        colorized_echo("yellow", "Backup service is not enabled. Skipping Telegram upload.")
        return True

    token = env.get('BACKUP_TELEGRAM_BOT_KEY', '')
    chat_id = env.get('BACKUP_TELEGRAM_CHAT_ID', '')
    if not token:
        colorized_echo("red", "Error: BACKUP_TELEGRAM_BOT_KEY is not set in .env file")
        return False
    if not chat_id:
        colorized_echo("red", "Error: BACKUP_TELEGRAM_CHAT_ID is not set in .env file")
        return False

    session = build_session(env)
    split_dir = config.TELEGRAM_SPLIT_DIR
    try:
        paths, error = collect_backup_parts(backup_dir, split_dir)
        if error:
            colorized_echo("red", error)
            return False

        server_ip = get_server_ip(session)
        backup_time = now_with_zone()
        uploaded = []
        for path in paths:
            name = os.path.basename(path)
            caption = build_backup_caption(server_ip, name, backup_time)
            ok, err = send_document(session, token, chat_id, path, caption, 'MarkdownV2', name)
            if ok:
                uploaded.append(name)
                colorized_echo("green", f"Backup part {name} successfully sent to Telegram.")
            else:
                colorized_echo("red", f"Failed to send backup part {name} to Telegram: {err}")

        if uploaded:
            send_message(session, token, chat_id, build_upload_summary(server_ip, backup_time, uploaded))
        return len(uploaded) == len(paths)
    finally:
        shutil.rmtree(split_dir, ignore_errors=True)


def send_backup_error(env, errors, log_file):
    """发送错误通知，然后上传本次日志"""
    env = env or {}
    token = env.get('BACKUP_TELEGRAM_BOT_KEY', '')
    chat_id = env.get('BACKUP_TELEGRAM_CHAT_ID', '')
    if not token or not chat_id:
        logger.info("Telegram 未配置，跳过错误通知")
        return False

    if isinstance(errors, (list, tuple)): errors = "\n".join(errors)
    session = build_session(env)
    server_ip = get_server_ip(session)
    error_time = now_with_zone()

    ok, _ = send_message(session, token, chat_id, build_error_message(server_ip, errors, error_time))
    if ok:
        colorized_echo("green", "Backup error notification sent to Telegram.")
    else:
        colorized_echo("red", "Failed to send error notification to Telegram.")

    if not os.path.isfile(log_file):
        colorized_echo("red", f"Log file not found: {log_file}")
        return ok

    log_ok, err = send_document(session, token, chat_id, log_file,
                                f"📜 Backup Error Log - {error_time}", filename='backup_error.log')
    if log_ok:
        colorized_echo("green", "Backup error log sent to Telegram.")
    else:
        colorized_echo("red", f"Failed to send backup error log to Telegram. {err}")
    return ok and log_ok
