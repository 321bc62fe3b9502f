# pasarctl/services/backup_service.py
import logging
import os
import shutil
from datetime import datetime

from apscheduler.triggers.cron import CronTrigger

from pasarctl.core import config, envfile, state
from pasarctl.core.console import ask, banner, colorized_echo, confirm, pause
from pasarctl.services import backup, system
from pasarctl.utils.parsers import cron_for_interval, interval_from_cron, is_valid_proxy_url

logger = logging.getLogger("Services.BackupService")

PROXY_HINT = "e.g. http://127.0.0.1:8080 or socks5://127.0.0.1:1080"
INVALID_PROXY = "Invalid proxy URL. Supported prefixes: http://, https://, socks5://, socks5h://, socks4://."


# ================= .env 中的配置 =================

def read_service_config():
    """读取备份服务配置，未启用时返回 None"""
    env = envfile.load_env(state.ENV_FILE) or {}
    if env.get('BACKUP_SERVICE_ENABLED') != 'true': return None
    schedule = env.get('BACKUP_CRON_SCHEDULE', '').strip('"')
    return {
        'bot_key': env.get('BACKUP_TELEGRAM_BOT_KEY', ''),
        'chat_id': env.get('BACKUP_TELEGRAM_CHAT_ID', ''),
        'schedule': schedule,
        'interval': interval_from_cron(schedule),
        'proxy_enabled': env.get('BACKUP_PROXY_ENABLED') or 'false',
        'proxy_url': env.get('BACKUP_PROXY_URL', '').strip('"'),
    }


def save_service_config(bot_key, chat_id, schedule, proxy_enabled, proxy_url):
    remove_service_config()
    envfile.append_block([
        config.BACKUP_ENV_MARKER,
        "BACKUP_SERVICE_ENABLED=true",
        f"BACKUP_TELEGRAM_BOT_KEY={bot_key}",
        f"BACKUP_TELEGRAM_CHAT_ID={chat_id}",
        f'BACKUP_CRON_SCHEDULE="{schedule}"',
        f"BACKUP_PROXY_ENABLED={'true' if proxy_enabled else 'false'}",
        f'BACKUP_PROXY_URL="{proxy_url}"',
    ])
    logger.info(f"✅ 备份服务配置已写入 {state.ENV_FILE}")


def remove_service_config():
    return envfile.remove_keys(config.BACKUP_ENV_KEYS, extra_lines=(config.BACKUP_ENV_MARKER,))


def describe_schedule(schedule):
    """校验 cron 表达式，返回下一次触发时间，无效返回 None"""
    try:
        trigger = CronTrigger.from_crontab(schedule)
    except (ValueError, TypeError) as e:
        logger.warning(f"⚠️ 无效的 cron 表达式 {schedule!r}: {e}")
        return None
    return trigger.get_next_fire_time(None, datetime.now(trigger.timezone))


def proxy_display(cfg):
    if cfg['proxy_enabled'] == 'true' and cfg['proxy_url']:
        return f"Enabled ({cfg['proxy_url']})"
    return "Disabled"


# ================= crontab =================

def cron_command():
    script = os.path.join(config.BIN_DIR, state.APP_NAME)
    if not os.path.isfile(script):
        script = shutil.which(state.APP_NAME) or script
    return f"{config.CRON_PATH} {script} backup"


def _read_crontab():
    result = system.run_cmd(['crontab', '-l'])
    if result.returncode != 0: return []
    return (result.stdout or '').splitlines()


def _write_crontab(lines):
    text = "\n".join(lines) + ("\n" if lines else "")
    return system.run_cmd(['crontab', '-'], input=text).returncode == 0


def install_cron_job(schedule):
    command = cron_command()
    lines = [l for l in _read_crontab() if config.CRON_TAG not in l and command not in l]
    lines.append(f"{schedule} {command} {config.CRON_TAG}")
    ok = _write_crontab(lines)
    if ok:
        logger.info(f"✅ cron 已更新: {schedule}")
    else:
        logger.error("❌ crontab 写入失败")
    return ok


def remove_cron_job():
    lines = [l for l in _read_crontab() if config.CRON_TAG not in l]
    return _write_crontab(lines)


# ================= 交互输入 =================

def _ask_required(question, error):
    while True:
        value = ask(question)
        if value: return value
        colorized_echo("red", error)


def _ask_interval(question):
    """返回 (hours, schedule)"""
    while True:
        value = ask(question)
        if not value.isdigit():
            colorized_echo("red", "Invalid input. Please enter a valid number.")
            continue
        schedule = cron_for_interval(value)
        if not schedule:
            colorized_echo("red", "Invalid input. Please enter a number between 1-24.")
            continue
        hours = int(value)
        if hours == 24:
            colorized_echo("green", "Setting backup to run daily at midnight.")
        else:
            colorized_echo("green", f"Setting backup to run every {hours} hour(s).")
        return hours, schedule


def _ask_proxy_url(current=''):
    while True:
        url = ask(f"Enter proxy URL ({PROXY_HINT})", default=current).strip()
        if not url:
            colorized_echo("red", "Proxy URL cannot be empty.")
            continue
        if is_valid_proxy_url(url): return url
        colorized_echo("red", INVALID_PROXY)


# ================= 子命令 =================

def configure():
    bot_key = _ask_required("Enter your Telegram bot API key", "API key cannot be empty. Please try again.")
    chat_id = _ask_required("Enter your Telegram chat ID", "Chat ID cannot be empty. Please try again.")
    hours, schedule = _ask_interval("Set up the backup interval in hours (1-24)")

    proxy_enabled = confirm("Do you need to use an HTTP/SOCKS proxy for Telegram backups?", default=False)
    proxy_url = _ask_proxy_url() if proxy_enabled else ''

    save_service_config(bot_key, chat_id, schedule, proxy_enabled, proxy_url)
    colorized_echo("green", f"Backup service configuration saved in {state.ENV_FILE}.")

    if install_cron_job(schedule):
        colorized_echo("green", "Cron job successfully added.")
    else:
        colorized_echo("red", "Failed to add cron job. Please check manually.")
    colorized_echo("green", "Backup service successfully configured.")

    colorized_echo("blue", "Running initial backup...")
    if backup.run_backup():
        colorized_echo("green", "Initial backup completed successfully.")
    else:
        colorized_echo("yellow", "Initial backup completed with warnings. Check logs if needed.")

    if hours == 24:
        colorized_echo("cyan", "Backups will be sent to Telegram daily (every 24 hours at midnight).")
    else:
        colorized_echo("cyan", f"Backups will be sent to Telegram every {hours} hour(s).")
    colorized_echo("green", "=====================================")


def view():
    cfg = read_service_config()
    if not cfg:
        colorized_echo("red", "Backup service is not configured.")
        return False

    banner("Backup Service Details", width=37)
    colorized_echo("green", "Status: Enabled")
    colorized_echo("cyan", f"Telegram Bot API Key: {cfg['bot_key']}")
    colorized_echo("cyan", f"Telegram Chat ID: {cfg['chat_id']}")
    colorized_echo("cyan", f"Cron Schedule: {cfg['schedule']}")
    if cfg['interval'] == 24:
        colorized_echo("cyan", "Backup Interval: Daily at midnight (every 24 hours)")
    else:
        colorized_echo("cyan", f"Backup Interval: Every {cfg['interval']} hour(s)")
    colorized_echo("cyan", f"Proxy: {proxy_display(cfg)}")

    next_run = describe_schedule(cfg['schedule'])
    if next_run:
        colorized_echo("cyan", f"Next Run: {next_run.strftime('%Y-%m-%d %H:%M:%S %Z')}")
    else:
        colorized_echo("yellow", "Next Run: unknown (invalid cron schedule)")
    colorized_echo("blue", "=" * 37)
    pause()
    return True


def edit():
    cfg = read_service_config()
    if not cfg:
        colorized_echo("red", "Backup service is not configured.")
        return False

    banner("Edit Backup Service", width=37)
    colorized_echo(None, "Current configuration:")
    colorized_echo("cyan", f"1. Telegram Bot API Key: {cfg['bot_key']}")
    colorized_echo("cyan", f"2. Telegram Chat ID: {cfg['chat_id']}")
    colorized_echo("cyan", f"3. Backup Interval: Every {cfg['interval']} hour(s)")
    colorized_echo("cyan", f"4. Proxy: {proxy_display(cfg)}")
    colorized_echo("yellow", "5. Cancel")
    choice = ask("Which setting would you like to edit? (1-5)")

    if choice == '1':
        value = _ask_required(f"Enter new Telegram bot API key [current: {cfg['bot_key']}]",
                              "API key cannot be empty. Please try again.")
        envfile.replace_or_append('BACKUP_TELEGRAM_BOT_KEY', value)
        colorized_echo("green", "Telegram Bot API Key updated successfully.")
    elif choice == '2':
        value = _ask_required(f"Enter new Telegram chat ID [current: {cfg['chat_id']}]",
                              "Chat ID cannot be empty. Please try again.")
        envfile.replace_or_append('BACKUP_TELEGRAM_CHAT_ID', value)
        colorized_echo("green", "Telegram Chat ID updated successfully.")
    elif choice == '3':
        _, schedule = _ask_interval(f"Set new backup interval in hours (1-24) [current: {cfg['interval']}]")
        envfile.replace_or_append('BACKUP_CRON_SCHEDULE', schedule, quote=True)
        if install_cron_job(schedule):
            colorized_echo("green", "Backup interval and cron schedule updated successfully.")
        else:
            colorized_echo("red", "Failed to update cron job. Please check manually.")
    elif choice == '4':
        enabled = confirm(f"Enable proxy for Telegram backups? [current: {proxy_display(cfg)}]", default=False)
        url = _ask_proxy_url(cfg['proxy_url']) if enabled else ''
        envfile.replace_or_append('BACKUP_PROXY_ENABLED', 'true' if enabled else 'false')
        envfile.replace_or_append('BACKUP_PROXY_URL', url, quote=True)
        colorized_echo("green", "Backup proxy configuration updated successfully.")
    elif choice == '5':
        colorized_echo("yellow", "Edit cancelled.")
        return False
    else:
        colorized_echo("red", "Invalid choice.")
        return False

    colorized_echo("green", "Backup service configuration updated successfully.")
    return True


def remove():
    colorized_echo("red", "in process...")
    remove_service_config()
    if remove_cron_job():
        colorized_echo("green", "Backup service task removed from crontab.")
    else:
        colorized_echo("red", "Failed to update crontab. Please check manually.")
    colorized_echo("green", "Backup service has been removed.")


def menu():
    """pasarguard backup-service"""
    banner("Welcome to Backup Service", width=37)
    cfg = read_service_config()
    if not cfg:
        colorized_echo("yellow", "No backup service is currently configured.")
        configure()
        return

    while True:
        cfg = read_service_config()
        if not cfg: break
        colorized_echo("green", "=" * 37)
        colorized_echo("green", "Current Backup Configuration:")
        colorized_echo("cyan", f"Telegram Bot API Key: {cfg['bot_key']}")
        colorized_echo("cyan", f"Telegram Chat ID: {cfg['chat_id']}")
        colorized_echo("cyan", f"Backup Interval: Every {cfg['interval']} hour(s)")
        colorized_echo("cyan", f"Proxy: {proxy_display(cfg)}")
        colorized_echo("green", "=" * 37)
        for line in ("Choose an option:", "1. Check Backup Service", "2. Edit Backup Service",
                     "3. Reconfigure Backup Service", "4. Remove Backup Service",
                     "5. Request Instant Backup", "6. Exit"):
            colorized_echo(None, line)
        choice = ask("Enter your choice (1-6)")

        if choice == '1':
            view()
        elif choice == '2':
            edit()
        elif choice == '3':
            colorized_echo("yellow", "Starting reconfiguration...")
            remove()
            configure()
            return
        elif choice == '4':
            colorized_echo("yellow", "Removing Backup Service...")
            remove()
            return
        elif choice == '5':
            colorized_echo("yellow", "Starting instant backup...")
            backup.run_backup()
            colorized_echo("green", "Instant backup completed.")
        elif choice == '6':
            colorized_echo("yellow", "Exiting...")
            return
        else:
            colorized_echo("red", "Invalid choice. Please try again.")
