# pasarctl/core/envfile.py
import io
import logging
import os
import re
import shutil
import uuid

from dotenv import dotenv_values, set_key

from pasarctl.core import state

logger = logging.getLogger("Core.EnvFile")

VALID_KEY = re.compile(r'^[a-zA-Z_][a-zA-Z0-9_]*$')


# ================= 原子写入 =================

def _write_atomic(path, text):
    """原子写入文件 (写临时文件 -> 移动)"""
    temp_file = f"{path}.{uuid.uuid4()}.tmp"
    try:
        with open(temp_file, 'w', encoding='utf-8') as f:
            f.write(text)
        if os.path.exists(path): shutil.copymode(path, temp_file)
        shutil.move(temp_file, path)
    except Exception as e:
        if os.path.exists(temp_file): os.remove(temp_file)
        logger.error(f"❌ 写入 {path} 失败: {e}")
        raise


def _read_lines(path):
    with open(path, 'r', encoding='utf-8', errors='replace') as f:
        return f.read().splitlines()


def _write_lines(path, lines):
    _write_atomic(path, "\n".join(lines) + ("\n" if lines else ""))


# ================= 读取 =================

def parse_env_text(text):
    """
    解析 .env 文本
    - 去掉 NUL 字节
    - 键名必须是合法变量名，否则跳过
    - 去掉值两侧的空白与一层引号
    """
    text = text.replace('\x00', '')
    raw = dotenv_values(stream=io.StringIO(text), interpolate=False)
    env = {}
    for key, value in raw.items():
        key = (key or '').strip()
        if not VALID_KEY.match(key):
            logger.warning(f"⚠️ 跳过无效的 .env 行: {key}")
            continue
        env[key] = (value or '').strip()
    return env


def load_env(path=None):
    """读取 .env，文件不存在时返回 None"""
    path = path or state.ENV_FILE
    if not os.path.isfile(path): return None
    with open(path, 'r', encoding='utf-8', errors='replace') as f:
        return parse_env_text(f.read())


def has_null_bytes(path):
    with open(path, 'rb') as f:
        return b'\x00' in f.read()


# ================= 修改 =================

def replace_or_append(key, value, quote=False, path=None):
    """存在 KEY= 行则原地替换，否则追加 KEY=value"""
    path = path or state.ENV_FILE
    if quote:
        value = '"{}"'.format(value.replace('"', '\\"'))
    if not os.path.exists(path):
        with open(path, 'a', encoding='utf-8'): pass
    set_key(path, key, value, quote_mode="never")
    logger.info(f"✅ {os.path.basename(path)}: {key} 已更新")


def ensure_env_value(key, value, path=None):
    """
    节点风格写入: KEY= value
    注释掉的 "# KEY=" 会先被取消注释
    """
    path = path or state.ENV_FILE
    if not path or not os.path.isfile(path):
        return False, f"env file {path} not found"

    commented = re.compile(r'^#\s*' + re.escape(key) + r'\s*=')
    active = re.compile(r'^' + re.escape(key) + r'\s*=')
    new_line = f"{key}= {value}"

    lines = []
    found = False
    for line in _read_lines(path):
        if commented.match(line) or active.match(line):
            lines.append(new_line)
            found = True
        else:
            lines.append(line)
    if not found: lines.append(new_line)
    _write_lines(path, lines)
    return True, new_line


def remove_keys(keys, extra_lines=(), path=None):
    """删除定义了指定键的行，以及完全匹配的标记行"""
    path = path or state.ENV_FILE
    if not os.path.isfile(path): return 0
    patterns = [re.compile(r'^\s*' + re.escape(k) + r'\s*=') for k in keys]
    kept, removed = [], 0
    for line in _read_lines(path):
        if any(p.match(line) for p in patterns) or line.strip() in extra_lines:
            removed += 1
            continue
        kept.append(line)
    _write_lines(path, kept)
    return removed


def append_block(lines, path=None):
    """追加一个空行 + 多行配置"""
    path = path or state.ENV_FILE
    existing = _read_lines(path) if os.path.isfile(path) else []
    _write_lines(path, existing + [''] + list(lines))


def sub_lines(pattern, repl, path=None):
    """逐行正则替换，返回替换次数"""
    path = path or state.ENV_FILE
    regex = re.compile(pattern)
    count = 0
    lines = []
    for line in _read_lines(path):
        new, n = regex.subn(repl, line)
        count += n
        lines.append(new)
    _write_lines(path, lines)
    return count


def has_line(pattern, path=None):
    path = path or state.ENV_FILE
    if not os.path.isfile(path): return False
    regex = re.compile(pattern)
    return any(regex.search(line) for line in _read_lines(path))
