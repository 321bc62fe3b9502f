# pasarctl/utils/common.py
import os
import secrets
import string
import tarfile
import time
import zipfile
from datetime import datetime


# ================= 格式化工具 =================

def format_bytes(size):
    """人类可读的文件大小 (类似 du -h)"""
    if not size: return '0B'
    size = float(size)
    n = 0
    labels = {0: 'B', 1: 'K', 2: 'M', 3: 'G', 4: 'T'}
    while size >= 1024 and n < 4:
        size /= 1024
        n += 1
    if n == 0: return f"{int(size)}B"
    return f"{size:.1f}{labels[n]}"


def dir_size(path):
    """目录或文件的总字节数，不存在返回 0"""
    if os.path.isfile(path): return os.path.getsize(path)
    total = 0
    for root, _dirs, files in os.walk(path):
        for name in files:
            fp = os.path.join(root, name)
            if os.path.islink(fp): continue
            total += os.path.getsize(fp)
    return total


# ================= 时间 =================

def timestamp():
    """文件名用时间戳 YYYYmmddHHMMSS"""
    return datetime.now().strftime('%Y%m%d%H%M%S')


def now_str():
    return datetime.now().strftime('%Y-%m-%d %H:%M:%S')


def file_date(path):
    return time.strftime('%Y-%m-%d %H:%M', time.localtime(os.path.getmtime(path)))


# ================= 随机值 =================

def random_password(length=20):
    """字母数字随机密码"""
    alphabet = string.ascii_letters + string.digits
    return ''.join(secrets.choice(alphabet) for _ in range(length))


# ================= 解压 =================

def _inside(base, name):
    base = os.path.realpath(base)
    target = os.path.realpath(os.path.join(base, name))
    return target == base or target.startswith(base + os.sep)


def extract_zip(path, dest):
    """解压 zip，成员路径不得跳出目标目录"""
    with zipfile.ZipFile(path) as zf:
        for name in zf.namelist():
            if not _inside(dest, name):
                raise ValueError(f"unsafe path in archive: {name}")
        zf.extractall(dest)
        return zf.namelist()


def extract_tar(path, dest):
    """解压 tar.gz，拒绝越界路径与链接"""
    with tarfile.open(path, 'r:*') as tf:
        members = tf.getmembers()
        for m in members:
            if not _inside(dest, m.name) or m.issym() or m.islnk() or m.isdev():
                raise ValueError(f"unsafe member in archive: {m.name}")
        tf.extractall(dest, members=members)
        return [m.name for m in members]
