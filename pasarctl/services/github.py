# pasarctl/services/github.py
import logging
import os
import shutil
import uuid

import requests

from pasarctl.core import config
from pasarctl.utils.parsers import newest_version

logger = logging.getLogger("Services.GitHub")


# ================= API 请求 =================

def _headers():
    headers = {'Accept': 'application/vnd.github+json', 'User-Agent': 'pasarctl'}
    if config.GITHUB_TOKEN:
        headers['Authorization'] = f"Bearer {config.GITHUB_TOKEN}"
    return headers


def _api_get(path, params=None):
    """GET api.github.com，失败返回 None"""
    url = f"{config.GITHUB_API}/repos/{path}"
    try:
        return requests.get(url, headers=_headers(), params=params, timeout=config.HTTP_TIMEOUT)
    except requests.RequestException as e:
        logger.warning(f"⚠️ GitHub 请求失败 {url}: {e}")
        return None


def _api_json(path, params=None):
    resp = _api_get(path, params)
    if resp is None or resp.status_code != 200: return None
    try:
        return resp.json()
    except ValueError:
        return None


# ================= Release 查询 =================

def latest_release_tag(repo):
    data = _api_json(f"{repo}/releases/latest")
    if isinstance(data, dict): return data.get('tag_name') or ''
    return ''


def latest_prerelease_tag(repo):
    data = _api_json(f"{repo}/releases")
    if not isinstance(data, list): return ''
    for release in data:
        if release.get('prerelease') is True:
            return release.get('tag_name') or ''
    return ''


def release_tag_exists(repo, tag):
    resp = _api_get(f"{repo}/releases/tags/{tag}")
    return resp is not None and resp.status_code == 200


def list_release_tags(repo, per_page=5):
    data = _api_json(f"{repo}/releases", params={'per_page': per_page})
    if not isinstance(data, list): return []
    return [r['tag_name'] for r in data if r.get('tag_name')][:per_page]


def resolve_prerelease(repo):
    """正式版与预发布版中较新的一个"""
    return newest_version(latest_release_tag(repo), latest_prerelease_tag(repo))


# ================= 下载 =================

def download_file(url, dest, timeout=None):
    """流式下载到临时文件后移动到目标路径"""
    folder = os.path.dirname(dest)
    if folder: os.makedirs(folder, exist_ok=True)
    temp_file = f"{dest}.{uuid.uuid4()}.part"
    try:
        with requests.get(url, stream=True, timeout=timeout or config.HTTP_TIMEOUT, allow_redirects=True) as resp:
            if resp.status_code != 200:
                return False, f"HTTP {resp.status_code} for {url}"
            with open(temp_file, 'wb') as f:
                for chunk in resp.iter_content(chunk_size=65536):
                    if chunk: f.write(chunk)
        shutil.move(temp_file, dest)
        logger.info(f"📦 已下载 {url} -> {dest}")
        return True, dest
    except (requests.RequestException, OSError) as e:
        logger.error(f"❌ 下载失败 {url}: {e}")
        return False, str(e)
    finally:
        if os.path.exists(temp_file): os.remove(temp_file)


def fetch_text(url):
    """下载小文本文件 (.env.example / compose 模板)"""
    try:
        resp = requests.get(url, timeout=config.HTTP_TIMEOUT)
    except requests.RequestException as e:
        logger.error(f"❌ 获取 {url} 失败: {e}")
        return None
    if resp.status_code != 200:
        logger.error(f"❌ 获取 {url} 失败: HTTP {resp.status_code}")
        return None
    return resp.text
