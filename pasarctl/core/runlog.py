# pasarctl/core/runlog.py
import logging
import os
from datetime import datetime

# ================= 单次运行日志 (备份 / 恢复) =================
# 每次运行截断重写，只写文件，不向控制台传播


def open_run_log(name, path, title):
    """返回写入 path 的独立 logger，首行为 '<title> - <date>'"""
    run_logger = logging.getLogger(name)
    close_run_log(run_logger)
    run_logger.setLevel(logging.DEBUG)
    run_logger.propagate = False

    folder = os.path.dirname(path)
    if folder: os.makedirs(folder, exist_ok=True)
    handler = logging.FileHandler(path, mode='w', encoding='utf-8')
    handler.setFormatter(logging.Formatter('%(message)s'))
    run_logger.addHandler(handler)
    run_logger.info(f"{title} - {datetime.now().strftime('%a %b %d %H:%M:%S %Y')}")
    return run_logger


def close_run_log(run_logger):
    for handler in list(run_logger.handlers):
        handler.close()
        run_logger.removeHandler(handler)
