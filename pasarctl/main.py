# pasarctl/main.py
import logging
import os

# ================= 配置日志 =================
LOG_FORMAT = '%(asctime)s [%(levelname)s] %(message)s'
LOG_DATEFMT = '%H:%M:%S'

logger = logging.getLogger("Main")


def setup_logging(verbose=False):
    """PASARGUARD_LOG_LEVEL 决定默认级别，--verbose 提升到 DEBUG"""
    level_name = os.getenv('PASARGUARD_LOG_LEVEL', 'WARNING').upper()
    level = logging.DEBUG if verbose else getattr(logging, level_name, logging.WARNING)
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=LOG_DATEFMT, force=True)
    logger.debug(f"🚀 日志级别: {logging.getLevelName(level)}")


# ================= 命令入口 =================

def panel():
    from pasarctl.cli.panel import app
    app()


def node():
    from pasarctl.cli.node import app
    app()


def install_core():
    from pasarctl.cli.install_core import app
    app()
