# pasarctl/core/console.py
import logging

import typer
from rich.console import Console
from rich.prompt import Confirm, Prompt
from rich.theme import Theme

from pasarctl.core import state

logger = logging.getLogger("Core.Console")

# ================= 终端配色 =================
THEME = Theme({
    "red": "bold red",
    "green": "bold green",
    "yellow": "bold yellow",
    "blue": "bold blue",
    "magenta": "bold magenta",
    "cyan": "bold cyan",
    "prompt": "bold cyan",
})

console = Console(theme=THEME, highlight=False)


def colorized_echo(color, text, end="\n"):
    """彩色输出，未知颜色按普通文本处理"""
    style = color if color in THEME.styles else None
    console.print(text, style=style, markup=False, end=end)


def banner(title, color="blue", width=30):
    colorized_echo(color, "=" * width)
    colorized_echo(color, title.center(width))
    colorized_echo(color, "=" * width)


def die(message, code=1):
    """打印红色错误并退出"""
    colorized_echo("red", message)
    logger.debug(f"❌ 退出 ({code}): {message}")
    raise typer.Exit(code=code)


# ================= 交互输入 =================
# AUTO_CONFIRM 打开时不读取 stdin，直接返回默认值

def ask(question, default="", password=False):
    if state.AUTO_CONFIRM: return default
    answer = Prompt.ask(f"[prompt]{question}[/prompt]", default=default or None,
                        show_default=bool(default), password=password, console=console)
    return (answer or "").strip()


def confirm(question, default=False):
    if state.AUTO_CONFIRM: return default
    return Confirm.ask(f"[prompt]{question}[/prompt]", default=default, console=console)


def ask_yes_no(question):
    """严格的 yes/no 循环 (用于破坏性操作)"""
    if state.AUTO_CONFIRM: return True
    while True:
        answer = ask(f"{question} (yes/no)").lower()
        if answer in ('y', 'yes'): return True
        if answer in ('n', 'no'): return False
        colorized_echo("red", "Please answer yes or no.")


def pause():
    if state.AUTO_CONFIRM: return
    Prompt.ask("Press Enter to continue...", default="", show_default=False, console=console)
