"""
log.py — logging do ibundle

Árvore de loggers sob "ibundle": console colorido (INFO, ou DEBUG com
--verbose) e arquivo rotativo em log_dir/ibundle.log (sempre DEBUG).
Mensagens de uma arquitetura levam o prefixo [arch] via arch_logger().
"""

import logging
import os
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler

from ibundle.modules import config

LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}

LOGFILE = "ibundle.log"

_root_logger = logging.getLogger("ibundle")
_root_logger.setLevel(logging.DEBUG)


class ColorFormatter(logging.Formatter):
    """Console: [hora] nível [módulo] mensagem, colorido por nível"""
    COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[41m",
    }
    RESET = "\033[0m"

    def format(self, record):
        color = self.COLORS.get(record.levelno, self.RESET)
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        short = record.name[len("ibundle."):] if record.name.startswith("ibundle.") else ""
        module = f"[{short}]" if short else ""
        return f"{color}[{ts}] {record.levelname.lower():<8}{module}{self.RESET} {super().format(record)}"


class ArchAdapter(logging.LoggerAdapter):
    """Prefixa mensagens com a arquitetura em construção"""

    def process(self, msg, kwargs):
        return f"[{self.extra['arch']}] {msg}", kwargs


def _console_handler() -> logging.Handler:
    ch = logging.StreamHandler(sys.stderr)
    ch.setLevel(logging.INFO)
    ch.setFormatter(ColorFormatter("%(message)s"))
    return ch


def _file_handler(log_dir: str):
    try:
        os.makedirs(log_dir, exist_ok=True)
        fh = RotatingFileHandler(os.path.join(log_dir, LOGFILE), maxBytes=10 * 1024 * 1024, backupCount=5)
    except OSError as e:
        _root_logger.warning("log dir %s indisponível, sem log em arquivo: %s", log_dir, e)
        return None
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] [%(name)s] %(message)s", "%Y-%m-%d %H:%M:%S"))
    return fh


def _setup_handlers():
    if _root_logger.handlers:
        return
    _root_logger.addHandler(_console_handler())
    fh = _file_handler(config.get("log_dir"))
    if fh is not None:
        _root_logger.addHandler(fh)


_setup_handlers()


def get_logger(name: str = "ibundle"):
    """Sub-logger (ex.: log.get_logger("catalog") -> ibundle.catalog)"""
    return _root_logger.getChild(name)


def arch_logger(logger: logging.Logger, arch: str) -> ArchAdapter:
    return ArchAdapter(logger, {"arch": arch})


def set_level(level: str):
    """Nível do console; o arquivo continua recebendo DEBUG"""
    lvl = LEVELS.get(level.lower())
    if lvl is None:
        raise ValueError(f"Nível inválido: {level}")
    for handler in _root_logger.handlers:
        if not isinstance(handler, RotatingFileHandler):
            handler.setLevel(lvl)


def progress_printer(stream=None):
    """
    Callback para BootstrapManager.add_progress_cb que mostra o andamento
    de um make-bootstrap em linhas curtas.
    """
    def _cb(event: str, data: dict):
        out = stream or sys.stderr
        if event == "bootstrap.archs":
            print(f"==> {data['release']}: {', '.join(data['archs'])}", file=out)
        elif event == "sync.done":
            print("==> catalog snapshot ok", file=out)
        elif event == "arch.start":
            print(f"--> {data['arch']}", file=out)
        elif event == "arch.done":
            print(f"    {data['bundle']}", file=out)
        elif event == "arch.error":
            print(f"    FAILED {data['arch']}", file=out)
    return _cb
