import logging
import os
from logging.handlers import RotatingFileHandler
from datetime import datetime

from lilroot.modules import config

# -------------------------
# Configuração inicial
# -------------------------
LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}

_root_logger = logging.getLogger("lilroot")
_root_logger.setLevel(logging.DEBUG)  # captura tudo


class ColorFormatter(logging.Formatter):
    """Formata mensagens com cores para o console"""
    COLORS = {
        logging.DEBUG: "\033[36m",   # ciano
        logging.INFO: "\033[32m",    # verde
        logging.WARNING: "\033[33m", # amarelo
        logging.ERROR: "\033[31m",   # vermelho
        logging.CRITICAL: "\033[41m" # fundo vermelho
    }
    RESET = "\033[0m"

    def format(self, record):
        color = self.COLORS.get(record.levelno, self.RESET)
        ts = datetime.fromtimestamp(record.created).strftime("%Y-%m-%d %H:%M:%S")
        module = f"[{record.name}]" if record.name != "lilroot" else ""
        msg = super().format(record)
        return f"{color}[{ts}] {record.levelname.lower():<8}{module}{self.RESET} {msg}"


def setup(console: bool = True, log_dir: str | None = None) -> None:
    """Configura handlers globais (uma vez só)"""
    if _root_logger.handlers:
        return  # já configurado

    # Console
    if console:
        ch = logging.StreamHandler()
        ch.setLevel(logging.INFO)
        ch.setFormatter(ColorFormatter("%(message)s"))
        _root_logger.addHandler(ch)

    # Arquivo
    log_dir = log_dir or config.paths()["log_dir"]
    try:
        os.makedirs(log_dir, exist_ok=True)
    except OSError as e:
        _root_logger.warning("Sem log em arquivo, %s não é gravável: %s", log_dir, e)
        return
    logfile = os.path.join(log_dir, "lilroot.log")

    fh = RotatingFileHandler(logfile, maxBytes=10 * 1024 * 1024, backupCount=5)
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter(
        "%(asctime)s [%(levelname)s] [%(name)s] %(message)s",
        "%Y-%m-%d %H:%M:%S"
    ))
    _root_logger.addHandler(fh)


# -------------------------
# API pública
# -------------------------
def get_logger(name: str = "lilroot"):
    """Obtém sub-logger (ex.: log.get_logger("sandbox"))"""
    if name == "lilroot":
        return _root_logger
    return _root_logger.getChild(name)


def set_level(level: str):
    """Altera nível global"""
    lvl = LEVELS.get(level.lower())
    if lvl is None:
        raise ValueError(f"Nível inválido: {level}")
    for handler in _root_logger.handlers:
        if isinstance(handler, RotatingFileHandler):
            continue
        handler.setLevel(lvl)

