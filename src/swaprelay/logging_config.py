import logging
import os
from logging import FileHandler, Formatter, StreamHandler

_initialized = False


def init_logging(level: str = "INFO", log_file: str | None = None) -> None:

    global _initialized
    if _initialized:
        return

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    fmt = Formatter('%(asctime)s %(levelname)s %(name)s: %(message)s', '%Y-%m-%d %H:%M:%S')

    # Don't stack duplicate handler types when something configured logging first
    types = {type(h) for h in root.handlers}

    if StreamHandler not in types:
        sh = StreamHandler()
        sh.setFormatter(fmt)
        root.addHandler(sh)

    if log_file and FileHandler not in types:
        directory = os.path.dirname(log_file)
        if directory and not os.path.exists(directory):
            os.makedirs(directory)
        fh = FileHandler(log_file, encoding='utf-8')
        fh.setFormatter(fmt)
        root.addHandler(fh)

    logging.getLogger('urllib3').setLevel(logging.WARNING)

    _initialized = True
