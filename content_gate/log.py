"""Progress logging shared by the gate modules.

Lines go to stderr so that `--json` output on stdout stays clean.
"""

import sys
from datetime import datetime

LOG_FILE = None


def set_log_file(path):
    """Also append every log line to ``path`` (None disables)."""
    global LOG_FILE
    LOG_FILE = path


def log(msg: str, level: str = "INFO"):
    timestamp = datetime.now().strftime("%H:%M:%S")
    line = f"[{timestamp}] [{level}] {msg}"
    print(line, file=sys.stderr, flush=True)
    if LOG_FILE:
        with open(LOG_FILE, "a", encoding="utf-8") as f:
            f.write(line + "\n")


def log_separator(title: str = ""):
    line = f"━━━ {title} " + "━" * max(0, 60 - len(title))
    log(line)
