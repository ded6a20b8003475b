from __future__ import annotations

import re
import subprocess
from pathlib import Path
from typing import Optional

from .errors import PrintError

# "request id is Deskjet-3050A-J611-series-42 (1 file(s))"
_REQUEST_ID_RE = re.compile(r"request id is (\S+)")
# "Deskjet-3050A-J611-series accepting requests since ..."
_ACCEPTING_RE = re.compile(r"^(\S+) accepting requests")


def print_file(path: Path, printer: str, title: Optional[str] = None) -> str:
    """
    Queue a saved attachment on a CUPS destination with `lp`.
    Returns the CUPS request id ("" if lp did not report one).
    """
    if not path.exists():
        raise PrintError(f"File does not exist: {path}")

    cmd = ["lp", "-d", printer]
    if title:
        cmd += ["-t", title]
    cmd.append(str(path))

    try:
        proc = subprocess.run(cmd, check=True, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
    except FileNotFoundError as e:
        raise PrintError("lp not found; is the CUPS client installed?") from e
    except subprocess.CalledProcessError as e:
        raise PrintError(f"lp rejected {path.name} for {printer}: {(e.stderr or '').strip()}") from e

    m = _REQUEST_ID_RE.search(proc.stdout or "")
    return m.group(1) if m else ""


def accepting_printers() -> list[str]:
    """
    Destinations currently accepting jobs, from `lpstat -a`.
    Empty when CUPS tools are missing or lpstat fails.
    """
    try:
        res = subprocess.run(
            ["lpstat", "-a"], check=True, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True
        )
    except (FileNotFoundError, subprocess.CalledProcessError):
        return []

    names = [m.group(1) for m in map(_ACCEPTING_RE.match, res.stdout.splitlines()) if m]
    return sorted(names)
