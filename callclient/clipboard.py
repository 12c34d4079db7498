from __future__ import annotations

import logging
import shutil
import subprocess
import sys
from dataclasses import dataclass
from typing import List, Optional, Sequence

from callshared.errors import ClipboardError

logger = logging.getLogger(__name__)

COPY_COMMAND_TIMEOUT_SECONDS = 2.0


@dataclass(slots=True)
class ClipboardResult:
    ok: bool
    method: Optional[str] = None
    error: Optional[ClipboardError] = None

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "method": self.method,
            "error": str(self.error) if self.error else None,
        }


def _copy_with_tk(text: str) -> None:
    try:
        import tkinter
    except ImportError as exc:
        raise ClipboardError("tkinter is not available") from exc
    try:
        root = tkinter.Tk()
    except tkinter.TclError as exc:
        raise ClipboardError(f"No display for clipboard: {exc}") from exc
    try:
        root.withdraw()
        root.clipboard_clear()
        root.clipboard_append(text)
        root.update()
    except tkinter.TclError as exc:
        raise ClipboardError(f"Clipboard copy failed: {exc}") from exc
    finally:
        root.destroy()


def _copy_commands() -> List[Sequence[str]]:
    if sys.platform == "darwin":
        return [["pbcopy"]]
    if sys.platform.startswith("win"):
        return [["clip"]]
    return [
        ["wl-copy"],
        ["xclip", "-selection", "clipboard"],
        ["xsel", "--clipboard", "--input"],
    ]


def _copy_with_command(text: str) -> None:
    for command in _copy_commands():
        if shutil.which(command[0]) is None:
            continue
        try:
            subprocess.run(
                list(command),
                input=text.encode("utf-8"),
                check=True,
                timeout=COPY_COMMAND_TIMEOUT_SECONDS,
                capture_output=True,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            logger.debug("Copy command %s failed: %s", command[0], exc)
            continue
        return
    raise ClipboardError("No working clipboard command found")


def copy_to_clipboard(text: str) -> ClipboardResult:
    """Copy ``text`` to the system clipboard.

    Tries the Tk clipboard first and falls back to the platform copy command.
    Never raises; the outcome of the last attempt is reported instead.
    """
    try:
        _copy_with_tk(text)
        return ClipboardResult(ok=True, method="tk")
    except ClipboardError as exc:
        logger.info("Primary clipboard unavailable (%s); trying copy command", exc)
    try:
        _copy_with_command(text)
        return ClipboardResult(ok=True, method="command")
    except ClipboardError as exc:
        logger.warning("Unable to copy to clipboard: %s", exc)
        return ClipboardResult(ok=False, error=exc)
