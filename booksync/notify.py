"""Desktop notification of a sync pass (macOS only).

Tries terminal-notifier first, then AppleScript via osascript. The subtitle
names the vault, so several booksync processes for different vaults can be
told apart.
"""

import logging
import platform
import subprocess
from pathlib import Path
from typing import List, Optional, Union

from booksync.sync import SyncResult

log = logging.getLogger(__name__)

TITLE = "Book highlights"


def _applescript_quote(s: str) -> str:
    return '"' + s.replace("\\", "\\\\").replace('"', '\\"') + '"'


def _terminal_notifier(title: str, subtitle: str, message: str) -> List[str]:
    args = ["terminal-notifier", "-title", title, "-message", message]
    if subtitle:
        # One notification group per vault: a new summary replaces the last
        args += ["-subtitle", subtitle, "-group", f"booksync:{subtitle}"]
    else:
        args += ["-group", "booksync"]
    return args


def _osascript(title: str, subtitle: str, message: str) -> List[str]:
    script = (
        f"display notification {_applescript_quote(message)} "
        f"with title {_applescript_quote(title)}"
    )
    if subtitle:
        script += f" subtitle {_applescript_quote(subtitle)}"
    return ["osascript", "-e", script]


def send(title: str, message: str, subtitle: str = "") -> bool:
    """Post a notification. Returns False if nothing could be posted."""
    if platform.system() != "Darwin":
        log.debug("Notifications only supported on macOS, skipping")
        return False

    for build in (_terminal_notifier, _osascript):
        args = build(title, subtitle, message)
        try:
            subprocess.run(args, capture_output=True, timeout=10)
        except FileNotFoundError:
            log.debug("%s not installed", args[0])
            continue
        except (OSError, subprocess.SubprocessError) as e:
            log.debug("Notification via %s failed: %s", args[0], e)
            return False
        return True

    log.debug("No notifier available")
    return False


def _plural(n: int, word: str) -> str:
    return f"{n} {word}{'' if n == 1 else 's'}"


def notify_summary(
    result: SyncResult, vault: Optional[Union[str, Path]] = None,
) -> None:
    """Notify when a pass exported highlights or could not save its state."""
    if not result.records and result.ok:
        return

    parts = []
    if result.records:
        parts.append(
            f"{_plural(result.records, 'highlight')} in {_plural(result.books, 'book')}"
        )
    if result.errors:
        parts.append(f"{result.errors} failed")
    if not result.ok:
        parts.append("state not saved")

    send(TITLE, ", ".join(parts), subtitle=Path(vault).name if vault else "")
