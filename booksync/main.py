"""booksync entry point.

One-shot by default: exports highlights added since the last run, then exits.
With --watch it stays running and re-syncs whenever Apple Books writes to its
annotation database, plus every BOOKSYNC_SYNC_INTERVAL seconds.
"""

import functools
import logging
import sys
from typing import Optional

log = logging.getLogger("booksync")

_VERSION = "0.1.0"

_HELP = """\
Usage: booksync [options]

  booksync              Export highlights added since the last run
  booksync --watch      Keep running and sync whenever Apple Books changes
  booksync --full       Rewrite every book note from all highlights
  booksync --status     Show vault, watermark and database locations

Options:
  --vault PATH          Vault directory (overrides OBSIDIAN_VAULT_PATH)
  --template PATH       Note template (overrides BOOKSYNC_TEMPLATE)
  -h, --help            Show this help
  -V, --version         Show version
"""


def _arg_value(flag: str) -> Optional[str]:
    """Return the value following flag on the command line, if present."""
    if flag not in sys.argv:
        return None
    idx = sys.argv.index(flag)
    if idx + 1 >= len(sys.argv) or sys.argv[idx + 1].startswith("-"):
        print(f"Error: {flag} needs a value")
        sys.exit(2)
    return sys.argv[idx + 1]


def _load_state(vault_path):
    from booksync.state import State, state_path

    try:
        return State.load(vault_path)
    except OSError as e:
        log.error("Could not read state (%s), starting from PK 0", e)
        return State(state_path(vault_path))


def _status(cfg) -> None:
    """Print where booksync reads from and writes to."""
    from booksync import staging
    from booksync.state import lock_path

    state = _load_state(cfg.vault_path)

    print()
    print("  booksync")
    print("  " + "─" * 40)
    print(f"  Vault:       {cfg.vault_path}")
    print(f"  Notes:       {cfg.vault_path / cfg.folder}")
    print(f"  Last PK:     {state.last_pk}")
    print(f"  Running:     {'yes' if lock_path(cfg.vault_path).exists() else 'no'}")

    try:
        staged = staging.locate(
            cfg.source_base,
            cfg.annotation_dir, cfg.annotation_file,
            cfg.library_dir, cfg.library_file,
            cfg.staging_dir,
        )
    except FileNotFoundError as e:
        print(f"  Source:      not found ({e})")
    else:
        print(f"  Annotations: {staged.annotation_source}")
        print(f"  Library:     {staged.library_source}")
    print(f"  Staging:     {cfg.staging_dir}")
    print()


def _run(cfg) -> int:
    """Stage the databases, then sync once or watch. Returns the exit status."""
    from booksync import notify
    from booksync import staging
    from booksync import watcher
    from booksync.annotations import AnnotationStore, SourceUnavailable
    from booksync.exporter import Exporter
    from booksync.sync import run_full_export, run_sync

    try:
        staged = staging.locate(
            cfg.source_base,
            cfg.annotation_dir, cfg.annotation_file,
            cfg.library_dir, cfg.library_file,
            cfg.staging_dir,
        )
        staged.prepare()
    except OSError as e:
        log.error("Could not stage Apple Books databases: %s", e)
        return 1

    store = AnnotationStore(
        staged.annotation_copy, staged.library_copy,
        attach_alias=cfg.attach_alias, staging=staged,
    )
    try:
        store.check()
    except SourceUnavailable as e:
        log.error("%s", e)
        return 1

    try:
        exporter = Exporter(cfg.vault_path, cfg.template_path, folder=cfg.folder)
    except ValueError as e:
        log.error("%s", e)
        return 1

    state = _load_state(cfg.vault_path)
    on_result = None
    if cfg.notify:
        on_result = functools.partial(notify.notify_summary, vault=cfg.vault_path)

    if "--watch" in sys.argv:
        log.info("Watch mode enabled. Press Ctrl+C to stop.")
        watcher.watch_and_sync(
            store, exporter, state,
            watch_path=staged.annotation_source,
            debounce=cfg.debounce_seconds,
            interval=cfg.sync_interval,
            on_result=on_result,
        )
        return 0

    try:
        if "--full" in sys.argv:
            log.info("Performing full export...")
            result = run_full_export(store, exporter, state)
        else:
            log.info("Performing one-off sync...")
            result = run_sync(store, exporter, state)
    except SourceUnavailable as e:
        log.error("Sync failed: %s", e)
        return 1

    if on_result is not None:
        on_result(result)
    return 0 if result.ok else 1


def main():
    if "--help" in sys.argv or "-h" in sys.argv:
        print(_HELP)
        return

    if "--version" in sys.argv or "-V" in sys.argv:
        print(f"booksync {_VERSION}")
        return

    from booksync import config
    from booksync.state import acquire_lock, release_lock

    try:
        cfg = config.load_config(
            vault=_arg_value("--vault"), template=_arg_value("--template"),
        )
    except config.ConfigError as e:
        print(f"Error: {e}")
        sys.exit(1)

    config.setup_logging(cfg.log_level)

    if "--status" in sys.argv:
        _status(cfg)
        return

    # Prevent overlapping runs against the same vault
    if not acquire_lock(cfg.vault_path):
        log.warning("Another booksync instance is running for %s, exiting", cfg.vault_path)
        sys.exit(1)

    try:
        code = _run(cfg)
    except Exception:
        log.exception("Unexpected error")
        raise
    finally:
        release_lock(cfg.vault_path)

    if code:
        sys.exit(code)


if __name__ == "__main__":
    main()
