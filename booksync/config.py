import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Config directory: respects XDG_CONFIG_HOME, overridable with BOOKSYNC_CONFIG_DIR
CONFIG_DIR = Path(
    os.environ.get("BOOKSYNC_CONFIG_DIR", "")
    or (
        Path(os.environ.get("XDG_CONFIG_HOME", "") or Path.home() / ".config")
        / "booksync"
    )
)

# .env file: prefer CWD (for dev installs), then config dir
ENV_PATH = CONFIG_DIR / ".env"
if not ENV_PATH.exists() and (Path.cwd() / ".env").exists():
    ENV_PATH = Path.cwd() / ".env"

load_dotenv(ENV_PATH)

DEFAULT_SOURCE_BASE = "~/Library/Containers/com.apple.iBooksX/Data/Documents"

_ALIAS_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class ConfigError(Exception):
    """Raised when required settings are missing or malformed."""


@dataclass(frozen=True)
class Config:
    vault_path: Path
    folder: str
    template_path: Optional[Path]
    source_base: Path
    annotation_dir: str
    annotation_file: str
    library_dir: str
    library_file: str
    staging_dir: Path
    attach_alias: str
    debounce_seconds: float
    sync_interval: float
    notify: bool
    log_level: str


def expand_path(path: str) -> Path:
    """Expand a leading ~ to the user's home directory."""
    return Path(path).expanduser()


def _get(var: str, default: str = "") -> str:
    return os.environ.get(var, default).strip()


def _get_seconds(var: str, default: str) -> float:
    raw = _get(var, default)
    try:
        value = float(raw)
    except ValueError:
        raise ConfigError(f"{var} must be a number of seconds, got {raw!r}") from None
    if value <= 0:
        raise ConfigError(f"{var} must be positive, got {raw!r}")
    return value


def load_config(
    vault: Optional[str] = None, template: Optional[str] = None,
) -> Config:
    """Build the process configuration from the environment.

    Command-line values for the vault and template take precedence over
    OBSIDIAN_VAULT_PATH and BOOKSYNC_TEMPLATE.
    """
    vault_raw = (vault or "").strip() or _get("OBSIDIAN_VAULT_PATH")
    if not vault_raw:
        if not ENV_PATH.exists():
            raise ConfigError(
                "No vault configured. Pass --vault or set OBSIDIAN_VAULT_PATH "
                f"in {CONFIG_DIR / '.env'}"
            )
        raise ConfigError(f"OBSIDIAN_VAULT_PATH is not set. Fill it in {ENV_PATH}")

    template_raw = (template or "").strip() or _get("BOOKSYNC_TEMPLATE")

    alias = _get("BOOKSYNC_ATTACH_ALIAS", "AEAnnotation")
    if not _ALIAS_RE.match(alias):
        raise ConfigError(
            f"BOOKSYNC_ATTACH_ALIAS must be a plain identifier, got {alias!r}"
        )

    staging_raw = _get("BOOKSYNC_STAGING_DIR")
    staging_dir = expand_path(staging_raw) if staging_raw else CONFIG_DIR / "db"

    return Config(
        vault_path=expand_path(vault_raw),
        folder=_get("BOOKSYNC_FOLDER", "apple_books_sync") or "apple_books_sync",
        template_path=expand_path(template_raw) if template_raw else None,
        source_base=expand_path(_get("BOOKSYNC_SOURCE_BASE", DEFAULT_SOURCE_BASE)),
        annotation_dir=_get("BOOKSYNC_ANNOTATION_DIR", "AEAnnotation"),
        annotation_file=_get("BOOKSYNC_ANNOTATION_FILE", "AEAnnotation*.sqlite"),
        library_dir=_get("BOOKSYNC_LIBRARY_DIR", "BKLibrary"),
        library_file=_get("BOOKSYNC_LIBRARY_FILE", "BKLibrary*.sqlite"),
        staging_dir=staging_dir,
        attach_alias=alias,
        debounce_seconds=_get_seconds("BOOKSYNC_DEBOUNCE_SECONDS", "2"),
        sync_interval=_get_seconds("BOOKSYNC_SYNC_INTERVAL", "900"),
        notify=_get("BOOKSYNC_NOTIFY", "false").lower() in ("true", "1", "yes"),
        log_level=_get("LOG_LEVEL", "INFO").upper() or "INFO",
    )


def setup_logging(level: str = "INFO") -> None:
    """Configure logging for booksync. Call once at each entry point."""
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
