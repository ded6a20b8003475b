from __future__ import annotations

import json
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Optional

from .models import AuthorizedUser

DEFAULT_PRINTER = "Deskjet-3050A-J611-series"
DEFAULT_ATTACHMENT_DIR = "files"
DEFAULT_POLL_INTERVAL = 60 * 60


def default_config_path() -> Path:
    """
    Default to a per-user config location; MAILPRINT_CONFIG_PATH overrides it
    (handy for running several mailboxes side by side, and for tests).
    """
    override = os.environ.get("MAILPRINT_CONFIG_PATH")
    if override:
        return Path(override).expanduser()

    return Path.home() / ".config" / "mailprint" / "config.json"


def _user_from_dict(d: Any) -> AuthorizedUser:
    if not isinstance(d, dict):
        raise ValueError("Each authorized user must be an object.")

    name = d.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ValueError("Authorized user must have a non-empty 'name' string.")

    emails = d.get("emails")
    if not isinstance(emails, list) or not emails:
        raise ValueError(f"Authorized user '{name}' must have a non-empty 'emails' list.")

    cleaned: list[str] = []
    for e in emails:
        if not isinstance(e, str) or not e.strip():
            raise ValueError(f"Authorized user '{name}' has an empty or non-string email.")
        cleaned.append(e.strip())

    return AuthorizedUser(name=name.strip(), emails=tuple(cleaned))


def _user_to_dict(u: AuthorizedUser) -> dict[str, Any]:
    return {"name": u.name, "emails": list(u.emails)}


@dataclass(frozen=True)
class AppConfig:
    printer_name: str = DEFAULT_PRINTER
    attachment_dir: Path = Path(DEFAULT_ATTACHMENT_DIR)
    # False: always overwrite. True: an existing file is neither fetched nor printed again.
    skip_existing: bool = False
    authorized_users: tuple[AuthorizedUser, ...] = ()
    shared_token: Optional[str] = None
    poll_interval_seconds: int = DEFAULT_POLL_INTERVAL
    max_workers: int = 4
    finalize_on_error: bool = False
    mark_unmatched_read: bool = False
    user_id: str = "me"
    unread_label: str = "UNREAD"
    personal_label: str = "CATEGORY_PERSONAL"

    def to_dict(self) -> dict[str, Any]:
        return {
            "printer_name": self.printer_name,
            "attachment_dir": str(self.attachment_dir),
            "skip_existing": self.skip_existing,
            "authorized_users": [_user_to_dict(u) for u in self.authorized_users],
            "shared_token": self.shared_token,
            "poll_interval_seconds": self.poll_interval_seconds,
            "max_workers": self.max_workers,
            "finalize_on_error": self.finalize_on_error,
            "mark_unmatched_read": self.mark_unmatched_read,
            "user_id": self.user_id,
            "unread_label": self.unread_label,
            "personal_label": self.personal_label,
        }

    @staticmethod
    def from_dict(d: dict[str, Any]) -> "AppConfig":
        printer_name = d.get("printer_name", DEFAULT_PRINTER)
        if not isinstance(printer_name, str) or not printer_name.strip():
            raise ValueError("Config 'printer_name' must be a non-empty string.")

        attachment_dir = d.get("attachment_dir", DEFAULT_ATTACHMENT_DIR)
        if not isinstance(attachment_dir, str) or not attachment_dir.strip():
            raise ValueError("Config 'attachment_dir' must be a non-empty string.")

        users_raw = d.get("authorized_users", [])
        if not isinstance(users_raw, list):
            raise ValueError("Config 'authorized_users' must be a list.")
        users = tuple(_user_from_dict(x) for x in users_raw)

        token = d.get("shared_token")
        if token is not None and not isinstance(token, str):
            raise ValueError("Config 'shared_token' must be a string or null.")
        # An empty token would match every subject.
        token = token.strip() if token and token.strip() else None

        interval = d.get("poll_interval_seconds", DEFAULT_POLL_INTERVAL)
        if not isinstance(interval, int) or isinstance(interval, bool) or interval < 1:
            raise ValueError("Config 'poll_interval_seconds' must be a positive integer.")

        workers = d.get("max_workers", 4)
        if not isinstance(workers, int) or isinstance(workers, bool) or workers < 1:
            raise ValueError("Config 'max_workers' must be a positive integer.")

        for key in ("skip_existing", "finalize_on_error", "mark_unmatched_read"):
            if key in d and not isinstance(d[key], bool):
                raise ValueError(f"Config '{key}' must be true or false.")

        for key in ("user_id", "unread_label", "personal_label"):
            if key in d and (not isinstance(d[key], str) or not d[key].strip()):
                raise ValueError(f"Config '{key}' must be a non-empty string.")

        return AppConfig(
            printer_name=printer_name.strip(),
            attachment_dir=Path(attachment_dir).expanduser(),
            skip_existing=d.get("skip_existing", False),
            authorized_users=users,
            shared_token=token,
            poll_interval_seconds=interval,
            max_workers=workers,
            finalize_on_error=d.get("finalize_on_error", False),
            mark_unmatched_read=d.get("mark_unmatched_read", False),
            user_id=d.get("user_id", "me").strip(),
            unread_label=d.get("unread_label", "UNREAD").strip(),
            personal_label=d.get("personal_label", "CATEGORY_PERSONAL").strip(),
        )


def _apply_env(cfg: AppConfig) -> AppConfig:
    # Secrets are better kept out of the config file.
    token = os.environ.get("MAILPRINT_SHARED_TOKEN")
    if token is not None:
        cfg = replace(cfg, shared_token=token.strip() or None)
    return cfg


def load_config(path: Optional[Path] = None) -> AppConfig:
    p = path or default_config_path()
    if not p.exists():
        # Nobody is authorized until a config exists.
        return _apply_env(AppConfig())

    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ValueError(f"Config file {p} is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ValueError("Config file root must be a JSON object.")
    return _apply_env(AppConfig.from_dict(data))


def save_config(cfg: AppConfig, path: Optional[Path] = None) -> Path:
    p = path or default_config_path()
    p.parent.mkdir(parents=True, exist_ok=True)

    tmp = p.with_suffix(".json.tmp")
    tmp.write_text(json.dumps(cfg.to_dict(), indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(p)
    return p


def add_user(cfg: AppConfig, user: AuthorizedUser) -> AppConfig:
    """
    Add or replace an authorized user by name (case-insensitive).
    """
    existing = {u.name.lower(): u for u in cfg.authorized_users}
    existing[user.name.lower()] = user
    return replace(cfg, authorized_users=tuple(existing.values()))
