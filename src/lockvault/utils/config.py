"""Environment configuration for lockvault."""

import os

PASSWORD_ENV = "LOCKVAULT_PASSWORD"
LOG_LEVEL_ENV = "LOCKVAULT_LOG_LEVEL"
DEFAULT_LOG_LEVEL = "INFO"


def get_env(key: str, default: str | None = None) -> str | None:
    """Get environment variable, treating an empty value as unset."""
    value = os.getenv(key)
    if value is None or value == "":
        return default
    return value


def get_password_from_env() -> bytearray | None:
    """Password from LOCKVAULT_PASSWORD as a mutable buffer the caller must zero."""
    value = get_env(PASSWORD_ENV)
    if value is None:
        return None
    return bytearray(value.encode("utf-8"))


def get_log_level() -> str:
    return (get_env(LOG_LEVEL_ENV, DEFAULT_LOG_LEVEL) or DEFAULT_LOG_LEVEL).upper()


def get_editor() -> str:
    """VISUAL, then EDITOR, then the platform default."""
    editor = get_env("VISUAL") or get_env("EDITOR")
    if editor:
        return editor
    if os.name == "nt":
        return "notepad"
    return "vi"
