"""Shared UI constants for the lockvault command line."""

from lockvault.utils.dataModels import STATUS_ERROR, STATUS_MODIFIED, STATUS_UNCHANGED, STATUS_VAULT_ONLY
from lockvault.utils.errors import ErrorKind

PROG_NAME = "lockvault"
RULE = "==========================================="

# Per-file markers in `status` output
STATUS_ICONS = {
    STATUS_VAULT_ONLY: "*",
    STATUS_MODIFIED: "*",
    STATUS_UNCHANGED: ".",
    STATUS_ERROR: "!",
}

ERROR_MESSAGES = {
    ErrorKind.NOT_INITIALIZED: "lockvault not initialized",
    ErrorKind.ALREADY_EXISTS: ".lockvault already exists in this directory",
    ErrorKind.PASSWORD_REQUIRED: "password is required",
    ErrorKind.WRONG_PASSWORD: "wrong password",
    ErrorKind.NO_TRACKED_FILES: "no files in vault",
}

ERROR_HINTS = {
    ErrorKind.NOT_INITIALIZED: f"Run '{PROG_NAME} init' first",
    ErrorKind.ALREADY_EXISTS: f"Use '{PROG_NAME} status' to see current state",
    ErrorKind.PASSWORD_REQUIRED: "Set LOCKVAULT_PASSWORD or run from a terminal to be prompted",
    ErrorKind.NO_TRACKED_FILES: f"Use '{PROG_NAME} lock <file>' to add files",
}

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CANCELLED = 130
