"""Terminal interaction: passwords, yes/no questions and the conflict menu."""
import getpass
import logging
import sys

from enum import Enum
from typing import Callable, Sequence, TextIO, Tuple

from keyring.errors import KeyringError

from lockvault.crypto.aead import clear_bytes, constant_time_compare
from lockvault.ui.keyring_store import KeyringStore
from lockvault.utils.config import get_password_from_env
from lockvault.utils.errors import ErrorKind, VaultError

logger = logging.getLogger(__name__)


class PasswordSource(Enum):
    PROMPT = "prompt"
    ENV = "env"
    KEYRING = "keyring"


def is_terminal() -> bool:
    try:
        return sys.stdin.isatty()
    except (AttributeError, ValueError):
        return False


class TerminalPrompter:
    """Line-based prompter over stdin/stdout, used for the interactive conflict menu."""

    def __init__(self, stdin: TextIO | None = None, stdout: TextIO | None = None) -> None:
        self.stdin = stdin or sys.stdin
        self.stdout = stdout or sys.stdout

    def _ask(self, prompt: str) -> str:
        self.stdout.write(prompt)
        self.stdout.flush()
        line = self.stdin.readline()
        if line == "":
            raise EOFError("no input")
        return line.strip()

    def choose(self, prompt: str, choices: Sequence[str]) -> str:
        return self._ask(prompt)

    def confirm(self, prompt: str) -> bool:
        try:
            answer = self._ask(prompt + " [y/N]: ").lower()
        except EOFError:
            return False
        return answer in ("y", "yes")

    def notify(self, message: str) -> None:
        print(message, file=self.stdout)


def ask_yes_no(prompt: str, default: bool = False) -> bool:
    """Ask on the terminal; without one, return `default`."""
    if not is_terminal():
        return default
    try:
        answer = input(prompt).strip().lower()
    except EOFError:
        return default
    if not answer:
        return default
    return answer in ("y", "yes")


def read_password(prompt: str = "Enter password: ") -> bytearray:
    password = bytearray(getpass.getpass(prompt).encode("utf-8"))
    if not password:
        raise VaultError(ErrorKind.PASSWORD_REQUIRED)
    return password


def read_password_confirm(prompt: str = "Enter new password: ",
                          confirm_prompt: str = "Confirm password: ") -> bytearray:
    password = read_password(prompt)
    try:
        again = read_password(confirm_prompt)
    except BaseException:
        clear_bytes(password)
        raise
    try:
        if not constant_time_compare(password, again):
            clear_bytes(password)
            raise VaultError(ErrorKind.OTHER, "passwords do not match")
    finally:
        clear_bytes(again)
    return password


def get_password_with_source(prompt: str, vault_id: str | None,
                             store: KeyringStore | None = None) -> Tuple[bytearray, PasswordSource]:
    """Environment first, then the keyring entry for `vault_id`, then a prompt."""
    password = get_password_from_env()
    if password is not None:
        return password, PasswordSource.ENV

    if vault_id and store is not None:
        try:
            password = store.get(vault_id)
        except KeyringError as e:
            logger.debug("keyring lookup failed: %s", e)
            password = None
        if password is not None:
            return password, PasswordSource.KEYRING

    return read_password(prompt), PasswordSource.PROMPT


def get_password_with_retry(prompt: str, vault_id: str | None, verify: Callable[[bytearray], None],
                            store: KeyringStore | None = None) -> Tuple[bytearray, PasswordSource]:
    """Like `get_password_with_source`, but a stale keyring password is evicted and re-prompted."""
    password, source = get_password_with_source(prompt, vault_id, store)
    try:
        verify(password)
    except VaultError as e:
        clear_bytes(password)
        if e.kind is ErrorKind.WRONG_PASSWORD and source is PasswordSource.KEYRING and is_terminal():
            print("Warning: keyring password is incorrect, removing stale entry", file=sys.stderr)
            try:
                store.delete(vault_id)
            except KeyringError as ke:
                logger.debug("could not remove keyring entry: %s", ke)
            return read_password(prompt), PasswordSource.PROMPT
        raise
    return password, source


def get_password_for_init() -> bytearray:
    password = get_password_from_env()
    if password is not None:
        return password
    return read_password_confirm()


def offer_to_save_password(vault_id: str, password: bytes | bytearray, store: KeyringStore) -> None:
    if not is_terminal() or store.has(vault_id):
        return
    if not ask_yes_no("Save password to keyring? [y/N] "):
        return
    try:
        store.save(vault_id, password)
    except KeyringError as e:
        print(f"[!] Warning: failed to save to keyring: {e}", file=sys.stderr)
        return
    print("[+] Password saved to keyring")
