import argparse

from lockvault.crypto.hash import SUPPORTED_KDFS
from lockvault.ui.commands import (
    cmd_compact,
    cmd_diff,
    cmd_init,
    cmd_keyring_delete,
    cmd_keyring_save,
    cmd_keyring_status,
    cmd_lock,
    cmd_ls,
    cmd_passwd,
    cmd_rm,
    cmd_status,
    cmd_unlock,
)
from lockvault.ui.constants import PROG_NAME
from lockvault.utils.dataModels import KDF_PBKDF2


def _positive_int(value: str) -> int:
    try:
        n = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an integer: {value}") from None
    if n <= 0:
        raise argparse.ArgumentTypeError("must be a positive integer")
    return n


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog=PROG_NAME, description="Encrypted vault for secret files, safe to commit to git")
    p.add_argument("-C", "--dir", default=".", help="Project directory holding .lockvault (default: current)")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_init = sub.add_parser("init", help="Create a new vault")
    p_init.add_argument("--kdf", choices=SUPPORTED_KDFS, default=KDF_PBKDF2, help="Key derivation function")
    p_init.add_argument("--iterations", type=_positive_int,
                        help="PBKDF2 iterations or Argon2 time cost (default depends on --kdf)")
    p_init.set_defaults(func=cmd_init)

    p_lock = sub.add_parser("lock", help="Encrypt files into the vault (all modified files when none given)")
    p_lock.add_argument("files", nargs="*", help="Files or glob patterns, relative to the project directory")
    p_lock.add_argument("-r", "--remove", action="store_true", help="Delete the plaintext files after locking")
    p_lock.add_argument("-f", "--force", action="store_true", help="Do not ask for confirmation")
    p_lock.set_defaults(func=cmd_lock)

    p_unlock = sub.add_parser("unlock", help="Decrypt files from the vault")
    p_unlock.add_argument("files", nargs="*",
                          help="Only unlock files matching these paths or patterns ('*' also matches across '/')")
    strategy = p_unlock.add_mutually_exclusive_group()
    strategy.add_argument("-f", "--force", action="store_true", help="Overwrite local files with vault versions")
    strategy.add_argument("--keep-local", action="store_true", help="Keep local versions on conflict")
    strategy.add_argument("--keep-both", action="store_true", help="Save vault versions as .from-vault on conflict")
    strategy.add_argument("--abort", action="store_true", help="Report conflicting files as errors")
    p_unlock.set_defaults(func=cmd_unlock)

    p_rm = sub.add_parser("rm", help="Remove files from the vault")
    p_rm.add_argument("files", nargs="+",
                      help="Files or glob patterns to remove ('*' also matches tracked paths across '/')")
    p_rm.set_defaults(func=cmd_rm)

    p_ls = sub.add_parser("ls", aliases=["list"], help="List files in the vault (no password needed)")
    p_ls.set_defaults(func=cmd_ls)

    p_status = sub.add_parser("status", help="Show vault status (no password needed)")
    p_status.set_defaults(func=cmd_status)

    p_passwd = sub.add_parser("passwd", help="Change the vault password")
    p_passwd.add_argument("--iterations", type=_positive_int, help="New KDF iteration count")
    p_passwd.set_defaults(func=cmd_passwd)

    p_diff = sub.add_parser("diff", help="Show differences between vault and local files")
    p_diff.set_defaults(func=cmd_diff)

    p_compact = sub.add_parser("compact", help="Reclaim unused space in the vault file")
    p_compact.set_defaults(func=cmd_compact)

    p_key = sub.add_parser("keyring", help="Manage the password stored in the OS keyring")
    key_sub = p_key.add_subparsers(dest="keyring_cmd", required=True)
    key_sub.add_parser("save", help="Store the password in the keyring").set_defaults(func=cmd_keyring_save)
    key_sub.add_parser("delete", help="Remove the stored password").set_defaults(func=cmd_keyring_delete)
    key_sub.add_parser("status", help="Show whether a password is stored").set_defaults(func=cmd_keyring_status)

    return p
