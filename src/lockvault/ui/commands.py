import argparse
import datetime as _dt
import sys

from keyring.errors import KeyringError

from lockvault.crypto.aead import clear_bytes
from lockvault.storage.vault import StoreNotFound
from lockvault.ui.constants import (
    ERROR_HINTS,
    ERROR_MESSAGES,
    EXIT_FAILURE,
    EXIT_OK,
    PROG_NAME,
    RULE,
    STATUS_ICONS,
)
from lockvault.ui.gitstatus import GitCli, format_git_status
from lockvault.ui.keyring_store import KeyringStore
from lockvault.ui.prompts import (
    TerminalPrompter,
    ask_yes_no,
    get_password_for_init,
    get_password_with_retry,
    is_terminal,
    offer_to_save_password,
    read_password,
    read_password_confirm,
)
from lockvault.utils.core import (
    VaultSession,
    diff,
    finalize_lock,
    get_changed_files,
    get_or_create_vault_id,
    get_vault_id,
    init_vault,
    list_files,
    lock_files,
    open_vault,
    status,
    unlock,
    verify_password,
)
from lockvault.utils.errors import VaultError
from lockvault.utils.helper import format_size
from lockvault.utils.maintain import change_password, compact, remove_files
from lockvault.utils.merge import MergeStrategy


def handle_error(err: VaultError) -> None:
    """Print a failure and, for the well-known kinds, what to do about it."""
    print(f"[!] Error: {ERROR_MESSAGES.get(err.kind, str(err))}", file=sys.stderr)
    hint = ERROR_HINTS.get(err.kind)
    if hint:
        print(hint, file=sys.stderr)


def _vault_id_or_none(session: VaultSession) -> str | None:
    try:
        return get_vault_id(session)
    except StoreNotFound:
        return None


def _password(session: VaultSession, prompt: str = "Enter password: ") -> bytearray:
    password, _ = get_password_with_retry(
        prompt,
        _vault_id_or_none(session),
        lambda pw: verify_password(session, pw),
        KeyringStore(),
    )
    return password


def cmd_init(args: argparse.Namespace) -> None:
    password = get_password_for_init()
    try:
        path = init_vault(args.dir, password, kdf=args.kdf, iterations=args.iterations)
        print(f"[+] Initialized vault at {path}")
        if is_terminal():
            with open_vault(args.dir, args.cancel) as session:
                offer_to_save_password(get_or_create_vault_id(session), password, KeyringStore())
    finally:
        clear_bytes(password)


def _print_changes(changes) -> None:
    print("Vault status:")
    print(f"  {changes.total} files total")
    if changes.changed:
        print(f"  {len(changes.changed)} modified:")
        for path in changes.changed:
            print(f"    - {path}")
    if changes.unchanged:
        print(f"  {len(changes.unchanged)} unchanged")
    if changes.missing:
        print(f"  {len(changes.missing)} missing (vault only):")
        for path in changes.missing:
            print(f"    - {path}")


def _lock_all(session: VaultSession, password: bytearray, remove: bool, force: bool) -> None:
    changes = get_changed_files(session, password)
    if changes.total == 0:
        print("No tracked files in vault")
        print(f"Run '{PROG_NAME} lock <file>' to add files")
        return
    _print_changes(changes)
    if not changes.changed:
        print("\nNo changes to lock")
        return

    if not force:
        action = " and remove originals" if remove else ""
        if not ask_yes_no(f"\nLock {len(changes.changed)} modified file(s){action}? [Y/n]: ", default=True):
            print("Cancelled")
            return

    lock_files(session, changes.changed, password)
    committed = finalize_lock(session, password, remove=remove)
    print(f"[+] Locked {len(committed)} file(s)")


def cmd_lock(args: argparse.Namespace) -> None:
    with open_vault(args.dir, args.cancel) as session:
        password = _password(session)
        try:
            if not args.files:
                _lock_all(session, password, args.remove, args.force)
                return
            lock_files(session, args.files, password)
            committed = finalize_lock(session, password, remove=args.remove)
            print(f"[+] Locked {len(committed)} file(s)")
        finally:
            clear_bytes(password)


def _strategy(args: argparse.Namespace) -> MergeStrategy:
    if args.force:
        return MergeStrategy.USE_VAULT
    if args.keep_local:
        return MergeStrategy.KEEP_LOCAL
    if args.keep_both:
        return MergeStrategy.KEEP_BOTH
    if args.abort:
        return MergeStrategy.ABORT
    return MergeStrategy.ASK


def cmd_unlock(args: argparse.Namespace) -> int:
    strategy = _strategy(args)
    prompter = TerminalPrompter() if strategy is MergeStrategy.ASK and is_terminal() else None
    with open_vault(args.dir, args.cancel) as session:
        password = _password(session)
        try:
            result = unlock(session, password, strategy, patterns=args.files or None, prompter=prompter)
        finally:
            clear_bytes(password)

    print()
    if result.extracted:
        print(f"[+] unlocked: {len(result.extracted)} files")
    if result.skipped:
        print(f"[+] skipped: {len(result.skipped)} files")
    if result.errors:
        print(f"[!] error: {len(result.errors)} errors occurred")
        for message in result.errors:
            print(f"    - {message}")
        return EXIT_FAILURE
    return EXIT_OK


def cmd_rm(args: argparse.Namespace) -> None:
    with open_vault(args.dir, args.cancel) as session:
        password = _password(session)
        try:
            removed = remove_files(session, args.files, password)
        finally:
            clear_bytes(password)
        if removed == 0:
            print("No matching files found in vault")
            return
        print(f"[+] Removed {removed} file(s) from vault")
        try:
            compact(session)
        except VaultError as e:
            print(f"[!] warning: compaction failed: {e}", file=sys.stderr)


def cmd_ls(args: argparse.Namespace) -> None:
    with open_vault(args.dir, args.cancel) as session:
        entries = list_files(session)
    if not entries:
        print("(empty)")
        return
    for entry in entries:
        print(f"{entry.path}\t{format_size(entry.size)}\t{entry.mod_time}")


def _format_time(value: str | None) -> str | None:
    if not value:
        return None
    try:
        return _dt.datetime.fromisoformat(value).astimezone().strftime("%Y-%m-%d %H:%M:%S")
    except ValueError:
        return value


def cmd_status(args: argparse.Namespace) -> None:
    with open_vault(args.dir, args.cancel) as session:
        info = status(session, git=GitCli())

    print("\nVault Status")
    print(RULE + "\n")
    print("Statistics:")
    print(f"   Files in vault: {info.tracked_count}")
    print(f"   Total size:     {format_size(info.total_size)}")
    last = _format_time(info.last_modified)
    if last:
        print(f"   Last locked:    {last}")
    print(f"   Encryption:     {info.algorithm} ({info.kdf}, iterations: {info.kdf_iterations})")
    print(f"   Version:        {info.version}\n")

    if info.tracked_count:
        print("Summary:")
        if info.unchanged_count:
            print(f"   .  {info.unchanged_count} unchanged")
        if info.modified_count:
            print(f"   *  {info.modified_count} modified")
        if info.vault_only_count:
            print(f"   *  {info.vault_only_count} vault only")
        if info.error_count:
            print(f"   !  {info.error_count} error")
        print()

    print("Files:")
    if not info.files:
        print("   (no files in vault)")
    for fs in info.files:
        print(f"   {STATUS_ICONS.get(fs.status, ' ')} {fs.path} ({fs.status})")

    if info.git is not None:
        print(format_git_status(info.git), end="")
    print(f"\n{RULE}")


def cmd_passwd(args: argparse.Namespace) -> None:
    with open_vault(args.dir, args.cancel) as session:
        vault_id = _vault_id_or_none(session)
        current = _password(session, "Enter current password: ")
        try:
            new = read_password_confirm()
            try:
                change_password(session, current, new, iterations=args.iterations)
                if vault_id:
                    try:
                        KeyringStore().save(vault_id, new)
                        print("[+] Keyring updated with new password")
                    except KeyringError as e:
                        print(f"[!] warning: failed to update keyring: {e}", file=sys.stderr)
            finally:
                clear_bytes(new)
        finally:
            clear_bytes(current)

        try:
            compact(session)
        except VaultError as e:
            print(f"[!] warning: compaction failed: {e}", file=sys.stderr)
    print("[+] Password changed successfully")


def cmd_diff(args: argparse.Namespace) -> None:
    with open_vault(args.dir, args.cancel) as session:
        password = _password(session)
        try:
            diffs = diff(session, password)
        finally:
            clear_bytes(password)
    if not diffs:
        print("No differences")
        return
    for item in diffs:
        sys.stdout.write(item.text)


def cmd_compact(args: argparse.Namespace) -> None:
    with open_vault(args.dir, args.cancel) as session:
        before = session.container.stat().st_size
        compact(session)
        after = session.container.stat().st_size
    print(f"[+] Compacted vault: {format_size(before)} -> {format_size(after)}")


def cmd_keyring_save(args: argparse.Namespace) -> None:
    with open_vault(args.dir, args.cancel) as session:
        password = read_password()
        try:
            verify_password(session, password)
            vault_id = get_or_create_vault_id(session)
            try:
                KeyringStore().save(vault_id, password)
            except KeyringError as e:
                raise VaultError.wrap("failed to save to keyring", e)
        finally:
            clear_bytes(password)
    print("[+] Password saved to keyring")


def cmd_keyring_delete(args: argparse.Namespace) -> None:
    with open_vault(args.dir, args.cancel) as session:
        vault_id = _vault_id_or_none(session)
    try:
        deleted = vault_id is not None and KeyringStore().delete(vault_id)
    except KeyringError as e:
        raise VaultError.wrap("failed to access keyring", e)
    if deleted:
        print("[+] Password removed from keyring")
    else:
        print("No password stored in keyring")


def cmd_keyring_status(args: argparse.Namespace) -> None:
    with open_vault(args.dir, args.cancel) as session:
        vault_id = _vault_id_or_none(session)
    if vault_id is not None and KeyringStore().has(vault_id):
        print("Password: stored in keyring")
    else:
        print("Password: not stored")
