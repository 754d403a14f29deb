#!/usr/bin/env python3
"""
lockvault - keep secret files encrypted in a single file next to your code.

Layout:
  project/
    .lockvault          # SQLite container, safe to commit
    .env, secrets/...   # plaintext files, kept out of git

The container holds four tables:
    config        version, timestamps, KDF salt and parameters, vault id
    public_index  path -> size, mtime, SHA-256 (readable without a password)
    blobs         path -> nonce || AES-256-GCM ciphertext || tag
    private       password check token and the encrypted file metadata

Commands:
  init                 Create .lockvault
  lock [files]         Track and encrypt files (all modified files when none given)
  unlock [files]       Decrypt files, with conflict handling for local changes
  rm <files>           Stop tracking files
  ls / status          Password-free listing and status
  passwd               Re-encrypt everything under a new password
  diff                 Show how local files differ from the vault
  compact              Reclaim unused space in the container
  keyring save|delete|status

Security choices:
  - AEAD: AES-256-GCM via cryptography.hazmat
  - KDF: PBKDF2-HMAC-SHA256 (210,000 iterations) by default, Argon2id via argon2-cffi optional
  - Every path read back from the container is re-validated before touching disk
"""
from __future__ import annotations

import sys

from lockvault.ui.cli import build_parser
from lockvault.ui.commands import handle_error
from lockvault.ui.constants import EXIT_CANCELLED, EXIT_FAILURE, EXIT_OK
from lockvault.utils.errors import OperationCancelled, VaultError
from lockvault.utils.helper import CancelToken, install_signal_handlers, restore_signal_handlers
from lockvault.utils.logger_util import configure_logger


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logger(level="DEBUG" if args.verbose else None)

    args.cancel = CancelToken()
    previous = install_signal_handlers(args.cancel)
    try:
        return args.func(args) or EXIT_OK
    except VaultError as e:
        handle_error(e)
        return EXIT_FAILURE
    except (OperationCancelled, KeyboardInterrupt) as e:
        print(f"\n[!] Cancelled: {str(e) or 'interrupted'}", file=sys.stderr)
        return EXIT_CANCELLED
    finally:
        restore_signal_handlers(previous)


if __name__ == "__main__":
    sys.exit(main())
