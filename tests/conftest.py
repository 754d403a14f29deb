"""
Shared fixtures for lockvault tests.
"""

from __future__ import annotations

import logging

from pathlib import Path
from typing import Iterator, List, Sequence

import pytest

from lockvault.utils.core import VaultSession, init_vault, open_vault

PASSWORD = b"correct horse battery staple"
TEST_ITERATIONS = 1000


class ScriptedPrompter:
    """Prompter that replays canned answers and records what it was shown."""

    def __init__(self, choices: Sequence[str] = (), confirms: Sequence[bool] = ()) -> None:
        self.choices: List[str] = list(choices)
        self.confirms: List[bool] = list(confirms)
        self.offered: List[Sequence[str]] = []
        self.messages: List[str] = []

    def choose(self, prompt: str, choices: Sequence[str]) -> str:
        self.offered.append(list(choices))
        if not self.choices:
            raise EOFError("script exhausted")
        return self.choices.pop(0)

    def confirm(self, prompt: str) -> bool:
        return self.confirms.pop(0) if self.confirms else False

    def notify(self, message: str) -> None:
        self.messages.append(message)


@pytest.fixture
def password() -> bytearray:
    return bytearray(PASSWORD)


@pytest.fixture
def vault_root(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    root.mkdir()
    init_vault(root, bytearray(PASSWORD), iterations=TEST_ITERATIONS)
    return root


@pytest.fixture
def session(vault_root: Path) -> Iterator[VaultSession]:
    with open_vault(vault_root) as s:
        yield s


@pytest.fixture
def prompter_factory():
    return ScriptedPrompter


@pytest.fixture(autouse=True)
def _reset_lockvault_logger() -> Iterator[None]:
    yield
    logger = logging.getLogger("lockvault")
    logger.handlers.clear()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
