"""Advisory git checks for `status`. Never changes what the vault does."""
import logging
import subprocess

from typing import List

from lockvault.utils.dataModels import CONTAINER_NAME, GitAdvice

logger = logging.getLogger(__name__)


class GitCli:
    def __init__(self, executable: str = "git") -> None:
        self.executable = executable

    def _run(self, workdir: str, *args: str) -> subprocess.CompletedProcess | None:
        try:
            return subprocess.run(
                [self.executable, *args],
                cwd=workdir,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
                check=False,
            )
        except OSError as e:
            logger.debug("git not available: %s", e)
            return None

    def is_repo(self, workdir: str) -> bool:
        proc = self._run(workdir, "rev-parse", "--is-inside-work-tree")
        return proc is not None and proc.returncode == 0

    def is_tracked(self, workdir: str, path: str) -> bool:
        proc = self._run(workdir, "ls-files", "--", path)
        return proc is not None and proc.returncode == 0 and bool(proc.stdout.strip())

    def is_ignored(self, workdir: str, path: str) -> bool:
        # check-ignore exits 0 when the path is ignored
        proc = self._run(workdir, "check-ignore", "-q", "--", path)
        return proc is not None and proc.returncode == 0


def format_git_status(advice: GitAdvice) -> str:
    lines: List[str] = ["", "Git Integration:"]
    if advice.container_tracked:
        lines.append(f"   ok: {CONTAINER_NAME} is tracked by git")
    else:
        lines.append(f"   error: {CONTAINER_NAME} not tracked (run: git add {CONTAINER_NAME})")

    if advice.tracked_secrets:
        lines.append(f"   error: {len(advice.tracked_secrets)} secret file(s) tracked by git:")
        for path in advice.tracked_secrets:
            lines.append(f"      - {path} (run: git rm --cached {path})")
    elif advice.untracked_secrets:
        lines.append("   ok: no secret files tracked by git")

    if advice.unignored_secrets:
        tracked = set(advice.tracked_secrets)
        suffix = "" if tracked else " (add to .gitignore)"
        for path in advice.unignored_secrets:
            if path not in tracked:
                lines.append(f"   warning: {path} not in .gitignore{suffix}")
    elif advice.ignored_secrets:
        lines.append(f"   ok: {len(advice.ignored_secrets)} secret file(s) in .gitignore")
    return "\n".join(lines) + "\n"
