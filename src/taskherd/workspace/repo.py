from __future__ import annotations

import os
import subprocess
from pathlib import Path


class GitError(RuntimeError):
    """Raised when a git command fails."""

    def __init__(self, message: str, *, args: list[str] | None = None) -> None:
        super().__init__(message)
        self.git_args = list(args or [])


def _git_env() -> dict[str, str]:
    env = os.environ.copy()
    # Never block on an editor for rebase --continue or commit messages.
    env["GIT_EDITOR"] = "true"
    env.setdefault("GIT_TERMINAL_PROMPT", "0")
    return env


class GitRepo:
    """Thin wrapper around the git command line for one working copy."""

    DEFAULT_BRANCH_CANDIDATES = ("main", "master")

    def __init__(self, path: Path) -> None:
        self.path = path

    @classmethod
    def clone(cls, url: str, destination: Path) -> GitRepo:
        destination.parent.mkdir(parents=True, exist_ok=True)
        args = ["clone", url, str(destination)]
        proc = subprocess.run(
            ["git", "--no-pager", *args],
            text=True,
            capture_output=True,
            env=_git_env(),
        )
        if proc.returncode != 0:
            raise GitError(
                f"git clone {url} failed: {proc.stderr.strip() or proc.stdout.strip()}",
                args=args,
            )
        return cls(destination)

    @staticmethod
    def is_repo(path: Path) -> bool:
        return path.is_dir() and (path / ".git").exists()

    def _run_git(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess[str]:
        proc = subprocess.run(
            ["git", "--no-pager", *args],
            cwd=self.path,
            text=True,
            capture_output=True,
            env=_git_env(),
        )
        if check and proc.returncode != 0:
            raise GitError(proc.stderr.strip() or proc.stdout.strip(), args=args)
        return proc

    def fetch(self) -> None:
        self._run_git(["fetch", "origin", "--prune"])

    def current_branch(self) -> str:
        return self._run_git(["rev-parse", "--abbrev-ref", "HEAD"]).stdout.strip()

    def last_commit_sha(self) -> str | None:
        proc = self._run_git(["rev-parse", "--verify", "--quiet", "HEAD"], check=False)
        if proc.returncode != 0:
            return None
        return proc.stdout.strip() or None

    def has_changes(self) -> bool:
        return bool(self._run_git(["status", "--porcelain"]).stdout.strip())

    def branch_exists(self, branch: str) -> bool:
        proc = self._run_git(
            ["rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"], check=False
        )
        return proc.returncode == 0

    def remote_branch_exists(self, branch: str) -> bool:
        proc = self._run_git(
            ["rev-parse", "--verify", "--quiet", f"refs/remotes/origin/{branch}"], check=False
        )
        return proc.returncode == 0

    def checkout(self, branch: str) -> None:
        self._run_git(["checkout", branch])

    def create_branch(self, branch: str) -> None:
        self._run_git(["checkout", "-b", branch])

    def checkout_or_create(self, branch: str) -> None:
        if self.branch_exists(branch) or self.remote_branch_exists(branch):
            self.checkout(branch)
        else:
            self.create_branch(branch)

    def delete_branch(self, branch: str) -> None:
        self._run_git(["branch", "-D", branch])

    def add_all(self) -> None:
        self._run_git(["add", "-A"])

    def has_signing_key(self) -> bool:
        proc = self._run_git(["config", "--get", "user.signingkey"], check=False)
        return proc.returncode == 0 and bool(proc.stdout.strip())

    def commit(self, message: str, sign: bool = False) -> str:
        args = ["commit", "-m", message]
        if sign:
            args.insert(1, "-S")
        self._run_git(args)
        return self.last_commit_sha() or ""

    def push(self, branch: str) -> None:
        self._run_git(["push", "-u", "origin", branch])

    def force_push_with_lease(self, branch: str) -> None:
        self._run_git(["push", "--force-with-lease", "-u", "origin", branch])

    def push_with_lease_fallback(self, branch: str) -> None:
        try:
            self.push(branch)
        except GitError:
            self.force_push_with_lease(branch)

    def delete_remote_branch(self, branch: str) -> None:
        self._run_git(["push", "origin", "--delete", branch])

    def default_branch(self) -> str:
        for candidate in self.DEFAULT_BRANCH_CANDIDATES:
            if self.remote_branch_exists(candidate):
                return candidate
        raise GitError("could not detect default branch (no origin/main or origin/master)")

    def rebase(self, onto: str) -> None:
        self._run_git(["rebase", onto])

    def rebase_continue(self) -> None:
        self._run_git(["rebase", "--continue"])

    def rebase_abort(self) -> None:
        self._run_git(["rebase", "--abort"])

    def rebase_in_progress(self) -> bool:
        git_dir = Path(self._run_git(["rev-parse", "--git-dir"]).stdout.strip())
        if not git_dir.is_absolute():
            git_dir = self.path / git_dir
        return (git_dir / "rebase-merge").exists() or (git_dir / "rebase-apply").exists()

    def is_ancestor(self, ancestor: str, descendant: str = "HEAD") -> bool:
        proc = self._run_git(["merge-base", "--is-ancestor", ancestor, descendant], check=False)
        if proc.returncode not in {0, 1}:
            raise GitError(proc.stderr.strip() or proc.stdout.strip())
        return proc.returncode == 0

    def conflict_files(self) -> list[str]:
        proc = self._run_git(["diff", "--name-only", "--diff-filter=U"])
        return [line.strip() for line in proc.stdout.splitlines() if line.strip()]

    def remote_url(self, remote: str = "origin") -> str | None:
        proc = self._run_git(["remote", "get-url", remote], check=False)
        if proc.returncode != 0:
            return None
        return proc.stdout.strip()

    def log(self, ref: str = "HEAD", limit: int = 10) -> list[str]:
        proc = self._run_git(["log", "--oneline", f"-{limit}", ref])
        return [line for line in proc.stdout.splitlines() if line.strip()]
