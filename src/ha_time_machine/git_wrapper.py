import os
import shlex
import subprocess
from datetime import datetime
from pathlib import Path
from typing import Any

from loguru import logger

from .errors import TimeMachineError

BOT_NAME = "HA Time Machine"
BOT_EMAIL = "addon@homeassistant.local"

_FIELD = "\x1f"
_RECORD = "\x1e"


class GitError(TimeMachineError):
    exit_code = 8

    def __init__(self, message: str, stderr: str = ""):
        self.stderr = stderr
        super().__init__(message)


class GitWrapper:
    def __init__(self, repo_path: Path, executable: str = "git"):
        self.repo_path = Path(repo_path)
        self.executable = executable

    def _get_env(self) -> dict[str, str]:
        env = os.environ.copy()
        env["GIT_TERMINAL_PROMPT"] = "0"
        env["LC_ALL"] = "C"
        env.setdefault("GIT_AUTHOR_NAME", BOT_NAME)
        env.setdefault("GIT_AUTHOR_EMAIL", BOT_EMAIL)
        env.setdefault("GIT_COMMITTER_NAME", BOT_NAME)
        env.setdefault("GIT_COMMITTER_EMAIL", BOT_EMAIL)
        return env

    def _run_command(
        self, args: list[str], check: bool = True, text: bool = True
    ) -> subprocess.CompletedProcess:
        cmd = [self.executable, "-c", "core.quotepath=off"] + args
        logger.debug(f"Running git command: {' '.join(shlex.quote(arg) for arg in cmd)}")

        try:
            return subprocess.run(
                cmd,
                cwd=self.repo_path,
                env=self._get_env(),
                capture_output=True,
                text=text,
                check=check,
            )
        except subprocess.CalledProcessError as e:
            stderr = e.stderr if isinstance(e.stderr, str) else (e.stderr or b"").decode(errors="replace")
            logger.error(f"Git command failed: {' '.join(args)}: {stderr.strip()}")
            raise GitError(f"Git command failed: {stderr.strip()}", stderr=stderr)
        except FileNotFoundError:
            raise GitError("Git binary not found. Please install git first.")

    def is_repo(self) -> bool:
        return (self.repo_path / ".git").exists()

    def init(self):
        self.repo_path.mkdir(parents=True, exist_ok=True)
        self._run_command(["init", "--quiet"])
        self.set_config("user.name", BOT_NAME)
        self.set_config("user.email", BOT_EMAIL)
        self.set_config("commit.gpgsign", "false")
        self.set_config("tag.gpgsign", "false")
        logger.info(f"Initialized git repository at {self.repo_path}")

    def set_config(self, key: str, value: str):
        self._run_command(["config", key, value])

    def has_commits(self) -> bool:
        result = self._run_command(["rev-parse", "--verify", "--quiet", "HEAD"], check=False)
        return result.returncode == 0

    def status(self) -> list[str]:
        result = self._run_command(["status", "--porcelain", "--untracked-files=all"])
        return [line for line in result.stdout.splitlines() if line.strip()]

    def add(self, paths: list[str] | None = None):
        self._run_command(["add", "--all", "--"] + (paths or ["."]))

    def has_staged_changes(self) -> bool:
        result = self._run_command(["diff", "--cached", "--quiet"], check=False)
        return result.returncode == 1

    def commit(self, message: str) -> str:
        self._run_command(["commit", "--quiet", "--no-verify", "-m", message])
        return self.resolve("HEAD")

    def resolve(self, ref: str) -> str:
        result = self._run_command(["rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"], check=False)
        if result.returncode != 0:
            raise GitError(f"Unknown revision: {ref}")
        return result.stdout.strip()

    def rev_exists(self, ref: str) -> bool:
        result = self._run_command(
            ["rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"], check=False
        )
        return result.returncode == 0

    def has_parent(self, ref: str) -> bool:
        return self.rev_exists(f"{ref}^")

    def add_tag(self, name: str, ref: str = "HEAD"):
        self._run_command(["tag", name, ref])

    def tag_exists(self, name: str) -> bool:
        return self.rev_exists(f"refs/tags/{name}")

    def delete_tag(self, name: str):
        self._run_command(["tag", "-d", name])

    def list_tags(self) -> list[dict[str, Any]]:
        """Tags with the commit they point at and that commit's date."""
        fmt = f"%(refname:short){_FIELD}%(objectname){_FIELD}%(creatordate:iso-strict)"
        result = self._run_command(["for-each-ref", "refs/tags", f"--format={fmt}"])

        tags = []
        for line in result.stdout.splitlines():
            if not line.strip():
                continue
            name, commit, date = line.split(_FIELD)
            tags.append({"name": name, "commit": commit, "date": datetime.fromisoformat(date)})
        return tags

    def log(self, limit: int = 0) -> list[dict[str, Any]]:
        if not self.has_commits():
            return []

        fmt = f"%H{_FIELD}%cI{_FIELD}%s{_FIELD}%D{_RECORD}"
        args = ["log", f"--format={fmt}"]
        if limit > 0:
            args.append(f"--max-count={limit}")

        result = self._run_command(args)

        commits = []
        for record in result.stdout.split(_RECORD):
            record = record.strip("\n")
            if not record:
                continue
            commit_hash, date, subject, refs = record.split(_FIELD)
            tags = [
                ref.strip()[len("tag: "):]
                for ref in refs.split(",")
                if ref.strip().startswith("tag: ")
            ]
            commits.append(
                {
                    "hash": commit_hash,
                    "date": datetime.fromisoformat(date),
                    "message": subject,
                    "tags": tags,
                }
            )
        return commits

    def diff(self, old: str, new: str, path: str | None = None) -> str:
        args = ["diff", old, new]
        if path:
            args.extend(["--", path])
        return self._run_command(args).stdout

    def file_exists_at(self, ref: str, path: str) -> bool:
        result = self._run_command(["cat-file", "-e", f"{ref}:{path}"], check=False)
        return result.returncode == 0

    def show_file(self, ref: str, path: str) -> bytes:
        return self._run_command(["show", f"{ref}:{path}"], text=False).stdout

    def ls_tree(self, ref: str = "HEAD") -> list[str]:
        result = self._run_command(["ls-tree", "-r", "--name-only", ref])
        return [line for line in result.stdout.splitlines() if line]

    def ls_files(self) -> list[str]:
        result = self._run_command(["ls-files"])
        return [line for line in result.stdout.splitlines() if line]

    def files_ever_added(self, ref: str = "HEAD") -> set[str]:
        result = self._run_command(
            ["log", ref, "--diff-filter=A", "--name-only", "--format="]
        )
        return {line for line in result.stdout.splitlines() if line.strip()}

    def rm_cached(self, paths: list[str]):
        self._run_command(["rm", "-r", "--cached", "--quiet", "--ignore-unmatch", "--"] + paths)

    def gc(self):
        self._run_command(["gc", "--auto", "--quiet"])

    def commit_count(self) -> int:
        if not self.has_commits():
            return 0
        return int(self._run_command(["rev-list", "--count", "HEAD"]).stdout.strip())
