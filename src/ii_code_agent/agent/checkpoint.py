"""
Git-backed checkpoints.

Each checkpoint is a branch ``<prefix><session_id>-<turn_index>`` holding one
commit with the working tree as it was at the end of that turn. Checkpointing
is best-effort: every public method reports failure through its return value
and never raises.
"""

import asyncio
import re
from dataclasses import dataclass
from pathlib import Path

import structlog

from ..errors import CheckpointError

logger = structlog.get_logger()

DEFAULT_BRANCH_PREFIX = "ii-checkpoint-"


@dataclass
class GitResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        return self.returncode == 0


@dataclass(frozen=True)
class Checkpoint:
    session_id: str
    turn_index: int
    branch: str
    date: str = ""


class CheckpointStore:
    """Creates, lists and restores per-turn snapshots of a git working tree."""

    def __init__(self, working_dir: str | Path = ".", branch_prefix: str = DEFAULT_BRANCH_PREFIX):
        self.working_dir = Path(working_dir)
        self.branch_prefix = branch_prefix
        self._branch_re = re.compile(rf"^{re.escape(branch_prefix)}(.+)-(\d+)$")
        # Branch each session was on before its first checkpoint
        self._base_branches: dict[str, str] = {}

    async def _git(self, *args: str) -> GitResult:
        try:
            process = await asyncio.create_subprocess_exec(
                "git",
                *args,
                cwd=str(self.working_dir),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, NotADirectoryError) as e:
            return GitResult(returncode=-1, stdout="", stderr=str(e))

        stdout, stderr = await process.communicate()
        return GitResult(
            returncode=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )

    async def _git_checked(self, *args: str) -> GitResult:
        result = await self._git(*args)
        if not result.success:
            raise CheckpointError(f"git {' '.join(args)} failed: {result.stderr.strip()}")
        return result

    def branch_name(self, session_id: str, turn_index: int) -> str:
        return f"{self.branch_prefix}{session_id}-{turn_index}"

    def parse_branch(self, branch: str) -> tuple[str, int] | None:
        """Recover ``(session_id, turn_index)`` from a checkpoint branch name."""
        match = self._branch_re.match(branch)
        if not match:
            return None
        return match.group(1), int(match.group(2))

    async def is_git_repo(self) -> bool:
        result = await self._git("rev-parse", "--is-inside-work-tree")
        return result.success and result.stdout.strip() == "true"

    async def current_branch(self) -> str | None:
        """The checked-out branch, or the commit id when HEAD is detached."""
        result = await self._git("rev-parse", "--abbrev-ref", "HEAD")
        if not result.success:
            return None
        name = result.stdout.strip()
        if name != "HEAD":
            return name

        result = await self._git("rev-parse", "HEAD")
        return result.stdout.strip() if result.success else None

    async def create_checkpoint(
        self,
        session_id: str,
        turn_index: int,
        summary: str | None = None,
    ) -> bool:
        """Snapshot the working tree onto a new checkpoint branch.

        The original branch is checked out again afterwards and the snapshot
        is written back to the working tree unstaged, so in-progress edits
        stay where they were.
        """
        if not await self.is_git_repo():
            return False

        original = await self.current_branch()
        if original is None:
            return False
        if self.parse_branch(original) is None:
            self._base_branches.setdefault(session_id, original)

        branch = self.branch_name(session_id, turn_index)
        message = f"ii-checkpoint: {summary or f'turn {turn_index}'}"
        branch_created = False
        committed = False

        try:
            await self._git_checked("checkout", "-b", branch)
            branch_created = True
            await self._git_checked("add", "-A")
            await self._git_checked("commit", "--allow-empty", "--no-verify", "-m", message)
            committed = True
            await self._git_checked("checkout", original)
            await self._git_checked("restore", f"--source={branch}", "--worktree", "--", ".")
        except CheckpointError as e:
            logger.error("Checkpoint failed", session_id=session_id, turn_index=turn_index, error=str(e))
            if committed:
                # The commit is the only copy of the operator's edits now
                await self._recover_snapshot(original, branch)
            else:
                await self._restore_branch(original, branch if branch_created else None)
            return False

        logger.info("Checkpoint created", session_id=session_id, turn_index=turn_index, branch=branch)
        return True

    async def _restore_branch(self, original: str, stale_branch: str | None) -> None:
        if await self.current_branch() != original:
            result = await self._git("checkout", original)
            if not result.success:
                logger.error("Could not restore original branch", branch=original, error=result.stderr.strip())
                return
        if stale_branch is not None:
            await self._git("branch", "-D", stale_branch)

    async def _recover_snapshot(self, original: str, branch: str) -> None:
        """Put a committed snapshot back in the working tree; the branch is always kept."""
        if await self.current_branch() != original:
            result = await self._git("checkout", original)
            if not result.success:
                logger.error(
                    "Working tree left on checkpoint branch",
                    branch=branch,
                    original=original,
                    error=result.stderr.strip(),
                )
                return

        result = await self._git("restore", f"--source={branch}", "--worktree", "--", ".")
        if not result.success:
            logger.error(
                "Uncommitted changes preserved on checkpoint branch",
                branch=branch,
                error=result.stderr.strip(),
            )

    async def list_checkpoints(self, session_id: str) -> list[Checkpoint]:
        """The session's checkpoints, oldest turn first."""
        result = await self._git("for-each-ref", "--format=%(refname:short)", "refs/heads/")
        if not result.success:
            return []

        checkpoints = []
        for line in result.stdout.splitlines():
            branch = line.strip()
            parsed = self.parse_branch(branch)
            if parsed is None or parsed[0] != session_id:
                continue

            log = await self._git("log", "-1", "--format=%ci", branch)
            checkpoints.append(Checkpoint(
                session_id=session_id,
                turn_index=parsed[1],
                branch=branch,
                date=log.stdout.strip() if log.success else "",
            ))

        return sorted(checkpoints, key=lambda c: c.turn_index)

    async def _checkout_checkpoint(self, session_id: str, turn_index: int, action: str) -> bool:
        target = next(
            (c for c in await self.list_checkpoints(session_id) if c.turn_index == turn_index),
            None,
        )
        if target is None:
            logger.warning("Checkpoint not found", session_id=session_id, turn_index=turn_index)
            return False

        # Direct checkout; uncommitted changes on the current branch are discarded
        try:
            await self._git_checked("checkout", "-f", target.branch)
        except CheckpointError as e:
            logger.error("Checkpoint checkout failed", action=action, branch=target.branch, error=str(e))
            return False

        logger.info("Checked out checkpoint", action=action, session_id=session_id, turn_index=turn_index)
        return True

    async def undo(self, session_id: str, turn_index: int) -> bool:
        return await self._checkout_checkpoint(session_id, turn_index, "undo")

    async def redo(self, session_id: str, turn_index: int) -> bool:
        return await self._checkout_checkpoint(session_id, turn_index, "redo")

    async def cleanup(self, session_id: str) -> bool:
        """Delete every checkpoint branch of the session."""
        checkpoints = await self.list_checkpoints(session_id)
        current = await self.current_branch()

        if current is not None and any(c.branch == current for c in checkpoints):
            base = self._base_branches.get(session_id, "-")
            result = await self._git("checkout", "-f", base)
            if not result.success:
                logger.error("Failed to leave checkpoint branch", error=result.stderr.strip())
                return False

        ok = True
        for checkpoint in checkpoints:
            result = await self._git("branch", "-D", checkpoint.branch)
            if not result.success:
                logger.error("Failed to delete checkpoint branch", branch=checkpoint.branch, error=result.stderr.strip())
                ok = False
        if ok:
            self._base_branches.pop(session_id, None)
        return ok
