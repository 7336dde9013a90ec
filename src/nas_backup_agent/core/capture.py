"""Capture executor: run one external imaging/copy tool and judge its outcome.

Exit codes are interpreted through a per-tool policy table. Each tool has
the set of codes that mean success and, for tools that have one, a set of
"partial" codes whose output is still usable. Free-text output is only a
secondary signal: see classify_output().
"""

import logging
import os
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from .. import __util__
from .models import CaptureResult

logger = logging.getLogger(__name__)


class ExitClass(Enum):
    """Classification of a tool exit code."""

    OK = "ok"
    PARTIAL = "partial"
    FAILED = "failed"

    @property
    def success(self) -> bool:
        return self is not ExitClass.FAILED


@dataclass(frozen=True)
class ToolPolicy:
    """How to read the exit code and output of one tool.

    Attributes:
        name: Executable name (without platform suffixes)
        ok_codes: Exit codes meaning full success
        partial_codes: Exit codes meaning a usable but incomplete artifact
        success_phrases: Output phrases a successful run prints
    """

    name: str
    ok_codes: frozenset = frozenset({0})
    partial_codes: frozenset = frozenset()
    success_phrases: tuple = ()


TOOL_POLICIES: dict[str, ToolPolicy] = {
    policy.name: policy
    for policy in (
        # robocopy: bit flags 1-4 mean files copied/extra/mismatched, 8+ errors
        ToolPolicy("robocopy", ok_codes=frozenset(range(0, 8))),
        # rsync 24: some source files vanished before they could be copied
        ToolPolicy("rsync", partial_codes=frozenset({24})),
        # GNU tar 1: some files changed while being read
        ToolPolicy("tar", partial_codes=frozenset({1})),
        ToolPolicy("partclone", success_phrases=("Cloned successfully",)),
        ToolPolicy("dd"),
        ToolPolicy("wimlib-imagex"),
        ToolPolicy("hdiutil", success_phrases=("created:",)),
    )
}


def tool_key(tool: str) -> str:
    """Normalize an executable path to its policy key.

    partclone.ext4 -> partclone, C:\\Windows\\System32\\Robocopy.exe -> robocopy
    """
    name = Path(tool.replace("\\", "/")).name.lower()
    if name.endswith(".exe"):
        name = name[:-4]
    if name.startswith("partclone."):
        name = "partclone"
    return name


def get_policy(tool: str) -> ToolPolicy:
    key = tool_key(tool)
    return TOOL_POLICIES.get(key, ToolPolicy(key))


def classify_exit_code(tool: str, code: int) -> ExitClass:
    """Classify ``code`` for ``tool``. Pure function of its arguments."""
    if code == 0:
        return ExitClass.OK
    policy = get_policy(tool)
    if code in policy.ok_codes:
        return ExitClass.OK
    if code in policy.partial_codes:
        return ExitClass.PARTIAL
    return ExitClass.FAILED


def classify_output(tool: str, text: str) -> Optional[bool]:
    """Look for a documented success phrase in the tool output.

    This heuristic is known to produce false negatives (localized tool
    output, truncated logs) and false positives (phrases echoed in error
    context). It never decides success on its own.

    Returns:
        True if a phrase was found, False if none was, None if the tool has
        no phrase list
    """
    phrases = get_policy(tool).success_phrases
    if not phrases:
        return None
    lowered = (text or "").lower()
    return any(phrase.lower() in lowered for phrase in phrases)


@dataclass
class CaptureCommand:
    """One capture to run.

    Attributes:
        identifier: Partition or folder the capture is attributed to
        argv: Argument vector of the capture tool
        artifact: Path of the produced artifact (file or directory)
        before: Commands run before the capture (must all succeed)
        after: Commands always run after the capture
        efi: The capture concerns an EFI system partition
    """

    identifier: str
    argv: list[str]
    artifact: Optional[str] = None
    before: list[list[str]] = field(default_factory=list)
    after: list[list[str]] = field(default_factory=list)
    efi: bool = False

    @property
    def tool(self) -> str:
        return self.argv[0]


def artifact_size(path: Optional[str]) -> Optional[int]:
    """Size of a file, or total size of a directory tree."""
    if not path:
        return None
    p = Path(path)
    try:
        if p.is_file():
            return p.stat().st_size
        if p.is_dir():
            total = 0
            for root, _dirs, files in os.walk(p):
                for name in files:
                    try:
                        total += (Path(root) / name).stat().st_size
                    except OSError:
                        continue
            return total
    except OSError as e:
        logger.debug("Cannot stat artifact %s: %s", path, e)
    return None


class CaptureExecutor:
    """Run capture commands with a hard timeout and the partial policy."""

    def __init__(
        self,
        runner: Callable[..., __util__.CommandResult] = __util__.run_command,
        command_timeout: float = 60,
    ) -> None:
        self.runner = runner
        self.command_timeout = command_timeout

    def capture(self, command: CaptureCommand, timeout: float) -> CaptureResult:
        """Run one capture and return its result.

        Tool failures become a failed CaptureResult so the caller can carry on
        with the next partition. A timeout is not a tool failure: the tool has
        been killed and StageTimeoutError propagates.

        Raises:
            StageTimeoutError: If the capture exceeded ``timeout``
        """
        start = time.monotonic()
        logger.info("Capturing %s with %s", command.identifier, tool_key(command.tool))
        try:
            for step in command.before:
                result = self.runner(step, timeout=self.command_timeout)
                if not result.success:
                    raise __util__.PartitionCaptureError(
                        f"preparation step {tool_key(step[0])} failed "
                        f"(exit code {result.returncode}): {result.stderr.strip()[:300]}"
                    )
            result = self.runner(command.argv, timeout=timeout)
            outcome = self._interpret(command, result)
        except (__util__.PartitionCaptureError, __util__.ToolMissingError) as e:
            outcome = CaptureResult(
                identifier=command.identifier,
                success=False,
                error=str(e),
                efi=command.efi,
            )
        finally:
            self._run_after(command)

        outcome = replace(outcome, duration=time.monotonic() - start)
        if outcome.success:
            logger.info(
                "Captured %s (%s bytes)", command.identifier, outcome.artifact_size
            )
        else:
            logger.error("Capture of %s failed: %s", command.identifier, outcome.error)
        return outcome

    def _interpret(
        self, command: CaptureCommand, result: __util__.CommandResult
    ) -> CaptureResult:
        exit_class = classify_exit_code(command.tool, result.returncode)
        phrase_found = classify_output(command.tool, result.output)

        if exit_class is ExitClass.FAILED:
            detail = (result.stderr or result.stdout).strip().splitlines()
            message = f"{tool_key(command.tool)} exited with code {result.returncode}"
            if detail:
                message += f": {detail[-1][:300]}"
            return CaptureResult(
                identifier=command.identifier,
                success=False,
                error=message,
                efi=command.efi,
            )

        if exit_class is ExitClass.PARTIAL:
            logger.warning(
                "%s finished with partial-success code %d for %s",
                tool_key(command.tool),
                result.returncode,
                command.identifier,
            )
        if phrase_found is False:
            logger.warning(
                "%s reported success for %s but printed no known success phrase",
                tool_key(command.tool),
                command.identifier,
            )

        return CaptureResult(
            identifier=command.identifier,
            success=True,
            artifact_path=command.artifact,
            artifact_size=artifact_size(command.artifact),
            efi=command.efi,
        )

    def _run_after(self, command: CaptureCommand) -> None:
        for step in command.after:
            try:
                result = self.runner(step, timeout=self.command_timeout)
                if not result.success:
                    logger.warning(
                        "Cleanup step %s failed with exit code %d",
                        tool_key(step[0]),
                        result.returncode,
                    )
            except __util__.BackupError as e:
                logger.warning("Cleanup step %s failed: %s", tool_key(step[0]), e)
