"""
Task executors and status probes used by the retry loop.

A TaskExecutor hands a prompt to an external coding agent and blocks until it
finishes. A StatusProbe inspects the agent's working copy afterwards. Both are
plain synchronous calls; run them on a dedicated thread or process if other
work must continue meanwhile.
"""

import logging
import os
import re
import shlex
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple

import psutil

from .exceptions import ExecutorError

logger = logging.getLogger(__name__)

DEFAULT_COMMAND = "claude --dangerously-skip-permissions -p {prompt}"
OUTPUT_PREVIEW = 500
PLACEHOLDER = re.compile(r"\{(prompt|agent)\}")


class TestStatus(str, Enum):
    __test__ = False

    PASS = "pass"
    FAIL = "fail"
    UNKNOWN = "unknown"


@dataclass
class AgentStatusReport:
    """What a probe observed in the agent's working copy."""
    test_status: TestStatus = TestStatus.UNKNOWN
    has_uncommitted_changes: bool = False
    executor_running: bool = False

    @property
    def is_complete(self) -> bool:
        return self.test_status is TestStatus.PASS and not self.has_uncommitted_changes


class TaskExecutor(ABC):
    @abstractmethod
    def run(self, agent: str, prompt: str) -> None:
        """Run prompt for agent, blocking until done. Raises ExecutorError on failure."""


class StatusProbe(ABC):
    @abstractmethod
    def check(self, agent: str) -> AgentStatusReport:
        """Report test status and uncommitted changes for agent."""


class CommandExecutor(TaskExecutor):
    """
    Runs a command template in the agent's working copy.

    ``{prompt}`` and ``{agent}`` placeholders in the template are substituted
    per argument after shell-style splitting, so the prompt is passed as a
    single argument without any quoting.
    """

    def __init__(self, workdir: str, command: str = DEFAULT_COMMAND, timeout: Optional[float] = None):
        self.workdir = str(Path(workdir).expanduser())
        self.command = command
        self.timeout = timeout

    def build_args(self, agent: str, prompt: str) -> List[str]:
        values = {"prompt": prompt, "agent": agent}
        return [
            PLACEHOLDER.sub(lambda m: values[m.group(1)], arg)
            for arg in shlex.split(self.command)
        ]

    def run(self, agent: str, prompt: str) -> None:
        args = self.build_args(agent, prompt)
        logger.info(f"Running {args[0]} for {agent} in {self.workdir}")
        try:
            completed = subprocess.run(
                args,
                cwd=self.workdir,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError as e:
            raise ExecutorError(f"executor command not found: {args[0]}") from e
        except subprocess.TimeoutExpired as e:
            raise ExecutorError(f"executor timed out after {self.timeout}s") from e

        output = (completed.stdout or "").strip()
        if len(output) > OUTPUT_PREVIEW:
            logger.info(f"Output (truncated): {output[:OUTPUT_PREVIEW]}...")
        elif output:
            logger.info(f"Output: {output}")

        if completed.returncode != 0:
            raise ExecutorError(
                f"{args[0]} exited with status {completed.returncode}",
                returncode=completed.returncode,
            )


# Marker file -> test command, checked in order.
TEST_RUNNERS: List[Tuple[Tuple[str, ...], List[str]]] = [
    (("vendor/bin/pest",), ["vendor/bin/pest", "--no-coverage"]),
    (("package.json",), ["npm", "test"]),
    (("go.mod",), ["go", "test", "./..."]),
    (("pytest.ini", "pyproject.toml"), ["pytest"]),
    (("Cargo.toml",), ["cargo", "test"]),
]


class WorkingCopyProbe(StatusProbe):
    """Checks git status and runs the detected test suite in a local checkout."""

    def __init__(self, workdir: str, executor_name: str = "claude", test_timeout: Optional[float] = None):
        self.workdir = Path(workdir).expanduser()
        self.executor_name = executor_name
        self.test_timeout = test_timeout

    def has_uncommitted_changes(self) -> bool:
        try:
            completed = subprocess.run(
                ["git", "status", "--porcelain"],
                cwd=str(self.workdir),
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
                text=True,
            )
        except OSError as e:
            logger.warning(f"git status failed in {self.workdir}: {e}")
            return False
        return bool(completed.stdout.strip())

    def detect_test_command(self) -> Optional[List[str]]:
        for markers, command in TEST_RUNNERS:
            if any((self.workdir / marker).exists() for marker in markers):
                return command
        return None

    def run_tests(self) -> TestStatus:
        command = self.detect_test_command()
        if command is None:
            return TestStatus.UNKNOWN
        try:
            completed = subprocess.run(
                command,
                cwd=str(self.workdir),
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=self.test_timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning(f"Test run {' '.join(command)} failed to complete: {e}")
            return TestStatus.FAIL
        return TestStatus.PASS if completed.returncode == 0 else TestStatus.FAIL

    def executor_running(self) -> bool:
        for proc in psutil.process_iter(["name", "cmdline"]):
            try:
                cmdline = proc.info.get("cmdline") or []
                name = proc.info.get("name") or ""
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
            if proc.pid == os.getpid():
                continue
            if name == self.executor_name or any(
                os.path.basename(part) == self.executor_name for part in cmdline[:2]
            ):
                return True
        return False

    def check(self, agent: str) -> AgentStatusReport:
        report = AgentStatusReport(
            test_status=self.run_tests(),
            has_uncommitted_changes=self.has_uncommitted_changes(),
            executor_running=self.executor_running(),
        )
        logger.debug(f"Probe for {agent}: {report}")
        return report
