"""
Retry controller: keep an agent working until its task is done.

Each attempt marks the agent as working, checks the event log for rebase
signals, hands a prompt to the executor and then probes the working copy.
The run ends as soon as tests pass with nothing left uncommitted, or fails
after max_attempts.

Coordination is best-effort. If the agent has no repository, or the
namespace cannot be initialized, the loop still runs without it.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from .agents import AgentDirectory, HistoryLog, HistoryRecord
from .exceptions import AgentBusError, MaxAttemptsExceeded, NotFoundError
from .executors import AgentStatusReport, StatusProbe, TaskExecutor, TestStatus
from .state import AgentStatus

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 10
DEFAULT_SETTLE_DELAY = 2.0
DEFAULT_BACKOFF_DELAY = 3.0

REBASE_NOTE = (
    "\n\nIMPORTANT: Another agent has pushed changes. "
    "Reconcile with upstream (run 'git pull --rebase') before continuing."
)

CONTINUE_TEMPLATE = """Continue working. Previous status:
- Tests: {tests}
- Uncommitted changes: {uncommitted}

Original task: {task}

Keep going until tests pass and all changes are committed."""


class LoopState(str, Enum):
    WORKING = "working"
    CHECKING_REBASE = "checking_rebase"
    EXECUTING = "executing"
    EVALUATING = "evaluating"
    DONE = "done"
    BLOCKED = "blocked"


@dataclass
class TaskResult:
    completed: bool = False
    tests_passed: bool = False
    has_changes: bool = False
    attempts: int = 0
    error: str = ""


def build_prompt(task: str, attempt: int, last_status: Optional[AgentStatusReport]) -> str:
    """Prompt for an attempt. Later attempts recap the last observed status."""
    if attempt <= 1:
        return task
    last_status = last_status or AgentStatusReport()
    return CONTINUE_TEMPLATE.format(
        tests=last_status.test_status.value,
        uncommitted=str(last_status.has_uncommitted_changes).lower(),
        task=task,
    )


class RetryController:
    """
    Drives one agent through repeated attempts at a task.

    Example:
        controller = RetryController(
            "fix-bug",
            executor=CommandExecutor("~/src/repo"),
            probe=WorkingCopyProbe("~/src/repo"),
            store=CoordinationStore.from_config(),
            agents=AgentDirectory(config.AGENTBUS_HOME),
        )
        result = controller.run_until_done("Fix the failing tests")
    """

    def __init__(
        self,
        name: str,
        executor: TaskExecutor,
        probe: StatusProbe,
        store=None,
        agents: Optional[AgentDirectory] = None,
        history: Optional[HistoryLog] = None,
        repo_url: Optional[str] = None,
        max_attempts: Optional[int] = DEFAULT_MAX_ATTEMPTS,
        settle_delay: float = DEFAULT_SETTLE_DELAY,
        backoff_delay: float = DEFAULT_BACKOFF_DELAY,
        sleep: Optional[Callable[[float], None]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.name = name
        self.executor = executor
        self.probe = probe
        self.store = store
        self.agents = agents
        self.history = history
        self.repo_url = repo_url
        self.max_attempts = max_attempts if max_attempts and max_attempts > 0 else DEFAULT_MAX_ATTEMPTS
        self.settle_delay = settle_delay
        self.backoff_delay = backoff_delay
        self.sleep = sleep or time.sleep
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.state = LoopState.WORKING

    def _transition(self, state: LoopState) -> None:
        logger.debug(f"{self.name}: {self.state.value} -> {state.value}")
        self.state = state

    def _resolve_repo(self) -> Optional[str]:
        if self.repo_url:
            return self.repo_url
        if self.agents is None:
            return None
        try:
            return self.agents.load(self.name).repo or None
        except NotFoundError:
            logger.debug(f"No agent record for {self.name}, running without coordination")
        except AgentBusError as e:
            logger.warning(f"Could not load agent record for {self.name}: {e}")
        return None

    def _setup_coordination(self) -> Optional[str]:
        if self.store is None:
            return None
        repo_url = self._resolve_repo()
        if not repo_url:
            return None
        try:
            self.store.initialize(repo_url)
        except AgentBusError as e:
            logger.warning(f"Coordination init failed (continuing without): {e}")
            return None
        return repo_url

    def _set_status(self, repo_url: Optional[str], status: AgentStatus) -> None:
        if not repo_url:
            return
        try:
            self.store.state.update(repo_url, self.name, status)
        except AgentBusError as e:
            logger.warning(f"Could not publish {status.value} state for {self.name}: {e}")

    def _rebase_needed(self, repo_url: Optional[str], since: datetime) -> bool:
        if not repo_url:
            return False
        try:
            return self.store.events.has_rebase_needed(repo_url, self.name, since)
        except AgentBusError as e:
            logger.warning(f"Could not check for rebase signals: {e}")
            return False

    def _finish(self, repo_url: Optional[str], started: datetime, attempts: int) -> None:
        self._set_status(repo_url, AgentStatus.DONE)
        if repo_url:
            try:
                self.store.claims.release_all_for_agent(repo_url, self.name)
            except AgentBusError as e:
                logger.warning(f"Could not release claims for {self.name}: {e}")
        if self.history is not None:
            record = HistoryRecord(
                name=self.name,
                repo=repo_url or "",
                created=started.isoformat(),
                completed_at=self.clock().isoformat(),
                result="success",
                attempts=attempts,
            )
            try:
                self.history.save(record)
            except AgentBusError as e:
                logger.warning(f"Could not save history for {self.name}: {e}")

    def run_until_done(self, task: str) -> TaskResult:
        """
        Run attempts until the task is complete.

        Returns the TaskResult on success. Raises MaxAttemptsExceeded when
        every attempt ran without tests passing on a clean working copy.
        Executor failures are logged and never end the run early.
        """
        result = TaskResult()
        repo_url = self._setup_coordination()
        started = self.clock()
        last_status: Optional[AgentStatusReport] = None

        for attempt in range(1, self.max_attempts + 1):
            result.attempts = attempt
            logger.info(f"Attempt {attempt}/{self.max_attempts} for {self.name}")

            self._transition(LoopState.WORKING)
            self._set_status(repo_url, AgentStatus.WORKING)

            self._transition(LoopState.CHECKING_REBASE)
            task_text = task
            if self._rebase_needed(repo_url, started):
                logger.warning("Rebase needed signal detected, adding to prompt")
                task_text = task + REBASE_NOTE

            prompt = build_prompt(task_text, attempt, last_status)

            self._transition(LoopState.EXECUTING)
            try:
                self.executor.run(self.name, prompt)
            except Exception as e:
                logger.warning(f"Executor error on attempt {attempt}: {e}")

            self._transition(LoopState.EVALUATING)
            self.sleep(self.settle_delay)
            last_status = self.probe.check(self.name)
            logger.info(
                f"Status: tests={last_status.test_status.value} "
                f"uncommitted={last_status.has_uncommitted_changes}"
            )

            result.tests_passed = last_status.test_status is TestStatus.PASS
            result.has_changes = last_status.has_uncommitted_changes

            if last_status.is_complete:
                self._transition(LoopState.DONE)
                result.completed = True
                logger.info(f"Task completed for {self.name} after {attempt} attempt(s)")
                self._finish(repo_url, started, attempt)
                return result

            logger.info("Not done yet, continuing...")
            if attempt < self.max_attempts:
                self.sleep(self.backoff_delay)

        self._transition(LoopState.BLOCKED)
        self._set_status(repo_url, AgentStatus.BLOCKED)
        result.error = "max attempts reached"
        raise MaxAttemptsExceeded(result.attempts, last_status=last_status, result=result)
