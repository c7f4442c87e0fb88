"""
Failure monitoring loop.

The monitor polls the cluster for failed tasks, remembers recently seen
task IDs so each failure is handled at most once, and routes fresh
failures to the reporter instances selected by task labels.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from complainer.failure import Failure
from complainer.labels import DEFAULT_NAME, Labels
from complainer.matcher import NoopMatcher
from complainer.mesos import Cluster, ClusterError
from complainer.reporters import Reporter
from complainer.uploaders import Uploader, UploaderError


logger = logging.getLogger(__name__)

# How long a seen task ID is remembered
RETENTION = timedelta(minutes=1)


@dataclass
class RunSummary:
    """Outcome of a single monitor run."""

    failures: int = 0
    reported: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


class Monitor:
    """Routes failed tasks to the configured reporters."""

    def __init__(
        self,
        cluster: Cluster,
        uploader: Uploader,
        reporters: Dict[str, Reporter],
        name: str = DEFAULT_NAME,
        matcher=None,
        implicit_defaults: bool = True,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.name = name
        self.cluster = cluster
        self.uploader = uploader
        self.reporters = reporters
        self.matcher = matcher or NoopMatcher()
        self.implicit_defaults = implicit_defaults
        self.clock = clock or (lambda: datetime.now(timezone.utc))

        self.recent: Dict[str, datetime] = {}
        self.cold_start = True
        self._error: Optional[Exception] = None
        self._lock = threading.Lock()

    @property
    def error(self) -> Optional[Exception]:
        """Error of the last cluster read, None when it succeeded."""
        with self._lock:
            return self._error

    def _set_error(self, error: Optional[Exception]) -> None:
        with self._lock:
            self._error = error

    def run(self) -> RunSummary:
        """
        Do one pass across failed tasks and report new failures.

        The first successful pass only records what is already failed, so
        a restart does not report old failures again.

        Raises:
            ClusterError: If failures cannot be read from the cluster.
        """
        try:
            failures = self.cluster.failures()
        except ClusterError as exc:
            self._set_error(exc)
            raise

        self._set_error(None)

        first = self.cold_start
        summary = RunSummary(failures=len(failures))

        for failure in failures:
            if not self.check_failure(failure, first):
                continue

            try:
                if self.process_failure(failure, summary):
                    summary.reported.append(failure.id)
                else:
                    summary.skipped.append(failure.id)
            except (ClusterError, UploaderError) as exc:
                logger.error("Error reporting failure of %s: %s", failure.id, exc)
                summary.errors.append(f"{failure.id}: {exc}")

        self.cleanup_recent()
        self.cold_start = False

        return summary

    def check_failure(self, failure: Failure, first: bool) -> bool:
        """
        Decide whether a failure should be reported now.

        The task ID is recorded even when the failure is not reported, so
        it is never considered again while it stays in the window.
        """
        if not self.matcher.match(failure.framework):
            return False

        if failure.id in self.recent:
            return False

        self.recent[failure.id] = failure.finished

        if self.clock() - failure.finished > RETENTION / 2:
            return False

        if first:
            return False

        return True

    def process_failure(self, failure: Failure, summary: Optional[RunSummary] = None) -> bool:
        """
        Send a failure to every reporter instance selected by its labels.

        Returns:
            False when no reporter instance is configured for the failure.

        Raises:
            ClusterError: If sandbox log URLs cannot be resolved.
            UploaderError: If logs cannot be uploaded.
        """
        labels = Labels(self.name, failure.labels, implicit_defaults=self.implicit_defaults)

        targets = [
            (reporter_name, instance)
            for reporter_name in self.reporters
            for instance in labels.instances(reporter_name)
        ]
        if not targets:
            logger.info("Skipping %s", failure)
            return False

        logger.info("Reporting %s", failure)

        stdout_url, stderr_url = self.cluster.logs(failure)
        stdout_url, stderr_url = self.uploader.upload(failure, stdout_url, stderr_url)

        for reporter_name, instance in targets:
            reporter = self.reporters[reporter_name]
            config = labels.config_provider(reporter_name, instance)
            try:
                reporter.report(failure, config, stdout_url, stderr_url)
            except Exception as exc:
                logger.error(
                    "Cannot generate report with %s [instance=%s] for task with ID %s: %s",
                    reporter_name, instance, failure.id, exc,
                )
                if summary is not None:
                    summary.errors.append(f"{failure.id} {reporter_name}[{instance}]: {exc}")

        return True

    def cleanup_recent(self) -> int:
        """Forget task IDs older than the retention period. Returns the count removed."""
        now = self.clock()
        expired = [task_id for task_id, finished in self.recent.items() if now - finished > RETENTION]
        for task_id in expired:
            del self.recent[task_id]
        return len(expired)
