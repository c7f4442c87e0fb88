"""
Mesos utilities for reading cluster state.

This module provides:
- Leader discovery across a list of Mesos masters
- Extraction of failed tasks from the leader's state snapshot
- Resolution of sandbox stdout/stderr download URLs from agent state

State is fetched over HTTP with a bounded timeout. A master that cannot
be reached or returns malformed state is skipped; nothing is retried.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

import requests

from complainer.failure import EPOCH, Failure


logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

DEFAULT_TIMEOUT_SECONDS = 30.0

# Agent HTTP port serving /state and sandbox files
SLAVE_PORT = 5051

# Terminal task states worth complaining about
FAILED_STATES = {"TASK_FAILED", "TASK_ERROR", "TASK_LOST"}

UNKNOWN_STATE = "UNKNOWN"


# =============================================================================
# Errors
# =============================================================================

class ClusterError(Exception):
    """Raised when cluster state cannot be read."""


class NoLeaderError(ClusterError):
    """Raised when none of the masters reports itself as the leader."""

    def __init__(self, message: str = "mesos master not found"):
        super().__init__(message)


class ExecutorNotFoundError(ClusterError):
    """Raised when the agent has no executor for a failed task."""


# =============================================================================
# Cluster
# =============================================================================

class Cluster:
    """
    A Mesos cluster reachable through one or more masters.

    Example:
        >>> cluster = Cluster(["http://master1:5050", "http://master2:5050/"])
        >>> cluster.masters
        ['http://master1:5050', 'http://master2:5050']
        >>> failures = cluster.failures()
    """

    def __init__(
        self,
        masters: Iterable[str],
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize the cluster.

        Args:
            masters: Master base URLs, tried in order.
            timeout: Timeout in seconds for every state request.
            session: HTTP session to use. A new one is created if None.

        Raises:
            ValueError: If no usable master URL remains after cleanup.
        """
        self.masters = clean_master_urls(masters)
        if not self.masters:
            raise ValueError("No Mesos master URL left after cleanup, check the masters setting.")
        self.timeout = timeout
        self.session = session or requests.Session()

    def failures(self) -> List[Failure]:
        """
        Get failed tasks known to the leading master.

        Masters are queried one at a time and the first one whose state
        reports itself as leader is used. Unreachable masters and masters
        returning malformed state (including a leader whose snapshot does
        not have the expected shape) are logged and skipped.

        Returns:
            List of failures found in completed tasks.

        Raises:
            NoLeaderError: If no master answered as the leader.
        """
        for master in self.masters:
            try:
                state = self._get_json(f"{master}/master/state")
            except ClusterError as exc:
                logger.warning("Error fetching state from %s: %s", master, exc)
                continue

            if not isinstance(state, dict):
                logger.warning("Error decoding state from %s: not a JSON object", master)
                continue

            if state.get("pid") != state.get("leader"):
                logger.debug("Master %s is not the leader, trying next", master)
                continue

            try:
                return failures_from_state(state)
            except (AttributeError, TypeError, KeyError, ValueError) as exc:
                logger.warning("Error decoding state from %s: malformed snapshot: %s", master, exc)
                continue

        raise NoLeaderError()

    def logs(self, failure: Failure) -> Tuple[str, str]:
        """
        Get sandbox stdout and stderr download URLs for a failed task.

        Only the agent that ran the task is queried.

        Args:
            failure: Failure to look up.

        Returns:
            Tuple of (stdout_url, stderr_url).

        Raises:
            ClusterError: If the agent state cannot be read.
            ExecutorNotFoundError: If the agent knows no executor for the task.
        """
        state = self._get_json(f"http://{failure.slave}:{SLAVE_PORT}/state")
        if not isinstance(state, dict):
            raise ClusterError(f"Malformed state from agent {failure.slave}")

        try:
            directory = find_executor_directory(state, failure.id)
        except (AttributeError, TypeError) as exc:
            raise ClusterError(f"Malformed state from agent {failure.slave}: {exc}") from exc

        if directory is None:
            raise ExecutorNotFoundError(f"cannot find executor by ID ({failure.id})")

        return (
            sandbox_url(failure.slave, directory, "stdout"),
            sandbox_url(failure.slave, directory, "stderr"),
        )

    def _get_json(self, url: str) -> Any:
        """GET a URL and decode its JSON body."""
        try:
            response = self.session.get(url, timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except requests.RequestException as exc:
            raise ClusterError(f"request to {url} failed: {exc}") from exc
        except ValueError as exc:
            raise ClusterError(f"invalid JSON from {url}: {exc}") from exc

    def __repr__(self) -> str:
        return f"Cluster(masters={self.masters})"


# =============================================================================
# State Parsing
# =============================================================================

def failures_from_state(state: Dict[str, Any]) -> List[Failure]:
    """
    Extract failed tasks from a leading master's state snapshot.

    Tasks without any status history are still reported, with an
    UNKNOWN state and epoch timestamps.

    Args:
        state: Decoded /master/state JSON.

    Returns:
        List of failures in snapshot order.
    """
    hosts = {
        slave.get("id"): slave.get("hostname", "")
        for slave in state.get("slaves") or []
    }

    failures = []
    for framework in state.get("frameworks") or []:
        framework_name = framework.get("name", "")

        for task in framework.get("completed_tasks") or []:
            if task.get("state") not in FAILED_STATES:
                continue

            labels = {
                str(label.get("key")): str(label.get("value", ""))
                for label in task.get("labels") or []
            }

            statuses = task.get("statuses") or []
            if statuses:
                status_state = statuses[-1].get("state", UNKNOWN_STATE)
                started = _from_timestamp(statuses[0].get("timestamp"))
                finished = _from_timestamp(statuses[-1].get("timestamp"))
            else:
                status_state = UNKNOWN_STATE
                started = EPOCH
                finished = EPOCH

            failures.append(
                Failure(
                    id=task.get("id", ""),
                    name=task.get("name", ""),
                    slave=hosts.get(task.get("slave_id"), ""),
                    framework=framework_name,
                    image=_docker_image(task),
                    state=status_state,
                    started=started,
                    finished=finished,
                    labels=labels,
                )
            )

    return failures


def find_executor_directory(state: Dict[str, Any], executor_id: str) -> Optional[str]:
    """
    Find the sandbox directory of an executor in agent state.

    Searches live and completed executors of live and completed frameworks.

    Returns:
        Sandbox directory, or None when no executor matches.
    """
    frameworks = (state.get("frameworks") or []) + (state.get("completed_frameworks") or [])

    for framework in frameworks:
        executors = (framework.get("executors") or []) + (framework.get("completed_executors") or [])
        for executor in executors:
            if executor.get("id") == executor_id:
                return executor.get("directory", "")

    return None


def sandbox_url(host: str, directory: str, filename: str) -> str:
    """
    Build the agent download URL for a sandbox file.

    Example:
        >>> sandbox_url("agent1", "/var/sandbox/run", "stdout")
        'http://agent1:5051/files/download?path=/var/sandbox/run/stdout'
    """
    return f"http://{host}:{SLAVE_PORT}/files/download?path={directory}/{filename}"


def clean_master_urls(urls: Iterable[str]) -> List[str]:
    """
    Clean up a list of master URLs.

    Entries are stripped, empty entries are dropped and trailing slashes
    are removed.

    Example:
        >>> clean_master_urls([" http://m1/ ", "", "http://m2/path/"])
        ['http://m1', 'http://m2/path']
    """
    clean = []
    for url in urls:
        trimmed = str(url).strip()
        if not trimmed:
            continue
        clean.append(trimmed.rstrip("/"))
    return clean


def _from_timestamp(value: Any) -> datetime:
    try:
        return datetime.fromtimestamp(int(float(value)), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return EPOCH


def _docker_image(task: Dict[str, Any]) -> str:
    container = task.get("container") or {}
    docker = container.get("docker") or {}
    return docker.get("image", "")
