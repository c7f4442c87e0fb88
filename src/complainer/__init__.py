"""
complainer - report failed Mesos tasks.

Watches a Mesos cluster for failed tasks and reports each new failure to
the configured reporters:
- Leader discovery and failed task extraction from master state
- Deduplication of failures across polls
- Framework allow/deny filtering
- Label-driven per-task reporter configuration
- Log archival to S3 and delivery to Slack, Discord, webhooks, email and files
"""

from complainer._version import __version__

from complainer.failure import Failure
from complainer.labels import Labels
from complainer.matcher import NoopMatcher, RegexMatcher, build_matcher
from complainer.mesos import Cluster, ClusterError, ExecutorNotFoundError, NoLeaderError
from complainer.monitor import Monitor, RunSummary

__all__ = [
    # Version
    "__version__",
    # Model
    "Failure",
    # Labels
    "Labels",
    # Matching
    "NoopMatcher",
    "RegexMatcher",
    "build_matcher",
    # Mesos
    "Cluster",
    "ClusterError",
    "ExecutorNotFoundError",
    "NoLeaderError",
    # Monitor
    "Monitor",
    "RunSummary",
]
