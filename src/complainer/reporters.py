"""
Reporters delivering failure notifications.

This module provides:
- Canonical payload generation for webhook notifications
- Human-readable summaries for chat and email reporters
- Slack/Discord/webhook adapters over HTTP
- Email delivery over SMTP
- A file reporter appending formatted lines
- Sentry events and JIRA issues for error tracking
- Jinja2 message templates with access to task label settings

Each reporter gets its static settings from the configuration file and
a per-instance ``config`` callable resolving task label overrides. Label
values take precedence over static settings. Deliveries are attempted
once; a failed delivery raises ReporterError.
"""

from __future__ import annotations

import logging
import os
import smtplib
import socket
import threading
from datetime import datetime, timezone
from email.message import EmailMessage
from typing import Any, Dict, List, Optional

import requests
import sentry_sdk
from jira import JIRA, JIRAError
from jinja2 import Environment, StrictUndefined, TemplateError

from complainer.config import split_list, to_bool, to_positive_float
from complainer.failure import Failure
from complainer.labels import ConfigProvider


logger = logging.getLogger(__name__)


REPORTER_TYPES = {"file", "slack", "discord", "webhook", "email", "sentry", "jira"}
EVENT_TASK_FAILED = "task_failed"
SCHEMA_VERSION = "v1"

DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_FILE_PATH = "/dev/stderr"
DEFAULT_FILE_FORMAT = (
    "Task {{ failure.name }} ({{ failure.id }}) died with status {{ failure.state }}:\n"
    "  * {{ stdout_url }}\n"
    "  * {{ stderr_url }}\n"
)

DEFAULT_SENTRY_FORMAT = "Task {{ failure.name }} died with status {{ failure.state }}"

_TEMPLATE_ENV = Environment(keep_trailing_newline=True, undefined=StrictUndefined)


class ReporterError(Exception):
    """Raised when a notification cannot be delivered."""


class ReporterConfigError(ValueError):
    """Raised when reporter configuration is invalid."""


# =============================================================================
# Templates
# =============================================================================

def compile_template(reporter: str, setting: str, source: str):
    """
    Compile a Jinja2 message template.

    Templates see ``failure``, ``config`` (the per-instance label lookup,
    e.g. ``{{ config("channel") }}``), ``stdout_url``, ``stderr_url`` and
    ``nl`` (a newline). Undefined names fail when the template is filled.

    Raises:
        ReporterConfigError: If the template does not parse.
    """
    try:
        return _TEMPLATE_ENV.from_string(source)
    except TemplateError as exc:
        raise ReporterConfigError(
            f"Reporter '{reporter}' has invalid {setting}: {exc}"
        ) from exc


def fill_template(template, failure: Failure, config: ConfigProvider, stdout_url: str, stderr_url: str) -> str:
    """Render a compiled template for one failure."""
    try:
        return template.render(_template_context(failure, config, stdout_url, stderr_url))
    except TemplateError as exc:
        raise ReporterError(f"Error executing template: {exc}") from exc


def _template_context(failure, config, stdout_url, stderr_url) -> Dict[str, Any]:
    return {
        "nl": "\n",
        "config": config,
        "failure": failure,
        "stdout_url": stdout_url,
        "stderr_url": stderr_url,
    }


def _now_iso() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def build_payload(
    failure: Failure,
    stdout_url: str,
    stderr_url: str,
    reporter: Optional[str] = None,
) -> Dict[str, Any]:
    """Build canonical payload for a failed task."""
    return {
        "schema_version": SCHEMA_VERSION,
        "event": EVENT_TASK_FAILED,
        "generated_at": _now_iso(),
        "failure": failure.to_dict(),
        "logs": {
            "stdout": stdout_url,
            "stderr": stderr_url,
        },
        "host": {
            "hostname": socket.gethostname(),
        },
        "meta": {
            "reporter": reporter,
        },
    }


def render_message(failure: Failure, stdout_url: str, stderr_url: str) -> str:
    """Render human-readable message for chat and email reporters."""
    lines = [
        "COMPLAINER ALERT: Task failed",
        f"Task: {failure.name or 'unknown'}",
        f"Task ID: {failure.id or 'unknown'}",
        f"State: {failure.state}",
        f"Agent: {failure.slave or 'unknown'}",
    ]
    if failure.framework:
        lines.append(f"Framework: {failure.framework}")
    if failure.image:
        lines.append(f"Image: {failure.image}")
    lines.append(f"Finished: {failure.finished.isoformat()}")
    lines.append(f"stdout: {stdout_url}")
    lines.append(f"stderr: {stderr_url}")
    return "\n".join(lines)


def render_subject(failure: Failure) -> str:
    """Render concise subject line for email delivery."""
    return f"COMPLAINER ALERT: {failure.name or 'unknown'} died with status {failure.state}"


def post_json(
    url: str,
    payload: Dict[str, Any],
    timeout: float,
    headers: Optional[Dict[str, str]] = None,
) -> int:
    """
    POST a JSON payload once.

    Returns:
        HTTP status code of a successful delivery.

    Raises:
        ReporterError: On transport errors or non-2xx responses.
    """
    request_headers = {"Content-Type": "application/json"}
    request_headers.update(headers or {})

    try:
        response = requests.post(
            url,
            json=payload,
            headers=request_headers,
            timeout=timeout,
        )
    except requests.RequestException as exc:
        raise ReporterError(str(exc)) from exc

    status = response.status_code
    if 200 <= status < 300:
        return status

    body_excerpt = (response.text or "").strip()[:200]
    error = f"HTTP {status}"
    if body_excerpt:
        error = f"{error}: {body_excerpt}"
    raise ReporterError(error)


# =============================================================================
# Reporters
# =============================================================================

class Reporter:
    """Base class for reporters."""

    def __init__(self, name: str, settings: Optional[Dict[str, Any]] = None):
        self.name = name
        self.settings = dict(settings or {})

    def setting(self, config: ConfigProvider, key: str, default: Any = None) -> Any:
        """Get a setting, preferring the task label value over static settings."""
        value = config(key)
        if value:
            return value
        static = self.settings.get(key)
        if static is None or static == "":
            return default
        return static

    def report(
        self,
        failure: Failure,
        config: ConfigProvider,
        stdout_url: str,
        stderr_url: str,
    ) -> None:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"


class FileReporter(Reporter):
    """
    Reporter appending formatted failures to a file.

    The ``format`` setting is a message template (see compile_template).
    """

    def __init__(self, name: str, settings: Optional[Dict[str, Any]] = None):
        super().__init__(name, settings)
        self.path = str(self.settings.get("path") or DEFAULT_FILE_PATH)
        self.format = str(self.settings.get("format") or DEFAULT_FILE_FORMAT)
        self._lock = threading.Lock()
        self._template = compile_template(name, "format", self.format)

    def report(self, failure, config, stdout_url, stderr_url):
        line = fill_template(self._template, failure, config, stdout_url, stderr_url)
        try:
            with self._lock, open(self.path, "a") as f:
                f.write(line)
        except OSError as exc:
            raise ReporterError(f"cannot write to {self.path}: {exc}") from exc


class SlackReporter(Reporter):
    """
    Reporter posting to a Slack incoming webhook.

    Settings (label keys override): hook_url, channel, username,
    icon_emoji, icon_url. Without a hook URL the failure is skipped,
    since not every instance needs to be fully configured.
    """

    OPTIONAL_FIELDS = ("channel", "username", "icon_emoji", "icon_url")

    def report(self, failure, config, stdout_url, stderr_url):
        hook_url = self.setting(config, "hook_url")
        if not hook_url:
            logger.debug("Slack reporter %s has no hook_url, skipping %s", self.name, failure.id)
            return

        message: Dict[str, Any] = {
            "text": (
                f"Task {failure.name} ({failure.slave}) died with status {failure.state} "
                f"[<{stdout_url}|stdout>, <{stderr_url}|stderr>]"
            ),
        }
        for field_name in self.OPTIONAL_FIELDS:
            value = self.setting(config, field_name)
            if value:
                message[field_name] = value

        post_json(hook_url, message, timeout=_timeout(self.settings))


class DiscordReporter(Reporter):
    """Reporter posting to a Discord webhook. Settings: hook_url, username, avatar_url."""

    def report(self, failure, config, stdout_url, stderr_url):
        hook_url = self.setting(config, "hook_url")
        if not hook_url:
            logger.debug("Discord reporter %s has no hook_url, skipping %s", self.name, failure.id)
            return

        message: Dict[str, Any] = {"content": render_message(failure, stdout_url, stderr_url)}
        for field_name in ("username", "avatar_url"):
            value = self.setting(config, field_name)
            if value:
                message[field_name] = value

        post_json(hook_url, message, timeout=_timeout(self.settings))


class WebhookReporter(Reporter):
    """Reporter posting the canonical JSON payload to a URL."""

    def __init__(self, name: str, settings: Optional[Dict[str, Any]] = None):
        super().__init__(name, settings)
        headers = self.settings.get("headers") or {}
        if not isinstance(headers, dict):
            raise ReporterConfigError(f"Reporter '{name}' field 'headers' must be a mapping.")
        self.headers = {str(k): str(v) for k, v in headers.items()}

    def report(self, failure, config, stdout_url, stderr_url):
        url = self.setting(config, "url")
        if not url:
            logger.debug("Webhook reporter %s has no url, skipping %s", self.name, failure.id)
            return

        payload = build_payload(failure, stdout_url, stderr_url, reporter=self.name)
        post_json(url, payload, timeout=_timeout(self.settings), headers=self.headers)


class EmailReporter(Reporter):
    """
    Reporter sending plain text email through SMTP.

    Static settings: smtp_host, smtp_port, smtp_username, smtp_password,
    smtp_starttls, smtp_ssl, from, to. Labels may override ``to`` and
    ``from``.
    """

    def __init__(self, name: str, settings: Optional[Dict[str, Any]] = None):
        super().__init__(name, settings)
        self.smtp_host = str(self.settings.get("smtp_host") or "").strip()
        if not self.smtp_host:
            raise ReporterConfigError(
                f"Reporter '{name}' of type 'email' is missing required field 'smtp_host'."
            )
        try:
            self.smtp_port = int(self.settings.get("smtp_port", 587))
        except (TypeError, ValueError) as exc:
            raise ReporterConfigError(f"Reporter '{name}' has invalid smtp_port.") from exc
        self.smtp_username = self.settings.get("smtp_username")
        self.smtp_password = self.settings.get("smtp_password")
        self.smtp_starttls = to_bool(self.settings.get("smtp_starttls"), True)
        self.smtp_ssl = to_bool(self.settings.get("smtp_ssl"), False)

    def report(self, failure, config, stdout_url, stderr_url):
        recipients = _recipients(self.setting(config, "to"))
        sender = self.setting(config, "from")
        if not recipients or not sender:
            logger.debug("Email reporter %s has no recipients or sender, skipping %s", self.name, failure.id)
            return

        message = EmailMessage()
        message["Subject"] = render_subject(failure)
        message["From"] = sender
        message["To"] = ", ".join(recipients)
        message.set_content(render_message(failure, stdout_url, stderr_url))

        timeout = _timeout(self.settings)
        try:
            if self.smtp_ssl:
                with smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, timeout=timeout) as smtp_conn:
                    self._login(smtp_conn)
                    smtp_conn.send_message(message)
            else:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=timeout) as smtp_conn:
                    smtp_conn.ehlo()
                    if self.smtp_starttls:
                        smtp_conn.starttls()
                        smtp_conn.ehlo()
                    self._login(smtp_conn)
                    smtp_conn.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            raise ReporterError(str(exc)) from exc

    def _login(self, smtp_conn: smtplib.SMTP) -> None:
        if self.smtp_username and self.smtp_password:
            smtp_conn.login(self.smtp_username, self.smtp_password)


class SentryReporter(Reporter):
    """
    Reporter capturing failures as Sentry events.

    Settings: dsn (label ``dsn`` overrides, $SENTRY_DSN is the fallback)
    and format, the message template. One client is kept per DSN.
    """

    def __init__(self, name: str, settings: Optional[Dict[str, Any]] = None):
        super().__init__(name, settings)
        self.dsn = str(self.settings.get("dsn") or os.environ.get("SENTRY_DSN") or "")
        self._template = compile_template(
            name, "format", str(self.settings.get("format") or DEFAULT_SENTRY_FORMAT)
        )
        self._clients: Dict[str, Any] = {}

    def client(self, dsn: str):
        """Get the cached client for a DSN, creating it on first use."""
        client = self._clients.get(dsn)
        if client is None:
            try:
                client = sentry_sdk.Client(dsn=dsn)
            except ValueError as exc:
                raise ReporterError(f"invalid sentry dsn: {exc}") from exc
            self._clients[dsn] = client
        return client

    def report(self, failure, config, stdout_url, stderr_url):
        dsn = self.setting(config, "dsn", self.dsn)
        if not dsn:
            logger.debug("Sentry reporter %s has no dsn, skipping %s", self.name, failure.id)
            return

        extra: Dict[str, Any] = {
            "task.id": failure.id,
            "timings.lifetime": str(failure.finished - failure.started),
            "timings.started": failure.started.isoformat(),
            "timings.finished": failure.finished.isoformat(),
            "logs.stdout": stdout_url,
            "logs.stderr": stderr_url,
        }
        for key, value in failure.labels.items():
            extra[f"labels.{key}"] = value

        event = {
            "message": fill_template(self._template, failure, config, stdout_url, stderr_url),
            "level": "error",
            "server_name": failure.slave,
            "tags": {"task_state": failure.state},
            "extra": extra,
        }

        client = self.client(dsn)
        event_id = client.capture_event(event)
        client.flush(timeout=_timeout(self.settings))
        if event_id is None:
            raise ReporterError(f"sentry did not accept the event for {failure.id}")


class JiraReporter(Reporter):
    """
    Reporter opening JIRA issues for failures.

    Settings: url, username, password, closed_status and fields. ``fields``
    maps JIRA field names to message templates, either as a mapping or as
    ``Name:value;Name:value``, and must name Project, Summary and Issue
    Type. No issue is created while an issue with the same summary is not
    in the closed status.
    """

    REQUIRED_SETTINGS = ("url", "username", "password", "closed_status")
    REQUIRED_FIELDS = ("Project", "Summary", "Issue Type")

    def __init__(self, name: str, settings: Optional[Dict[str, Any]] = None):
        super().__init__(name, settings)
        for key in self.REQUIRED_SETTINGS:
            if not self.settings.get(key):
                raise ReporterConfigError(
                    f"Reporter '{name}' of type 'jira' is missing required field '{key}'."
                )
        self.url = str(self.settings["url"])
        self.username = str(self.settings["username"])
        self.password = str(self.settings["password"])
        self.closed_status = str(self.settings["closed_status"])

        fields = _jira_fields(name, self.settings.get("fields"))
        missing = [field for field in self.REQUIRED_FIELDS if field not in fields]
        if missing:
            raise ReporterConfigError(
                f"Reporter '{name}' fields must include: {', '.join(missing)}."
            )
        self.fields = {
            field: compile_template(name, f"field '{field}'", value)
            for field, value in fields.items()
        }

        self._client = None
        self._field_ids: Dict[str, str] = {}

    def client(self):
        """Connect to JIRA on first use and learn the field IDs."""
        if self._client is None:
            try:
                client = JIRA(
                    server=self.url,
                    basic_auth=(self.username, self.password),
                    timeout=_timeout(self.settings),
                )
                self._field_ids = {
                    str(field["name"]).lower(): field["id"] for field in client.fields()
                }
            except (JIRAError, requests.RequestException) as exc:
                raise ReporterError(f"cannot connect to jira at {self.url}: {exc}") from exc
            self._client = client
        return self._client

    def report(self, failure, config, stdout_url, stderr_url):
        rendered = {
            field: fill_template(template, failure, config, stdout_url, stderr_url)
            for field, template in self.fields.items()
        }

        client = self.client()
        query = (
            f'summary ~ "\\"{_jql_quote(rendered["Summary"])}\\"" '
            f'AND project = "{_jql_quote(rendered["Project"])}" '
            f'AND status != "{_jql_quote(self.closed_status)}"'
        )

        try:
            open_issues = client.search_issues(query, maxResults=1)
            if open_issues:
                logger.info("Issue %s is still open for %s, not creating another", open_issues[0].key, failure.name)
                return
            issue = client.create_issue(fields=self.issue_fields(rendered))
        except JIRAError as exc:
            raise ReporterError(f"could not create issue: {exc.text or exc}") from exc

        logger.info("Created issue %s for %s", issue.key, failure.id)

    def issue_fields(self, rendered: Dict[str, str]) -> Dict[str, Any]:
        """Map rendered field names to the JIRA create-issue payload."""
        fields: Dict[str, Any] = {}
        for name, value in rendered.items():
            field_id = self._field_ids.get(name.lower(), name)
            if field_id == "project":
                fields[field_id] = {"key": value}
            elif field_id in ("issuetype", "priority"):
                fields[field_id] = {"name": value}
            elif field_id == "labels":
                fields[field_id] = value.split()
            else:
                fields[field_id] = value
        return fields


REPORTER_CLASSES = {
    "file": FileReporter,
    "slack": SlackReporter,
    "discord": DiscordReporter,
    "webhook": WebhookReporter,
    "email": EmailReporter,
    "sentry": SentryReporter,
    "jira": JiraReporter,
}


def build_reporters(settings: Dict[str, Dict[str, Any]]) -> Dict[str, Reporter]:
    """
    Build reporters from configuration sections.

    Args:
        settings: Channel name -> settings. ``type`` defaults to the channel
            name, so a section named ``slack`` needs no type.

    Returns:
        Channel name -> reporter. The channel name is the one task labels
        refer to (complainer_<name>_<channel>_...).

    Raises:
        ReporterConfigError: If a type is unknown or a section is invalid.
    """
    reporters: Dict[str, Reporter] = {}
    for name, section in settings.items():
        reporter_type = str(section.get("type") or name).strip().lower()
        if reporter_type not in REPORTER_TYPES:
            raise ReporterConfigError(
                f"Reporter '{name}' has unsupported type '{reporter_type}'. "
                f"Supported: {', '.join(sorted(REPORTER_TYPES))}."
            )
        reporters[name] = REPORTER_CLASSES[reporter_type](name, section)
    return reporters


def _recipients(value: Any) -> List[str]:
    seen = set()
    recipients = []
    for recipient in split_list(value):
        if recipient in seen:
            continue
        seen.add(recipient)
        recipients.append(recipient)
    return recipients


def _timeout(settings: Dict[str, Any]) -> float:
    return to_positive_float(settings.get("timeout_seconds"), DEFAULT_TIMEOUT_SECONDS)


def _jira_fields(name: str, value: Any) -> Dict[str, str]:
    """Parse JIRA fields from a mapping or ``Name:value;Name:value``."""
    if isinstance(value, dict):
        return {str(key): str(item) for key, item in value.items()}

    fields: Dict[str, str] = {}
    for directive in str(value or "").split(";"):
        if not directive.strip():
            continue
        key, sep, item = directive.partition(":")
        if not sep or not key.strip():
            raise ReporterConfigError(
                f"Reporter '{name}' has invalid field {directive!r}, expected Name:value."
            )
        fields[key.strip()] = item
    return fields


def _jql_quote(value: str) -> str:
    return value.replace("\\", "").replace('"', "")
