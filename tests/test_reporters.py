"""Tests for complainer.reporters module."""

from argparse import Namespace
from datetime import datetime, timezone
import smtplib

import pytest
import requests
from jira import JIRAError

import complainer.reporters as reporters_module
from complainer.failure import Failure
from complainer.labels import Labels
from complainer.reporters import (
    DiscordReporter,
    EmailReporter,
    EVENT_TASK_FAILED,
    FileReporter,
    JiraReporter,
    ReporterConfigError,
    ReporterError,
    SCHEMA_VERSION,
    SentryReporter,
    SlackReporter,
    WebhookReporter,
    build_payload,
    build_reporters,
    render_message,
)


STDOUT = "http://agent1:5051/files/download?path=/sandbox/stdout"
STDERR = "http://agent1:5051/files/download?path=/sandbox/stderr"


def _failure(**kwargs):
    values = {
        "id": "web.1234",
        "name": "web",
        "slave": "agent1",
        "framework": "marathon",
        "state": "TASK_FAILED",
        "started": datetime(2024, 5, 1, 11, 55, tzinfo=timezone.utc),
        "finished": datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
    }
    values.update(kwargs)
    return Failure(**values)


def _config(labels=None, reporter="slack", instance="default", name="default"):
    return Labels(name, labels or {}).config_provider(reporter, instance)


class _Response:
    def __init__(self, status_code, text=""):
        self.status_code = status_code
        self.text = text


def _capture_posts(monkeypatch, status_code=200, text=""):
    """Replace requests in the reporters module and record POSTs."""
    calls = []

    def fake_post(url, **kwargs):
        calls.append({"url": url, **kwargs})
        return _Response(status_code, text)

    monkeypatch.setattr(
        reporters_module,
        "requests",
        Namespace(post=fake_post, RequestException=requests.RequestException),
    )
    return calls


def test_build_payload_shape():
    """Webhook payloads carry schema, event, failure and log links."""
    payload = build_payload(_failure(), STDOUT, STDERR, reporter="hook")

    assert payload["schema_version"] == SCHEMA_VERSION
    assert payload["event"] == EVENT_TASK_FAILED
    assert payload["failure"]["id"] == "web.1234"
    assert payload["failure"]["lifetime_seconds"] == 300.0
    assert payload["logs"] == {"stdout": STDOUT, "stderr": STDERR}
    assert payload["meta"]["reporter"] == "hook"


def test_render_message_includes_optional_fields():
    """Framework and image lines appear only when known."""
    message = render_message(_failure(image="registry/web:1"), STDOUT, STDERR)
    assert message.startswith("COMPLAINER ALERT: Task failed")
    assert "Image: registry/web:1" in message
    assert f"stderr: {STDERR}" in message

    bare = render_message(_failure(framework=""), STDOUT, STDERR)
    assert "Framework:" not in bare
    assert "Image:" not in bare


class TestSlackReporter:
    """Tests for SlackReporter."""

    def test_label_settings_override_static(self, monkeypatch):
        """Label values win over static settings for the same key."""
        calls = _capture_posts(monkeypatch)
        reporter = SlackReporter(
            "slack",
            {"hook_url": "https://hooks.slack.test/static", "channel": "#static", "username": "complainer"},
        )
        config = _config({
            "complainer_slack_channel": "#from-label",
            "complainer_slack_hook_url": "https://hooks.slack.test/label",
        })

        reporter.report(_failure(), config, STDOUT, STDERR)

        assert len(calls) == 1
        assert calls[0]["url"] == "https://hooks.slack.test/label"
        message = calls[0]["json"]
        assert message["channel"] == "#from-label"
        assert message["username"] == "complainer"
        assert message["text"] == (
            f"Task web (agent1) died with status TASK_FAILED [<{STDOUT}|stdout>, <{STDERR}|stderr>]"
        )

    def test_missing_hook_url_skips(self, monkeypatch):
        """Without a hook URL nothing is posted."""
        calls = _capture_posts(monkeypatch)
        SlackReporter("slack").report(_failure(), _config(), STDOUT, STDERR)
        assert calls == []

    def test_non_2xx_raises(self, monkeypatch):
        """Non-2xx responses become ReporterError with the body excerpt."""
        _capture_posts(monkeypatch, status_code=500, text="invalid_payload")
        reporter = SlackReporter("slack", {"hook_url": "https://hooks.slack.test/x"})

        with pytest.raises(ReporterError, match="HTTP 500: invalid_payload"):
            reporter.report(_failure(), _config(), STDOUT, STDERR)


def test_discord_reporter_posts_content(monkeypatch):
    """Discord messages carry the rendered summary as content."""
    calls = _capture_posts(monkeypatch, status_code=204)
    reporter = DiscordReporter("discord", {"hook_url": "https://discord.test/hook", "username": "bot"})

    reporter.report(_failure(), _config(reporter="discord"), STDOUT, STDERR)

    assert calls[0]["json"]["username"] == "bot"
    assert "Task ID: web.1234" in calls[0]["json"]["content"]


def test_webhook_reporter_sends_headers_and_payload(monkeypatch):
    """Webhook reporter posts the canonical payload with configured headers."""
    calls = _capture_posts(monkeypatch)
    reporter = WebhookReporter(
        "hook",
        {"url": "https://example.test/hook", "headers": {"Authorization": "Bearer t"}, "timeout_seconds": 3},
    )

    reporter.report(_failure(), _config(reporter="hook"), STDOUT, STDERR)

    assert calls[0]["headers"]["Authorization"] == "Bearer t"
    assert calls[0]["headers"]["Content-Type"] == "application/json"
    assert calls[0]["timeout"] == 3.0
    assert calls[0]["json"]["event"] == EVENT_TASK_FAILED


def test_webhook_reporter_rejects_bad_headers():
    """Headers must be a mapping."""
    with pytest.raises(ReporterConfigError):
        WebhookReporter("hook", {"url": "https://example.test", "headers": ["nope"]})


class TestFileReporter:
    """Tests for FileReporter."""

    def test_appends_formatted_failures(self, tmp_path):
        """Each report appends one rendered block to the file."""
        path = tmp_path / "failures.log"
        reporter = FileReporter("file", {"path": str(path)})

        reporter.report(_failure(), _config(reporter="file"), STDOUT, STDERR)
        reporter.report(_failure(id="web.5678"), _config(reporter="file"), STDOUT, STDERR)

        content = path.read_text()
        assert content.startswith("Task web (web.1234) died with status TASK_FAILED:\n")
        assert f"  * {STDOUT}\n" in content
        assert "web.5678" in content

    def test_custom_format(self, tmp_path):
        """The format setting controls the written text."""
        path = tmp_path / "failures.log"
        reporter = FileReporter("file", {"path": str(path), "format": "{{ failure.id }} {{ stderr_url }}\n"})

        reporter.report(_failure(), _config(reporter="file"), STDOUT, STDERR)

        assert path.read_text() == f"web.1234 {STDERR}\n"

    def test_invalid_format_rejected(self):
        """Templates that do not parse are rejected when the reporter is built."""
        with pytest.raises(ReporterConfigError, match="invalid format"):
            FileReporter("file", {"format": "{{ failure.id"})

    def test_format_reads_label_config(self, tmp_path):
        """Templates can look up instance settings through config()."""
        path = tmp_path / "failures.log"
        reporter = FileReporter(
            "file",
            {"path": str(path), "format": "{{ config('team') }}: {{ failure.name }}{{ nl }}"},
        )

        reporter.report(_failure(), _config({"complainer_file_team": "sre"}, reporter="file"), STDOUT, STDERR)

        assert path.read_text() == "sre: web\n"

    def test_undefined_value_raises_on_report(self, tmp_path):
        """Undefined template values fail the delivery, not the build."""
        reporter = FileReporter("file", {"path": str(tmp_path / "f.log"), "format": "{{ failure.nope }}"})

        with pytest.raises(ReporterError, match="Error executing template"):
            reporter.report(_failure(), _config(reporter="file"), STDOUT, STDERR)

    def test_unwritable_path_raises(self, tmp_path):
        """Write errors surface as ReporterError."""
        reporter = FileReporter("file", {"path": str(tmp_path / "missing" / "out.log")})
        with pytest.raises(ReporterError):
            reporter.report(_failure(), _config(reporter="file"), STDOUT, STDERR)


class TestEmailReporter:
    """Tests for EmailReporter."""

    def test_sends_with_starttls_and_login(self, monkeypatch):
        """Email is sent through SMTP with STARTTLS and login."""
        calls = {"starttls": 0, "login": 0, "messages": []}

        class _SMTP:
            def __init__(self, host, port, timeout=None):
                calls["host"] = (host, port)

            def __enter__(self):
                return self

            def __exit__(self, *_args):
                return False

            def ehlo(self):
                return None

            def starttls(self):
                calls["starttls"] += 1

            def login(self, *_args):
                calls["login"] += 1

            def send_message(self, message):
                calls["messages"].append(message)

        monkeypatch.setattr(reporters_module.smtplib, "SMTP", _SMTP)

        reporter = EmailReporter("email", {
            "smtp_host": "smtp.example.com",
            "smtp_username": "user",
            "smtp_password": "pass",
            "from": "noreply@example.com",
            "to": "ops@example.com",
        })
        config = _config({"complainer_email_to": "team@example.com, team@example.com"}, reporter="email")

        reporter.report(_failure(), config, STDOUT, STDERR)

        assert calls["host"] == ("smtp.example.com", 587)
        assert calls["starttls"] == 1
        assert calls["login"] == 1
        message = calls["messages"][0]
        assert message["To"] == "team@example.com"
        assert message["From"] == "noreply@example.com"
        assert "TASK_FAILED" in message["Subject"]

    def test_smtp_failure_raises(self, monkeypatch):
        """SMTP errors become ReporterError."""

        class _FailSMTP:
            def __init__(self, *_args, **_kwargs):
                raise smtplib.SMTPConnectError(421, "unavailable")

        monkeypatch.setattr(reporters_module.smtplib, "SMTP", _FailSMTP)
        reporter = EmailReporter("email", {
            "smtp_host": "smtp.example.com",
            "from": "noreply@example.com",
            "to": "ops@example.com",
        })

        with pytest.raises(ReporterError):
            reporter.report(_failure(), _config(reporter="email"), STDOUT, STDERR)

    def test_missing_smtp_host(self):
        """smtp_host is required."""
        with pytest.raises(ReporterConfigError, match="smtp_host"):
            EmailReporter("email", {"to": "ops@example.com"})


class TestBuildReporters:
    """Tests for build_reporters."""

    def test_type_defaults_to_channel_name(self, tmp_path):
        """Sections are keyed by channel; type falls back to that name."""
        reporters = build_reporters({
            "slack": {"hook_url": "https://hooks.slack.test/x"},
            "ops-file": {"type": "file", "path": str(tmp_path / "f.log")},
        })

        assert isinstance(reporters["slack"], SlackReporter)
        assert isinstance(reporters["ops-file"], FileReporter)
        assert list(reporters) == ["slack", "ops-file"]

    def test_unknown_type(self):
        """Unsupported reporter types are rejected."""
        with pytest.raises(ReporterConfigError, match="unsupported type 'hipchat'"):
            build_reporters({"hipchat": {}})

    def test_error_tracking_types(self):
        """Sentry and JIRA sections build their reporters."""
        reporters = build_reporters({
            "sentry": {"dsn": "https://key@sentry.test/1"},
            "tickets": {
                "type": "jira",
                "url": "https://jira.test",
                "username": "bot",
                "password": "secret",
                "closed_status": "Done",
                "fields": "Project:OPS;Issue Type:Bug;Summary:{{ failure.name }} failed",
            },
        })

        assert isinstance(reporters["sentry"], SentryReporter)
        assert isinstance(reporters["tickets"], JiraReporter)


def _patch_sentry(monkeypatch, event_id="abc123"):
    """Replace sentry_sdk in the reporters module and record clients."""
    clients = []

    class _Client:
        def __init__(self, dsn):
            if not dsn.startswith("https://"):
                raise ValueError(f"Unsupported scheme in {dsn}")
            self.dsn = dsn
            self.events = []
            self.flushes = []
            clients.append(self)

        def capture_event(self, event):
            self.events.append(event)
            return event_id

        def flush(self, timeout=None):
            self.flushes.append(timeout)

    monkeypatch.setattr(reporters_module, "sentry_sdk", Namespace(Client=_Client))
    return clients


class TestSentryReporter:
    """Tests for SentryReporter."""

    def test_captures_event(self, monkeypatch):
        """Events carry message, host, state tag, timings, logs and labels."""
        clients = _patch_sentry(monkeypatch)
        reporter = SentryReporter("sentry", {"dsn": "https://key@sentry.test/1"})

        reporter.report(
            _failure(labels={"team": "sre"}),
            _config(reporter="sentry"),
            STDOUT,
            STDERR,
        )

        event = clients[0].events[0]
        assert clients[0].dsn == "https://key@sentry.test/1"
        assert event["message"] == "Task web died with status TASK_FAILED"
        assert event["server_name"] == "agent1"
        assert event["tags"] == {"task_state": "TASK_FAILED"}
        assert event["extra"]["task.id"] == "web.1234"
        assert event["extra"]["timings.lifetime"] == "0:05:00"
        assert event["extra"]["logs.stderr"] == STDERR
        assert event["extra"]["labels.team"] == "sre"
        assert clients[0].flushes == [10.0]

    def test_label_dsn_and_client_reuse(self, monkeypatch):
        """Per-instance DSNs from labels get one cached client each."""
        clients = _patch_sentry(monkeypatch)
        reporter = SentryReporter("sentry", {"dsn": "https://key@sentry.test/1"})
        labels = {
            "complainer_sentry_instances": "default,team",
            "complainer_sentry_instance_team_dsn": "https://key@sentry.test/2",
        }

        for _ in range(2):
            reporter.report(_failure(), _config(labels, reporter="sentry"), STDOUT, STDERR)
            reporter.report(_failure(), _config(labels, reporter="sentry", instance="team"), STDOUT, STDERR)

        assert [client.dsn for client in clients] == [
            "https://key@sentry.test/1",
            "https://key@sentry.test/2",
        ]
        assert [len(client.events) for client in clients] == [2, 2]

    def test_custom_format_with_config(self, monkeypatch):
        """The message template can read instance settings."""
        clients = _patch_sentry(monkeypatch)
        reporter = SentryReporter(
            "sentry",
            {"dsn": "https://key@sentry.test/1", "format": "[{{ config('env') }}] {{ failure.id }}"},
        )

        reporter.report(_failure(), _config({"complainer_sentry_env": "prod"}, reporter="sentry"), STDOUT, STDERR)

        assert clients[0].events[0]["message"] == "[prod] web.1234"

    def test_without_dsn_skips(self, monkeypatch):
        """No DSN anywhere means nothing is sent."""
        monkeypatch.delenv("SENTRY_DSN", raising=False)
        clients = _patch_sentry(monkeypatch)

        SentryReporter("sentry").report(_failure(), _config(reporter="sentry"), STDOUT, STDERR)

        assert clients == []

    def test_dsn_from_environment(self, monkeypatch):
        """$SENTRY_DSN is used when no dsn is configured."""
        monkeypatch.setenv("SENTRY_DSN", "https://key@sentry.test/9")
        clients = _patch_sentry(monkeypatch)

        SentryReporter("sentry").report(_failure(), _config(reporter="sentry"), STDOUT, STDERR)

        assert clients[0].dsn == "https://key@sentry.test/9"

    def test_invalid_dsn_raises(self, monkeypatch):
        """A bad DSN fails the delivery."""
        _patch_sentry(monkeypatch)
        reporter = SentryReporter("sentry", {"dsn": "not-a-dsn"})

        with pytest.raises(ReporterError, match="invalid sentry dsn"):
            reporter.report(_failure(), _config(reporter="sentry"), STDOUT, STDERR)

    def test_dropped_event_raises(self, monkeypatch):
        """An event the client does not accept is an error."""
        _patch_sentry(monkeypatch, event_id=None)
        reporter = SentryReporter("sentry", {"dsn": "https://key@sentry.test/1"})

        with pytest.raises(ReporterError):
            reporter.report(_failure(), _config(reporter="sentry"), STDOUT, STDERR)


JIRA_SETTINGS = {
    "url": "https://jira.test",
    "username": "bot",
    "password": "secret",
    "closed_status": "Done",
    "fields": {
        "Project": "OPS",
        "Issue Type": "Bug",
        "Summary": "{{ failure.name }} died with status {{ failure.state }}",
        "Priority": "{{ config('priority') or 'Medium' }}",
        "Description": "stderr: {{ stderr_url }}",
    },
}


def _patch_jira(monkeypatch, open_issues=None, create_error=None):
    """Replace the JIRA client class in the reporters module."""
    state = {"clients": [], "searches": [], "created": []}

    class _JIRA:
        def __init__(self, server, basic_auth, timeout=None):
            self.server = server
            self.basic_auth = basic_auth
            state["clients"].append(self)

        def fields(self):
            return [
                {"id": "project", "name": "Project"},
                {"id": "issuetype", "name": "Issue Type"},
                {"id": "summary", "name": "Summary"},
                {"id": "priority", "name": "Priority"},
                {"id": "description", "name": "Description"},
            ]

        def search_issues(self, query, maxResults=None):
            state["searches"].append(query)
            return list(open_issues or [])

        def create_issue(self, fields):
            if create_error is not None:
                raise create_error
            state["created"].append(fields)
            return Namespace(key="OPS-42")

    monkeypatch.setattr(reporters_module, "JIRA", _JIRA)
    return state


class TestJiraReporter:
    """Tests for JiraReporter."""

    def test_creates_issue_from_templates(self, monkeypatch):
        """Rendered fields are mapped onto the create-issue payload."""
        state = _patch_jira(monkeypatch)
        reporter = JiraReporter("jira", JIRA_SETTINGS)

        reporter.report(
            _failure(),
            _config({"complainer_jira_priority": "High"}, reporter="jira"),
            STDOUT,
            STDERR,
        )

        assert state["clients"][0].server == "https://jira.test"
        assert state["clients"][0].basic_auth == ("bot", "secret")
        assert state["searches"] == [
            'summary ~ "\\"web died with status TASK_FAILED\\"" AND project = "OPS" AND status != "Done"'
        ]
        assert state["created"] == [{
            "project": {"key": "OPS"},
            "issuetype": {"name": "Bug"},
            "summary": "web died with status TASK_FAILED",
            "priority": {"name": "High"},
            "description": f"stderr: {STDERR}",
        }]

    def test_open_issue_prevents_duplicate(self, monkeypatch):
        """No issue is created while a matching one is still open."""
        state = _patch_jira(monkeypatch, open_issues=[Namespace(key="OPS-7")])
        reporter = JiraReporter("jira", JIRA_SETTINGS)

        reporter.report(_failure(), _config(reporter="jira"), STDOUT, STDERR)

        assert len(state["searches"]) == 1
        assert state["created"] == []

    def test_client_created_once(self, monkeypatch):
        """The JIRA connection is reused across reports."""
        state = _patch_jira(monkeypatch)
        reporter = JiraReporter("jira", JIRA_SETTINGS)

        reporter.report(_failure(), _config(reporter="jira"), STDOUT, STDERR)
        reporter.report(_failure(id="web.2"), _config(reporter="jira"), STDOUT, STDERR)

        assert len(state["clients"]) == 1
        assert len(state["created"]) == 2

    def test_jira_error_raises(self, monkeypatch):
        """JIRA API errors become ReporterError."""
        _patch_jira(monkeypatch, create_error=JIRAError(text="Field 'priority' is invalid", status_code=400))
        reporter = JiraReporter("jira", JIRA_SETTINGS)

        with pytest.raises(ReporterError, match="Field 'priority' is invalid"):
            reporter.report(_failure(), _config(reporter="jira"), STDOUT, STDERR)

    def test_fields_string_format(self, monkeypatch):
        """Fields accept Name:value pairs separated by semicolons."""
        _patch_jira(monkeypatch)
        settings = dict(JIRA_SETTINGS, fields="Project:OPS;Issue Type:Bug;Summary:{{ failure.id }}")

        reporter = JiraReporter("jira", settings)

        assert sorted(reporter.fields) == ["Issue Type", "Project", "Summary"]

    def test_required_fields(self):
        """Project, Summary and Issue Type must be configured."""
        settings = dict(JIRA_SETTINGS, fields="Project:OPS;Summary:x")
        with pytest.raises(ReporterConfigError, match="Issue Type"):
            JiraReporter("jira", settings)

    def test_invalid_field_directive(self):
        """Directives without a colon are rejected."""
        settings = dict(JIRA_SETTINGS, fields="Project:OPS;Bug")
        with pytest.raises(ReporterConfigError, match="expected Name:value"):
            JiraReporter("jira", settings)

    def test_required_settings(self):
        """Connection settings are required."""
        settings = dict(JIRA_SETTINGS)
        del settings["closed_status"]
        with pytest.raises(ReporterConfigError, match="closed_status"):
            JiraReporter("jira", settings)
