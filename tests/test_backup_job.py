"""Tests for backup jobs and the adhoc trigger."""

import logging
from datetime import datetime, timezone

import httpx
import pytest

from helpers import FIXED_NOW, BrokenScheduler
from housekeeping.jobs.backup_job import (
    AdhocBackupTrigger,
    BackupCadence,
    BackupJob,
    BackupJobConfig,
    DatabaseLocation,
    db_hint_headers,
    register_adhoc,
    sanitize_url,
)

AGENT_URL = "http://postgres:1804/backup"


def _utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class AgentRecorder:
    """httpx.MockTransport handler that records requests to the agent."""

    def __init__(self, status_code=200, body="ok", error=None):
        self.status_code = status_code
        self.body = body
        self.error = error
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error(f"agent unreachable: {request.url}", request=request)
        return httpx.Response(self.status_code, text=self.body)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


def _job(cadence, scheduler, agent, clock, **config) -> BackupJob:
    config.setdefault("agent_url", AGENT_URL)
    return BackupJob(
        BackupJobConfig(**config),
        cadence,
        scheduler,
        transport=agent.transport,
        clock=clock,
    )


class TestAgentCall:
    @pytest.mark.asyncio
    async def test_success_posts_reason_and_token(self, fake_scheduler, fixed_clock, caplog):
        caplog.set_level(logging.INFO)
        agent = AgentRecorder(body="backup-2026-10-17.sql.gz")
        job = _job(BackupCadence.DAILY, fake_scheduler, agent, fixed_clock, agent_token="s3cret")

        assert await job.call_agent() is True

        request = agent.requests[0]
        assert request.method == "POST"
        assert request.url.path == "/backup"
        assert request.url.params["reason"] == "daily"
        assert request.headers["Authorization"] == "Bearer s3cret"
        assert request.headers["Content-Type"] == "application/json"
        assert request.content == b"{}"
        assert "Backup agent success; cadence=daily status=200" in caplog.text
        assert "backup-2026-10-17.sql.gz" in caplog.text

    @pytest.mark.asyncio
    async def test_no_token_means_no_auth_header(self, fake_scheduler, fixed_clock):
        agent = AgentRecorder()
        job = _job(BackupCadence.WEEKLY, fake_scheduler, agent, fixed_clock)

        await job.call_agent()

        assert "Authorization" not in agent.requests[0].headers
        assert "POSTGRES_HOST" not in agent.requests[0].headers

    @pytest.mark.asyncio
    async def test_error_status_is_failure(self, fake_scheduler, fixed_clock, caplog):
        agent = AgentRecorder(status_code=500, body="disk full")
        job = _job(BackupCadence.DAILY, fake_scheduler, agent, fixed_clock)

        assert await job.call_agent() is False
        assert "Backup agent failed; cadence=daily status=500 body=disk full" in caplog.text

    @pytest.mark.asyncio
    async def test_timeout_is_failure(self, fake_scheduler, fixed_clock, caplog):
        agent = AgentRecorder(error=httpx.ReadTimeout)
        job = _job(
            BackupCadence.MONTHLY,
            fake_scheduler,
            agent,
            fixed_clock,
            http_timeout_seconds=5,
        )

        assert await job.call_agent() is False
        assert "Backup agent timeout after 5s; cadence=monthly" in caplog.text

    @pytest.mark.asyncio
    async def test_connection_error_is_failure(self, fake_scheduler, fixed_clock, caplog):
        agent = AgentRecorder(error=httpx.ConnectError)
        job = _job(BackupCadence.DAILY, fake_scheduler, agent, fixed_clock)

        assert await job.call_agent() is False
        assert "Backup agent request failed; cadence=daily" in caplog.text

    @pytest.mark.asyncio
    async def test_quoted_url_is_sanitized(self, fake_scheduler, fixed_clock):
        agent = AgentRecorder()
        job = _job(
            BackupCadence.DAILY,
            fake_scheduler,
            agent,
            fixed_clock,
            agent_url=f' "{AGENT_URL}" ',
        )

        assert await job.call_agent() is True
        assert agent.requests[0].url.host == "postgres"

    @pytest.mark.asyncio
    async def test_hint_headers_are_sent(self, fake_scheduler, fixed_clock):
        agent = AgentRecorder()
        job = BackupJob(
            BackupJobConfig(agent_url=AGENT_URL, send_db_host_port_headers=True),
            BackupCadence.DAILY,
            fake_scheduler,
            db_location=DatabaseLocation(host="db.internal", port=6543),
            transport=agent.transport,
            clock=fixed_clock,
        )

        await job.call_agent()

        assert agent.requests[0].headers["POSTGRES_HOST"] == "db.internal"
        assert agent.requests[0].headers["POSTGRES_PORT"] == "6543"


class TestHintHeaders:
    def test_disabled(self):
        config = BackupJobConfig(agent_url=AGENT_URL)
        assert db_hint_headers(config, DatabaseLocation(host="db")) == {}

    def test_defaults(self):
        config = BackupJobConfig(agent_url=AGENT_URL, send_db_host_port_headers=True)
        assert db_hint_headers(config) == {"POSTGRES_HOST": "postgres", "POSTGRES_PORT": "5432"}

    def test_development_uses_docker_host(self):
        config = BackupJobConfig(agent_url=AGENT_URL, send_db_host_port_headers=True)
        location = DatabaseLocation(host="localhost", port=8090, development=True)
        assert db_hint_headers(config, location) == {
            "POSTGRES_HOST": "host.docker.internal",
            "POSTGRES_PORT": "8090",
        }

    def test_overrides_win(self):
        config = BackupJobConfig(
            agent_url=AGENT_URL,
            send_db_host_port_headers=True,
            db_host_override="10.0.0.5",
            db_port_override="15432",
        )
        location = DatabaseLocation(host="db", port=5432, development=True)
        assert db_hint_headers(config, location) == {
            "POSTGRES_HOST": "10.0.0.5",
            "POSTGRES_PORT": "15432",
        }


@pytest.mark.parametrize(
    "raw,expected",
    [
        (AGENT_URL, AGENT_URL),
        (f"  {AGENT_URL}\n", AGENT_URL),
        (f'"{AGENT_URL}"', AGENT_URL),
        (f"'{AGENT_URL}'", AGENT_URL),
        (f"'{AGENT_URL}\"", f"'{AGENT_URL}\""),
    ],
)
def test_sanitize_url(raw, expected):
    assert sanitize_url(raw) == expected


class TestRecurringJobs:
    @pytest.mark.parametrize(
        "cadence,expected",
        [
            (BackupCadence.DAILY, _utc(2026, 10, 17, 20, 30)),
            (BackupCadence.WEEKLY, _utc(2026, 10, 18, 20, 0)),
            (BackupCadence.MONTHLY, _utc(2026, 11, 1, 20, 15)),
        ],
    )
    def test_default_slots(self, fake_scheduler, fixed_clock, cadence, expected):
        job = _job(cadence, fake_scheduler, AgentRecorder(), fixed_clock)

        assert job.ensure_scheduled() == expected
        assert fake_scheduler.pending == {
            f"housekeeping:backup:{cadence.value}": (f"housekeeping.backup.{cadence.value}", expected)
        }

    @pytest.mark.asyncio
    async def test_reschedules_after_success(self, fake_scheduler, fixed_clock):
        agent = AgentRecorder()
        job = _job(BackupCadence.DAILY, fake_scheduler, agent, fixed_clock)
        job.ensure_scheduled()

        assert await fake_scheduler.fire(job.stable_id) is True
        assert fake_scheduler.next_run_at(job.stable_id) == _utc(2026, 10, 17, 20, 30)

    @pytest.mark.asyncio
    async def test_reschedules_after_failure(self, fake_scheduler, caplog):
        # The run fires at its slot; the clock has moved past it.
        agent = AgentRecorder(status_code=503)
        job = _job(
            BackupCadence.WEEKLY,
            fake_scheduler,
            agent,
            lambda: _utc(2026, 10, 18, 20, 0, 1),
        )
        job.ensure_scheduled(now=FIXED_NOW)

        assert await fake_scheduler.fire(job.stable_id) is False
        assert fake_scheduler.next_run_at(job.stable_id) == _utc(2026, 10, 25, 20, 0)
        assert "status=503" in caplog.text

    @pytest.mark.asyncio
    async def test_reschedule_failure_is_logged(self, fixed_clock, caplog):
        scheduler = BrokenScheduler()
        job = _job(BackupCadence.MONTHLY, scheduler, AgentRecorder(), fixed_clock)
        scheduler.register_handler(job.job_name, job.invoke)

        assert await job.invoke() is True
        assert "Failed to reschedule monthly backup" in caplog.text

    def test_ensure_scheduled_twice_leaves_one_registration(self, fake_scheduler, fixed_clock):
        job = _job(BackupCadence.DAILY, fake_scheduler, AgentRecorder(), fixed_clock)

        job.ensure_scheduled()
        job.ensure_scheduled()

        assert list(fake_scheduler.pending) == ["housekeeping:backup:daily"]

    def test_adhoc_has_no_slot(self, fake_scheduler, fixed_clock):
        job = _job(BackupCadence.ADHOC, fake_scheduler, AgentRecorder(), fixed_clock)

        assert job.ensure_scheduled() is None
        assert fake_scheduler.pending == {}
        assert fake_scheduler.has_handler("housekeeping.backup.adhoc")
        with pytest.raises(ValueError):
            job.schedule()


class TestOutcomeCallback:
    @pytest.mark.asyncio
    async def test_sync_callback(self, fake_scheduler, fixed_clock):
        outcomes = []
        job = _job(
            BackupCadence.DAILY,
            fake_scheduler,
            AgentRecorder(status_code=500),
            fixed_clock,
            on_outcome=lambda success, cadence: outcomes.append((success, cadence)),
        )
        fake_scheduler.register_handler(job.job_name, job.invoke)

        await job.invoke()

        assert outcomes == [(False, "daily")]

    @pytest.mark.asyncio
    async def test_async_callback(self, fake_scheduler, fixed_clock):
        outcomes = []

        async def record(success, cadence):
            outcomes.append((success, cadence))

        job = _job(
            BackupCadence.ADHOC,
            fake_scheduler,
            AgentRecorder(),
            fixed_clock,
            on_outcome=record,
        )

        await job.invoke()

        assert outcomes == [(True, "adhoc")]

    @pytest.mark.asyncio
    async def test_raising_callback_is_logged(self, fake_scheduler, fixed_clock, caplog):
        def explode(success, cadence):
            raise RuntimeError("notifier down")

        job = _job(
            BackupCadence.ADHOC,
            fake_scheduler,
            AgentRecorder(),
            fixed_clock,
            on_outcome=explode,
        )

        assert await job.invoke() is True
        assert "Backup outcome callback failed" in caplog.text


class TestAdhoc:
    def _trigger(self, scheduler, agent, clock) -> AdhocBackupTrigger:
        return register_adhoc(
            BackupJobConfig(agent_url=AGENT_URL),
            scheduler,
            transport=agent.transport,
            clock=clock,
        )

    def test_requires_adhoc_job(self, fake_scheduler, fixed_clock):
        job = _job(BackupCadence.DAILY, fake_scheduler, AgentRecorder(), fixed_clock)
        with pytest.raises(ValueError):
            AdhocBackupTrigger(job)

    def test_registration_does_not_schedule(self, fake_scheduler, fixed_clock):
        trigger = self._trigger(fake_scheduler, AgentRecorder(), fixed_clock)

        assert trigger.stable_id == "housekeeping:backup:adhoc"
        assert fake_scheduler.pending == {}

    @pytest.mark.asyncio
    async def test_trigger_runs_once_without_rescheduling(self, fake_scheduler, fixed_clock):
        agent = AgentRecorder()
        trigger = self._trigger(fake_scheduler, agent, fixed_clock)

        assert trigger.trigger() == FIXED_NOW
        assert await fake_scheduler.fire(trigger.stable_id) is True

        assert len(agent.requests) == 1
        assert agent.requests[0].url.params["reason"] == "adhoc"
        assert fake_scheduler.pending == {}

    @pytest.mark.asyncio
    async def test_double_trigger_leaves_one_pending(self, fake_scheduler, fixed_clock):
        agent = AgentRecorder()
        trigger = self._trigger(fake_scheduler, agent, fixed_clock)

        trigger.trigger()
        later = trigger.trigger(now=_utc(2026, 10, 17, 10, 0, 5))

        assert fake_scheduler.pending == {
            "housekeeping:backup:adhoc": ("housekeeping.backup.adhoc", later)
        }
        await fake_scheduler.fire(trigger.stable_id)
        assert len(agent.requests) == 1
