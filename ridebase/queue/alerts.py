"""Threshold alerts over queue statistics, posted to a webhook."""

import dataclasses
import logging

import requests

from ridebase.config import alert_settings
from ridebase.db import to_db_time
from ridebase.errors import AlertDispatchError
from ridebase.models import QueueAlert, QueueStats, WorkerStatus
from ridebase.queue.clock import Clock, RunHandle, SystemClock
from ridebase.queue.jobs import get_queue_stats

logger = logging.getLogger(__name__)


def build_queue_alerts(stats: QueueStats, worker: WorkerStatus, settings: dict) -> list[QueueAlert]:
    alerts = []
    failed_threshold = settings["failed_24h_threshold"]
    if stats.failed_last_24h >= failed_threshold:
        alerts.append(QueueAlert(
            code="QUEUE_FAILED_24H",
            severity="critical",
            message=f"Failed jobs in last 24h reached {stats.failed_last_24h}",
            value=stats.failed_last_24h,
            threshold=failed_threshold,
        ))
    ready_threshold = settings["ready_threshold"]
    if stats.ready >= ready_threshold:
        alerts.append(QueueAlert(
            code="QUEUE_BACKLOG_READY",
            severity="warning",
            message=f"Ready queue backlog is {stats.ready}",
            value=stats.ready,
            threshold=ready_threshold,
        ))
    if worker.stale:
        alerts.append(QueueAlert(
            code="QUEUE_WORKER_STALE",
            severity="critical",
            message="Import queue worker heartbeat is stale",
            value=worker.stale_after_ms,
            threshold=worker.stale_after_ms,
        ))
    return alerts


class QueueAlertMonitor:
    """Polls queue stats and worker health; each alert code is gated by a cooldown.

    ``worker_status`` is a callable returning the current WorkerStatus.
    """

    def __init__(self, config: dict, connect, worker_status, clock: Clock | None = None,
                 session: requests.Session | None = None):
        self.settings = alert_settings(config)
        self.enabled = self.settings["enabled"] and self.settings["webhook_url"] is not None
        self.connect = connect
        self.worker_status = worker_status
        self.clock = clock or SystemClock()
        self.session = session or requests.Session()
        self.last_sent_by_code = {}
        self.sent_count = 0
        self.failed_count = 0
        self.last_run_at = None
        self.last_error = None
        self._handle = None

    def start(self) -> RunHandle | None:
        if not self.enabled:
            if self.settings["enabled"]:
                logger.info("Queue alert monitor enabled but no webhook URL is configured")
            else:
                logger.info("Queue alert monitor disabled")
            return None
        if self._handle is None or not self._handle.running:
            logger.info("Queue alert monitor started (poll=%dms, cooldown=%dms)",
                        self.settings["poll_ms"], self.settings["cooldown_ms"])
            self._handle = RunHandle("queue-alert-monitor", self.settings["poll_ms"], self.tick).start()
        return self._handle

    def stop(self):
        if self._handle is not None:
            self._handle.stop()
            self._handle = None

    def _cooled_down(self, code: str, now) -> bool:
        last = self.last_sent_by_code.get(code)
        if last is None:
            return True
        return (now - last).total_seconds() * 1000 >= self.settings["cooldown_ms"]

    def _dispatch(self, payload: dict):
        try:
            resp = self.session.post(self.settings["webhook_url"], json=payload,
                                     timeout=self.settings["timeout_s"])
        except requests.RequestException as e:
            raise AlertDispatchError(f"Webhook request failed: {e}") from e
        if not resp.ok:
            raise AlertDispatchError(f"Webhook responded with {resp.status_code}")

    def tick(self) -> list[QueueAlert]:
        """Evaluate thresholds once; returns the alerts that were sent."""
        if not self.enabled:
            return []
        now = self.clock.now()
        self.last_run_at = now
        conn = self.connect()
        try:
            stats = get_queue_stats(conn, now)
        finally:
            conn.close()
        worker = self.worker_status()

        sent = []
        for alert in build_queue_alerts(stats, worker, self.settings):
            if not self._cooled_down(alert.code, now):
                continue
            payload = {
                "source": "import-queue",
                "timestamp": now.isoformat(),
                "alert": dataclasses.asdict(alert),
                "stats": dataclasses.asdict(stats),
                "worker": dataclasses.asdict(worker),
            }
            try:
                self._dispatch(payload)
            except AlertDispatchError as e:
                self.failed_count += 1
                self.last_error = str(e)
                logger.error("Queue alert %s not delivered: %s", alert.code, e)
                continue
            self.sent_count += 1
            self.last_sent_by_code[alert.code] = now
            self.last_error = None
            sent.append(alert)
        return sent

    def status(self) -> dict:
        return {
            "enabled": self.enabled,
            "running": self._handle is not None and self._handle.running,
            "poll_ms": self.settings["poll_ms"],
            "cooldown_ms": self.settings["cooldown_ms"],
            "webhook_configured": self.settings["webhook_url"] is not None,
            "last_run_at": to_db_time(self.last_run_at),
            "last_error": self.last_error,
            "sent_count": self.sent_count,
            "failed_count": self.failed_count,
        }
