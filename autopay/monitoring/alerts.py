"""
Relayer alerts.

Raised for:
- Security failures (missing or invalid position refs, gas window, slippage bounds)
- Tasks quarantined after a validation rejection
- Transient failures that exhausted their retries

Every alert is logged and kept in a bounded in-memory history. With "slack"
in alert_methods and a webhook configured, WARNING and CRITICAL alerts are
also posted to Slack.
"""
import json
import os
import urllib.error
import urllib.request
from typing import List, Optional

from autopay.monitoring.logger import get_logger

logger = get_logger(__name__)

HISTORY_LIMIT = 500


class AlertLevel:
    """Alert severity levels."""
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


_SLACK_LEVELS = (AlertLevel.WARNING, AlertLevel.CRITICAL)


def _send_slack_webhook(url: str, level: str, title: str, message: str, metadata: Optional[dict] = None) -> None:
    """POST one alert to a Slack incoming webhook. Delivery failures are logged only."""
    blocks = [{"type": "section", "text": {"type": "mrkdwn", "text": f"*{title}*\n{message}"}}]
    if metadata:
        fields = "  ".join(f"`{k}`: {v}" for k, v in metadata.items())
        blocks.append({"type": "context", "elements": [{"type": "mrkdwn", "text": fields[:2000]}]})
    body = json.dumps({"text": f"[{level.upper()}] autopay-relayer: {title}", "blocks": blocks}, default=str)
    req = urllib.request.Request(
        url,
        data=body.encode("utf-8"),
        method="POST",
        headers={"Content-Type": "application/json"},
    )
    try:
        with urllib.request.urlopen(req, timeout=10):
            pass
    except (urllib.error.URLError, OSError) as e:
        logger.warning("Slack webhook failed", error=str(e), error_type=type(e).__name__)


class AlertSystem:
    def __init__(self, alert_methods: Optional[List[str]] = None, slack_webhook_url: Optional[str] = None):
        self.alert_methods = alert_methods or ["log"]
        self.slack_webhook_url = slack_webhook_url or os.getenv("SLACK_WEBHOOK_URL")
        self.history: List[dict] = []

    def send_alert(
        self,
        level: str,
        title: str,
        message: str,
        metadata: Optional[dict] = None,
    ) -> None:
        md = metadata or {}
        log_method = {
            AlertLevel.INFO: logger.info,
            AlertLevel.WARNING: logger.warning,
            AlertLevel.CRITICAL: logger.critical,
        }.get(level, logger.info)
        log_method(f"ALERT: {title}", message=message, level=level, metadata=md)

        self.history.append({"level": level, "title": title, "message": message, "metadata": md})
        if len(self.history) > HISTORY_LIMIT:
            del self.history[: len(self.history) - HISTORY_LIMIT]

        if "slack" in self.alert_methods and self.slack_webhook_url and level in _SLACK_LEVELS:
            _send_slack_webhook(self.slack_webhook_url, level, title, message, md)

    def alert_security_failure(self, task_id: str, error: str, error_type: str) -> None:
        """The task's funds stay escrowed until the sender or an operator fixes the strategy."""
        self.send_alert(
            AlertLevel.CRITICAL,
            "Security failure, task quarantined",
            error,
            {"task_id": task_id, "error_type": error_type},
        )

    def alert_task_quarantined(self, task_id: str, error: str, kind: str) -> None:
        self.send_alert(
            AlertLevel.WARNING,
            "Task rejected, quarantined",
            error,
            {"task_id": task_id, "kind": kind},
        )

    def alert_retries_exhausted(self, task_id: str, error: str, kind: str, attempts: int) -> None:
        self.send_alert(
            AlertLevel.WARNING,
            "Retries exhausted",
            error,
            {"task_id": task_id, "kind": kind, "attempts": attempts},
        )
