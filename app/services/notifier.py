import requests
from typing import Optional

from config.settings import settings
from engine.scheduler.report import PipelineReport
from release.tools.utils import get_logger

logger = get_logger("integrations.notifier")

STATUS_COLORS = {
    "SUCCEEDED": "#10b981",  # Green
    "FAILED": "#ef4444",     # Red
    "CANCELLED": "#f59e0b",  # Amber
}


class NotificationService:
    def __init__(self, webhook_url: Optional[str] = None):
        # optional; no URL means notifications are off
        self.webhook_url = webhook_url if webhook_url is not None else settings.NOTIFICATION_WEBHOOK_URL

    def send_run_finished(self, report: PipelineReport) -> None:
        """
        Sends a notification card to a webhook.
        Auto-detects Slack vs Generic formats.
        """
        if not self.webhook_url:
            return

        logger.info(f"Sending notification to webhook for run {report.run_id}...")

        color = STATUS_COLORS.get(report.status, "#6b7280")
        failed = [s.name for s in report.stages if s.state not in ("SUCCEEDED", "PENDING")]
        targets = ", ".join(a["target"] for a in report.artifacts) or "none"

        # 1. Slack-specific payload (if 'slack' is in URL)
        if "slack.com" in self.webhook_url:
            text = (
                f"*Convoy release: {report.pipeline} {report.version}*\n"
                f"Status: {report.status}\nArtifacts: {targets}"
            )
            if failed:
                text += f"\nNot succeeded: {', '.join(failed)}"
            payload = {"text": text}

        # 2. Generic / Discord / Teams Payload (Embeds)
        else:
            payload = {
                "username": "Convoy",
                "embeds": [
                    {
                        "title": f"Run {report.status.lower()}: {report.pipeline} {report.version}",
                        "color": int(color.replace("#", ""), 16),
                        "fields": [
                            {"name": "Run", "value": report.run_id, "inline": True},
                            {"name": "Status", "value": report.status, "inline": True},
                            {"name": "Artifacts", "value": targets},
                            {"name": "Not succeeded", "value": ", ".join(failed) or "-"},
                        ]
                    }
                ]
            }

        try:
            requests.post(self.webhook_url, json=payload, timeout=5)
            logger.info("Notification sent.")
        except requests.RequestException as e:
            logger.error(f"Failed to send notification: {e}")


notifier = NotificationService()
