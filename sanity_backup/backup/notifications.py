"""
Slack notifications for backup results.

Delivery is best effort: a missing webhook disables notifications, and a
failed delivery is logged and reported as False, never raised.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

import requests

from sanity_backup.errors import NotificationError
from sanity_backup.models import Notification
from sanity_backup.utils.redaction import sanitize, url_secrets

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 500
TRUNCATION_MARKER = '...'


def format_duration(seconds: int) -> str:
    """
    Format a duration for humans.

    Examples: '45 seconds', '1m 30s', '2h 5m'
    """
    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds} seconds"
    minutes, remaining_seconds = divmod(seconds, 60)
    if minutes < 60:
        return f"{minutes}m {remaining_seconds}s"
    hours, remaining_minutes = divmod(minutes, 60)
    return f"{hours}h {remaining_minutes}m"


def format_backup_size(size_bytes: int) -> str:
    """Size in MB with two decimals, as shown in notifications."""
    return f"{size_bytes / 1024 / 1024:.2f}"


def truncate_error(error: str, max_length: int = MAX_ERROR_LENGTH) -> str:
    """Cap an error message at max_length characters, marker included."""
    if len(error) <= max_length:
        return error
    return error[:max_length - len(TRUNCATION_MARKER)] + TRUNCATION_MARKER


def format_timestamp(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return now.strftime('%b %d, %Y, %H:%M:%S') + ' UTC'


def _field(label: str, value: str) -> dict:
    return {'type': 'mrkdwn', 'text': f"*{label}:*\n{value}"}


def _context(text: str) -> dict:
    return {'type': 'context', 'elements': [{'type': 'mrkdwn', 'text': text}]}


def build_success_message(notification: Notification, now: Optional[datetime] = None) -> dict:
    project, dataset = notification.project_id, notification.dataset
    return {
        'text': f"✅ Backup completed successfully for {project}/{dataset}",
        'blocks': [
            {
                'type': 'header',
                'text': {'type': 'plain_text', 'text': '✅ Backup Successful', 'emoji': True}
            },
            {
                'type': 'section',
                'fields': [
                    _field('Project', project),
                    _field('Dataset', dataset),
                    _field('Size', f"{notification.backup_size or 'Unknown'} MB"),
                    _field('Duration', format_duration(notification.duration or 0)),
                ]
            },
            {
                'type': 'section',
                'text': {'type': 'mrkdwn', 'text': f"*Storage Location:*\n`{notification.object_key or 'Unknown'}`"}
            },
            _context(f"Completed at {format_timestamp(now)}"),
        ],
        'attachments': [
            {
                'color': 'good',
                'fields': [
                    {'title': 'Backup Type', 'value': 'Full Backup', 'short': True},
                    {'title': 'Compression', 'value': 'tar.gz', 'short': True},
                ]
            }
        ]
    }


def build_failure_message(notification: Notification, now: Optional[datetime] = None) -> dict:
    project, dataset = notification.project_id, notification.dataset
    error = truncate_error(notification.error or 'Unknown error')
    return {
        'text': f"❌ Backup failed for {project}/{dataset}",
        'blocks': [
            {
                'type': 'header',
                'text': {'type': 'plain_text', 'text': '❌ Backup Failed', 'emoji': True}
            },
            {
                'type': 'section',
                'fields': [
                    _field('Project', project),
                    _field('Dataset', dataset),
                ]
            },
            {
                'type': 'section',
                'text': {'type': 'mrkdwn', 'text': f"*Error:*\n```{error}```"}
            },
            _context(f"Failed at {format_timestamp(now)}"),
        ],
        'attachments': [
            {
                'color': 'danger',
                'fields': [
                    {'title': 'Action Required', 'value': 'Please check the backup logs for details', 'short': False},
                ]
            }
        ]
    }


def build_message(notification: Notification, now: Optional[datetime] = None) -> dict:
    if notification.status == 'success':
        return build_success_message(notification, now)
    return build_failure_message(notification, now)


class SlackNotifier:
    """
    Posts backup results to a Slack incoming webhook.
    """

    def __init__(self, webhook_url: Optional[str], session: Optional[requests.Session] = None, timeout: int = 10):
        self.webhook_url = webhook_url
        self.session = session or requests.Session()
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self.webhook_url)

    def send(self, notification: Notification) -> bool:
        """
        Send a run result.

        Returns:
            True if the webhook accepted the message, False if notifications
            are disabled or delivery failed
        """
        if not self.enabled:
            logger.info("No webhook URL configured, skipping notification")
            return False

        try:
            self._post(build_message(notification))
        except Exception as e:
            logger.error(f"Failed to send {notification.status} notification: {self._clean(str(e))}")
            return False

        logger.info(
            f"Notification sent ({notification.status}) for "
            f"{notification.project_id}/{notification.dataset}"
        )
        return True

    def send_test(self):
        """
        Send a test message to check the webhook.

        Raises:
            NotificationError: If no webhook is configured or delivery fails
        """
        if not self.enabled:
            raise NotificationError("Notification webhook not configured")

        message = {
            'text': '🧪 Test notification from Sanity R2 Backup',
            'blocks': [
                {
                    'type': 'section',
                    'text': {
                        'type': 'mrkdwn',
                        'text': '🧪 *Test Notification*\n\nThis is a test message to verify your Slack webhook configuration.'
                    }
                },
                _context(f"Sent at {format_timestamp()}"),
            ]
        }

        try:
            self._post(message)
        except NotificationError:
            raise
        except requests.RequestException as e:
            raise NotificationError(f"Failed to send test notification: {self._clean(str(e))}")

        logger.info("Test notification sent successfully")

    def _post(self, message: dict):
        response = self.session.post(self.webhook_url, json=message, timeout=self.timeout)
        if not 200 <= response.status_code < 300:
            raise NotificationError(
                f"Slack API error: {response.status_code} - {self._clean(response.text[:200])}"
            )

    def _clean(self, text: str) -> str:
        return sanitize(text, url_secrets(self.webhook_url))
