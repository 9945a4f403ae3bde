import json
import logging
import time
from typing import Optional

import requests
from sqlalchemy.exc import SQLAlchemyError

from partyguard import db
from partyguard.errors import EscalationNotifyFailure
from partyguard.models import AdminAlert


class AdminNotifier:
    """Best-effort admin alerts: a queued email row plus an optional chat webhook."""

    def __init__(self, admin_email: Optional[str], sender: str, slack_webhook_url: Optional[str] = None,
                 timeout: float = 5, logger: Optional[logging.Logger] = None):
        self.admin_email = admin_email
        self.sender = sender
        self.slack_webhook_url = slack_webhook_url
        self.timeout = timeout
        self.logger = logger or logging.getLogger(__name__)

    @classmethod
    def from_config(cls, cfg, logger=None) -> 'AdminNotifier':
        return cls(
            admin_email=cfg.get('ADMIN_EMAIL'),
            sender=cfg.get('ALERT_SENDER', 'security@partyguard.local'),
            slack_webhook_url=cfg.get('SLACK_WEBHOOK_URL'),
            timeout=int(cfg.get('NOTIFY_TIMEOUT_SEC', 5)),
            logger=logger,
        )

    def dispatch(self, alert: dict) -> None:
        """Deliver ``alert`` on every configured channel.

        Raises EscalationNotifyFailure if any channel failed; the others are
        still attempted.
        """
        failures = []
        if self.admin_email:
            try:
                self._queue_email(alert)
            except SQLAlchemyError as exc:
                db.session.rollback()
                failures.append(f'email queue: {exc}')
        if self.slack_webhook_url:
            try:
                self._post_webhook(alert)
            except requests.RequestException as exc:
                failures.append(f'webhook: {exc}')
        if failures:
            raise EscalationNotifyFailure('; '.join(failures))
        self.logger.info(f"[alert] type={alert.get('type')} user={alert.get('userId')}")

    def _queue_email(self, alert: dict) -> None:
        db.session.add(AdminAlert(
            recipient=self.admin_email,
            sender=self.sender,
            subject=f"Security Alert: {alert.get('type')}",
            body=json.dumps(alert, indent=2, sort_keys=True, default=str),
            status='pending',
            created_at=time.time(),
        ))
        db.session.commit()

    def _post_webhook(self, alert: dict) -> None:
        response = requests.post(
            self.slack_webhook_url,
            json={'text': f"Security Alert: {alert.get('type')}", 'data': alert},
            timeout=self.timeout,
        )
        response.raise_for_status()
