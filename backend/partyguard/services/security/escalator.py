import json
import logging
import time
from dataclasses import dataclass
from typing import Iterable, Optional

from sqlalchemy import exc as sa_exc
from sqlalchemy.orm.exc import StaleDataError

from partyguard import db
from partyguard.errors import ConcurrentUpdateConflict, EscalationNotifyFailure
from partyguard.models import AuditEntry, ViolationRecord
from .policy import BANNED, CLEAN, STATUS_RANK, THROTTLED, SecurityPolicy
from .validator import Violation

ACTION_ROLLBACK = 'rollback'
ACTION_THROTTLE = 'throttle'
ACTION_BAN = 'ban'
ACTION_UNRESOLVED = 'unresolved'


@dataclass(frozen=True)
class EscalationResult:
    user_id: Optional[int]
    count: int
    status: str
    previous_status: str
    action: str
    notified: bool = False

    @property
    def crossed(self) -> bool:
        return STATUS_RANK[self.status] > STATUS_RANK[self.previous_status]


def _dump(value) -> Optional[str]:
    return None if value is None else json.dumps(value, default=str)


class ViolationEscalator:
    """Per-user violation counting with a decay window, throttling and bans.

    The count decays on read: once ``violation_window_sec`` has passed since
    the last violation the user is treated as clean again, without any
    background sweep.
    """

    def __init__(self, policy: SecurityPolicy, notifier=None, logger: Optional[logging.Logger] = None):
        self.policy = policy
        self.notifier = notifier
        self.logger = logger or logging.getLogger(__name__)

    def _decayed_count(self, record: Optional[ViolationRecord], now: float) -> int:
        if record is None or not record.count:
            return 0
        if record.last_violation_at is None or now - record.last_violation_at > self.policy.violation_window_sec:
            return 0
        return record.count

    def _status_of(self, record, now) -> str:
        count = self._decayed_count(record, now)
        if count == 0:
            return CLEAN
        return record.status if record.status in STATUS_RANK else self.policy.status_for(count)

    def effective_status(self, user_id: Optional[int], now: Optional[float] = None) -> str:
        if user_id is None:
            return CLEAN
        now = time.time() if now is None else now
        record = ViolationRecord.query.filter_by(user_id=user_id).first()
        return self._status_of(record, now)

    def get_record(self, user_id: int) -> Optional[ViolationRecord]:
        return ViolationRecord.query.filter_by(user_id=user_id).first()

    def record_violation(self, user_id: Optional[int], kind, audit_fields: Iterable[Violation] = (),
                         record_id: Optional[str] = None, force_ban: bool = False,
                         now: Optional[float] = None) -> EscalationResult:
        """Count one violating write for ``user_id`` and append its audit trail.

        The counter update and the audit rows commit in one transaction,
        retried on a concurrent update of the same user's record.
        """
        now = time.time() if now is None else now
        kind = getattr(kind, 'value', kind)
        audit_fields = list(audit_fields)
        result = None
        for attempt in range(1, max(1, self.policy.escalation_max_retries) + 1):
            try:
                result = self._apply(user_id, kind, audit_fields, record_id, force_ban, now)
                break
            except (StaleDataError, sa_exc.IntegrityError) as exc:
                db.session.rollback()
                self.logger.warning(f"[escalate-retry] user={user_id} attempt={attempt} {type(exc).__name__}")
        if result is None:
            self.logger.error(f"[escalate-failed] user={user_id} kind={kind} gave up after retries")
            raise ConcurrentUpdateConflict(f'violation record for user {user_id} kept changing', record_id=user_id)

        log = self.logger.warning if result.crossed else self.logger.info
        log(f"[violation] user={user_id} game={record_id} kind={kind} count={result.count} "
            f"status={result.previous_status}->{result.status} action={result.action}")

        if result.crossed and self.notifier is not None:
            alert = {
                'type': f'user_{result.status}',
                'userId': user_id,
                'violationKind': kind,
                'count': result.count,
                'status': result.status,
                'gameId': record_id,
                'timestamp': now,
            }
            try:
                self.notifier.dispatch(alert)
                result = EscalationResult(result.user_id, result.count, result.status,
                                          result.previous_status, result.action, notified=True)
            except EscalationNotifyFailure as exc:
                self.logger.error(f"[alert-failed] user={user_id} status={result.status} {exc}")
        return result

    def _apply(self, user_id, kind, audit_fields, record_id, force_ban, now) -> EscalationResult:
        record = None
        previous_status = CLEAN
        count = 1
        if user_id is not None:
            record = ViolationRecord.query.filter_by(user_id=user_id).populate_existing().first()
            if record is None:
                record = ViolationRecord(user_id=user_id, count=0, status=CLEAN)
                db.session.add(record)
            previous_status = self._status_of(record, now)
            count = self._decayed_count(record, now) + 1
            if force_ban:
                count = max(count, self.policy.ban_threshold)
        status = BANNED if force_ban else self.policy.status_for(count)
        if record is not None:
            record.count = count
            record.last_violation_at = now
            record.status = status

        if force_ban:
            action = ACTION_UNRESOLVED
        elif status == BANNED:
            action = ACTION_BAN
        elif status == THROTTLED:
            action = ACTION_THROTTLE
        else:
            action = ACTION_ROLLBACK

        entries = audit_fields or [None]
        for violation in entries:
            db.session.add(AuditEntry(
                timestamp=now,
                user_id=user_id,
                record_id=record_id,
                kind=getattr(violation.kind, 'value', violation.kind) if violation else kind,
                reason=violation.reason if violation else None,
                field=violation.field_key if violation else None,
                previous_value=_dump(violation.previous) if violation else None,
                corrective_value=_dump(violation.corrective) if violation else None,
                action=action,
            ))
        db.session.commit()
        return EscalationResult(user_id, count, status, previous_status, action)

    def pardon(self, user_id: int, now: Optional[float] = None) -> Optional[ViolationRecord]:
        """Admin override: clear a user's count and status."""
        record = ViolationRecord.query.filter_by(user_id=user_id).first()
        if record is None:
            return None
        record.count = 0
        record.status = CLEAN
        db.session.commit()
        self.logger.warning(f"[pardon] user={user_id}")
        return record
