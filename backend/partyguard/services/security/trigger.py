import threading
import time
from collections import OrderedDict, deque
from dataclasses import dataclass
from typing import Callable, Deque, Optional

from sqlalchemy.exc import SQLAlchemyError

from partyguard import db
from partyguard.errors import ConcurrentUpdateConflict, EscalationNotifyFailure
from partyguard.models import GameDeletionAudit
from .escalator import EscalationResult, ViolationEscalator
from .policy import SecurityPolicy
from .validator import UPDATE, Actor, Classification, GameSnapshot, WriteValidator


@dataclass(frozen=True)
class TriggerOutcome:
    accepted: bool
    classification: Classification
    escalation: Optional[EscalationResult] = None
    unresolved: bool = False


class RealtimeTrigger:
    """Runs after every committed write to a watched game record."""

    def __init__(self, validator: WriteValidator, escalator: ViolationEscalator, policy: SecurityPolicy,
                 notifier=None, logger=None, broadcaster: Optional[Callable[[str], None]] = None):
        self.validator = validator
        self.escalator = escalator
        self.policy = policy
        self.notifier = notifier
        self.logger = logger or validator.logger
        self.broadcaster = broadcaster
        self._lock = threading.Lock()
        # game code -> recent write times, least recently written first
        self._recent_writes: 'OrderedDict[str, Deque[float]]' = OrderedDict()
        self._burst_alerted: set = set()
        # user id -> last write time (ms); read by the store-boundary throttle
        self.last_write_ms: 'OrderedDict[int, float]' = OrderedDict()

    def on_game_write(self, game_id: int, before: Optional[GameSnapshot], actor: Actor,
                      action: str = UPDATE, game_code: Optional[str] = None,
                      now: Optional[float] = None) -> TriggerOutcome:
        now = time.time() if now is None else now
        if game_code:
            self.detect_rapid_updates(game_code, now)

        enforcement = self.validator.enforce(game_id, before, actor, action, now)
        classification = enforcement.classification
        if classification.clean:
            return TriggerOutcome(True, classification)

        record_id = game_code or (before.game_code if before else str(game_id))
        try:
            escalation = self.escalator.record_violation(
                actor.user_id, classification.kind, classification.violations,
                record_id=record_id, force_ban=enforcement.unresolved, now=now,
            )
        except ConcurrentUpdateConflict as exc:
            self.logger.error(f"[escalate-failed] game={record_id} user={actor.user_id} {exc}")
            escalation = None
        except SQLAlchemyError as exc:
            db.session.rollback()
            self.logger.critical(f"[escalate-failed] game={record_id} user={actor.user_id} store error: {exc}")
            escalation = None

        if enforcement.applied and self.broadcaster is not None:
            self.broadcaster(record_id)
        return TriggerOutcome(False, classification, escalation, unresolved=enforcement.unresolved)

    def detect_rapid_updates(self, game_code: str, now: Optional[float] = None) -> bool:
        """Alert admins once per burst of writes to one game.

        Returns True when this write started a new burst alert.
        """
        now = time.time() if now is None else now
        window = self.policy.rapid_update_window_sec
        with self._lock:
            self._drop_idle_games(now)
            stamps = self._recent_writes.pop(game_code, None)
            if stamps is None:
                stamps = deque()
            stamps.append(now)
            while stamps and now - stamps[0] >= window:
                stamps.popleft()
            rate = len(stamps)
            if stamps:
                self._recent_writes[game_code] = stamps
                while len(self._recent_writes) > self.policy.tracking_cache_size:
                    evicted, _ = self._recent_writes.popitem(last=False)
                    self._burst_alerted.discard(evicted)
            if rate <= self.policy.rapid_update_limit:
                self._burst_alerted.discard(game_code)
                return False
            if game_code in self._burst_alerted:
                return False
            self._burst_alerted.add(game_code)

        self.logger.warning(f"[rapid-updates] game={game_code} updates={rate}/{window}s")
        if self.notifier is not None:
            try:
                self.notifier.dispatch({'type': 'rapid_updates', 'gameId': game_code,
                                        'updatesPerWindow': rate, 'timestamp': now})
            except EscalationNotifyFailure as exc:
                self.logger.error(f"[alert-failed] rapid_updates game={game_code} {exc}")
        return True

    def _drop_idle_games(self, now: float) -> None:
        # oldest first; stop at the first game still inside the window
        window = self.policy.rapid_update_window_sec
        while self._recent_writes:
            code, stamps = next(iter(self._recent_writes.items()))
            if stamps and now - stamps[-1] < window:
                break
            del self._recent_writes[code]
            self._burst_alerted.discard(code)

    def record_write_time(self, user_id: int, now_ms: float) -> None:
        """Remember a user's last accepted write for the throttle check."""
        interval = self.policy.throttle_interval_ms
        with self._lock:
            self.last_write_ms.pop(user_id, None)
            while self.last_write_ms:
                oldest = next(iter(self.last_write_ms.values()))
                if now_ms - oldest < interval and len(self.last_write_ms) < self.policy.tracking_cache_size:
                    break
                self.last_write_ms.popitem(last=False)
            self.last_write_ms[user_id] = now_ms

    def on_game_delete(self, game, deleted_by: Optional[int] = None, now: Optional[float] = None) -> GameDeletionAudit:
        """Record who removed a game record; call before the delete is committed."""
        now = time.time() if now is None else now
        entry = GameDeletionAudit(
            game_code=game.game_code,
            host_id=game.host_id,
            player_count=len(game.players),
            deleted_by=deleted_by,
            deleted_at=now,
        )
        db.session.add(entry)
        with self._lock:
            self._recent_writes.pop(game.game_code, None)
            self._burst_alerted.discard(game.game_code)
        self.logger.info(f"[game-deleted] game={game.game_code} by={deleted_by} players={entry.player_count}")
        return entry
