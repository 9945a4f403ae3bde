"""Classify committed game-state writes and roll back implausible ones.

A write is compared against the snapshot taken before it. Each violating
field gets a corrective value; the corrective write is issued through the
store, re-deriving the classification from the latest snapshot so that a
rollback applied twice is a no-op.
"""

import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from partyguard.errors import ConcurrentUpdateConflict
from .policy import SecurityPolicy

UPDATE = 'update'
ADMIN_RESET = 'admin_reset'


class ViolationKind(str, enum.Enum):
    SCORE_JUMP = 'score_jump'
    PHASE_SKIP = 'phase_skip'
    RATING = 'rating'
    FSK_CATEGORY = 'fsk_category'


@dataclass(frozen=True)
class Actor:
    user_id: Optional[int]
    is_admin: bool = False
    age_verified: bool = False
    age_level: int = 0


@dataclass(frozen=True)
class GameSnapshot:
    game_id: int
    game_code: str
    phase: Optional[str]
    age_rating: Optional[int] = None
    categories: Tuple[str, ...] = ()
    scores: Mapping[int, int] = field(default_factory=dict)
    score_times: Mapping[int, Optional[float]] = field(default_factory=dict)
    version: Optional[int] = None


@dataclass(frozen=True)
class Violation:
    kind: ViolationKind
    reason: str
    field: str  # score | phase | age_rating | selected_categories
    previous: Any
    attempted: Any
    corrective: Any
    player_id: Optional[int] = None

    @property
    def field_key(self) -> str:
        return f'score:{self.player_id}' if self.field == 'score' else self.field


@dataclass(frozen=True)
class Classification:
    violations: Tuple[Violation, ...] = ()

    @property
    def clean(self) -> bool:
        return not self.violations

    @property
    def kind(self) -> Optional[ViolationKind]:
        return self.violations[0].kind if self.violations else None


@dataclass(frozen=True)
class EnforcementResult:
    classification: Classification
    applied: bool = False
    unresolved: bool = False
    attempts: int = 0


class WriteValidator:
    def __init__(self, policy: SecurityPolicy, store=None, logger: Optional[logging.Logger] = None):
        self.policy = policy
        self.store = store
        self.logger = logger or logging.getLogger(__name__)

    def classify(self, previous: Optional[GameSnapshot], current: GameSnapshot, actor: Actor,
                 action: str = UPDATE, now: Optional[float] = None) -> Classification:
        now = time.time() if now is None else now
        admin_reset = action == ADMIN_RESET and actor.is_admin
        violations = []
        if not admin_reset:
            violations.extend(self._check_scores(previous, current, now))
            phase = self._check_phase(previous, current)
            if phase:
                violations.append(phase)
        if not actor.is_admin:
            rating = self._check_rating(previous, current)
            if rating:
                violations.append(rating)
        fsk = self._check_categories(previous, current, actor)
        if fsk:
            violations.append(fsk)
        return Classification(tuple(violations))

    def _check_scores(self, previous, current, now):
        found = []
        absolute_max = self.policy.score_absolute_max
        for player_id, score in sorted(current.scores.items()):
            prev = previous.scores.get(player_id, 0) if previous else 0
            if score == prev:
                continue
            if score < 0:
                found.append(Violation(ViolationKind.SCORE_JUMP, 'negative_score', 'score',
                                       prev, score, max(prev, 0), player_id))
                continue
            last_write = previous.score_times.get(player_id) if previous else None
            elapsed = (now - last_write) if last_write is not None else None
            allowed = self.policy.allowed_score_delta(elapsed)
            if score - prev > allowed:
                corrective = min(prev + allowed, max(prev, absolute_max))
                found.append(Violation(ViolationKind.SCORE_JUMP, 'score_increase_too_high', 'score',
                                       prev, score, corrective, player_id))
            elif score > absolute_max:
                found.append(Violation(ViolationKind.SCORE_JUMP, 'score_too_high', 'score',
                                       prev, score, max(prev, absolute_max), player_id))
        return found

    def _check_phase(self, previous, current):
        order = self.policy.phase_order
        prev = previous.phase if previous and previous.phase else order[0]
        new = current.phase
        if new == prev or new is None:
            return None
        if new not in order:
            return Violation(ViolationKind.PHASE_SKIP, 'invalid_phase', 'phase', prev, new, prev)
        if prev not in order:
            # Legacy value we cannot place in the order; accept a move to a known phase
            return None
        if self.policy.phase_transition_allowed(prev, new):
            return None
        step = order.index(new) - order.index(prev)
        if step == 1:
            return None
        if step < 0:
            return Violation(ViolationKind.PHASE_SKIP, 'phase_regression', 'phase', prev, new, prev)
        return Violation(ViolationKind.PHASE_SKIP, 'phase_skip', 'phase', prev, new,
                         order[order.index(prev) + 1])

    def _check_rating(self, previous, current):
        if previous is None or previous.age_rating is None:
            return None
        new = current.age_rating
        if new is None:
            return Violation(ViolationKind.RATING, 'rating_cleared', 'age_rating',
                             previous.age_rating, new, previous.age_rating)
        if new < previous.age_rating:
            return Violation(ViolationKind.RATING, 'rating_lowered', 'age_rating',
                             previous.age_rating, new, previous.age_rating)
        return None

    def _check_categories(self, previous, current, actor):
        before = tuple(previous.categories) if previous else ()
        after = tuple(current.categories)
        if before == after:
            return None
        levels = self.policy.restricted_categories
        for category in after:
            required = levels.get(category)
            if required is None:
                continue
            if not actor.age_verified:
                reason = 'age_not_verified'
            elif actor.age_level < required:
                reason = f'{category}_not_verified'
            else:
                continue
            return Violation(ViolationKind.FSK_CATEGORY, reason, 'selected_categories',
                             list(before), list(after), list(before))
        return None

    def enforce(self, game_id: int, before: Optional[GameSnapshot], actor: Actor,
                action: str = UPDATE, now: Optional[float] = None) -> EnforcementResult:
        """Classify the committed write and roll back violating fields.

        On a conflicting concurrent write the classification is re-derived
        once from a fresh snapshot; a second conflict leaves it unresolved.
        A store failure (timeout, lost connection) is not retried: a known
        violation is reported unresolved, an unreadable record is logged and
        let through.
        """
        now = time.time() if now is None else now
        last = Classification()
        for attempt in (1, 2):
            try:
                latest = self.store.snapshot(game_id)
            except SQLAlchemyError as exc:
                self.store.rollback()
                self.logger.error(f"[rollback-failed] game={game_id} user={actor.user_id} snapshot: {exc}")
                return EnforcementResult(last, unresolved=not last.clean, attempts=attempt)
            if latest is None:
                return EnforcementResult(Classification(), attempts=attempt)
            result = self.classify(before, latest, actor, action, now)
            if result.clean:
                return EnforcementResult(result, attempts=attempt)
            last = result
            try:
                self.store.apply_corrections(game_id, latest.version, result.violations, now)
            except ConcurrentUpdateConflict as exc:
                self.logger.warning(f"[rollback-conflict] game={latest.game_code} attempt={attempt} {exc}")
                continue
            except SQLAlchemyError as exc:
                self.store.rollback()
                self.logger.critical(
                    f"[rollback-failed] game={latest.game_code} user={actor.user_id} store error: {exc}"
                )
                return EnforcementResult(result, unresolved=True, attempts=attempt)
            self.logger.info(
                f"[rollback] game={latest.game_code} user={actor.user_id} "
                f"fields={','.join(v.field_key for v in result.violations)}"
            )
            return EnforcementResult(result, applied=True, attempts=attempt)
        self.logger.critical(f"[rollback-failed] game={game_id} user={actor.user_id} could not settle corrective write")
        return EnforcementResult(last, unresolved=True, attempts=2)
