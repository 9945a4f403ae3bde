import pytest

from partyguard.errors import ConcurrentUpdateConflict
from partyguard.models import AuditEntry, Game, GameDeletionAudit, Player
from partyguard.services.security import Actor, GameSnapshot, GameStore, WriteValidator, snapshot_of
from partyguard.services.security.escalator import ViolationEscalator
from partyguard.services.security.policy import SecurityPolicy
from partyguard.services.security.trigger import RealtimeTrigger
from partyguard import db

NOW = 1_800_000_000.0


class RecordingNotifier:
    def __init__(self):
        self.alerts = []

    def dispatch(self, alert):
        self.alerts.append(alert)


class AlwaysConflicting:
    """A store whose record changes under every rollback attempt."""

    def __init__(self, current):
        self.current = current
        self.attempts = 0

    def snapshot(self, game_id):
        return self.current

    def apply_corrections(self, game_id, expected_version, violations, now=None):
        self.attempts += 1
        raise ConcurrentUpdateConflict('version moved', record_id=game_id)


@pytest.fixture()
def notifier():
    return RecordingNotifier()


@pytest.fixture()
def policy():
    return SecurityPolicy(score_max_delta=20, rapid_update_limit=3, rapid_update_window_sec=60)


def _trigger(policy, store, notifier, broadcasts=None):
    validator = WriteValidator(policy, store)
    escalator = ViolationEscalator(policy, notifier)
    return RealtimeTrigger(validator, escalator, policy, notifier,
                           broadcaster=broadcasts.append if broadcasts is not None else None)


@pytest.fixture()
def game(app_ctx, make_user):
    host = make_user('host')
    g = Game(host_id=host.id, phase='playing', current_round=1, updated_at=NOW - 10)
    db.session.add(g)
    db.session.flush()
    db.session.add(Player(name='host', game_id=g.id, user_id=host.id, score=100, score_updated_at=NOW - 10))
    db.session.commit()
    return g


def test_clean_write_is_accepted(app_ctx, game, policy, notifier):
    broadcasts = []
    trigger = _trigger(policy, GameStore(), notifier, broadcasts)
    before = snapshot_of(game)
    game.players[0].score = 110
    db.session.commit()

    outcome = trigger.on_game_write(game.id, before, Actor(user_id=game.host_id), game_code=game.game_code, now=NOW)
    assert outcome.accepted
    assert outcome.escalation is None
    assert broadcasts == []
    assert AuditEntry.query.count() == 0


def test_violating_write_is_rolled_back_and_counted(app_ctx, game, policy, notifier):
    broadcasts = []
    trigger = _trigger(policy, GameStore(), notifier, broadcasts)
    before = snapshot_of(game)
    game.players[0].score = 5000
    game.phase = 'finished'
    db.session.commit()

    outcome = trigger.on_game_write(game.id, before, Actor(user_id=game.host_id), game_code=game.game_code, now=NOW)
    assert not outcome.accepted
    assert outcome.escalation.count == 1
    assert broadcasts == [game.game_code]
    refreshed = db.session.get(Game, game.id)
    # ten seconds since the last change buys two windows of 20
    assert refreshed.players[0].score == 140
    # finishing early is always allowed
    assert refreshed.phase == 'finished'


def test_unresolved_conflict_forces_ban(app_ctx, make_user, policy, notifier):
    user = make_user('racer')
    current = GameSnapshot(game_id=1, game_code='RACE', phase='playing', age_rating=None, categories=(),
                           scores={1: 9000}, score_times={1: NOW}, version=3)
    before = GameSnapshot(game_id=1, game_code='RACE', phase='playing', age_rating=None, categories=(),
                          scores={1: 0}, score_times={1: NOW - 5}, version=2)
    store = AlwaysConflicting(current)
    trigger = _trigger(policy, store, notifier)

    outcome = trigger.on_game_write(1, before, Actor(user_id=user.id), game_code='RACE', now=NOW)
    assert outcome.unresolved
    assert store.attempts == 2
    assert outcome.escalation.status == 'banned'
    assert AuditEntry.query.one().action == 'unresolved'
    assert notifier.alerts[0]['type'] == 'user_banned'


def test_rapid_updates_alert_once_per_burst(app_ctx, policy, notifier):
    trigger = _trigger(policy, GameStore(), notifier)
    fired = [trigger.detect_rapid_updates('BUSY', now=NOW + i) for i in range(6)]
    assert fired == [False, False, False, True, False, False]
    assert len(notifier.alerts) == 1
    assert notifier.alerts[0]['type'] == 'rapid_updates'
    assert notifier.alerts[0]['gameId'] == 'BUSY'

    # quiet period ends the burst, the next one alerts again
    later = NOW + 500
    fired = [trigger.detect_rapid_updates('BUSY', now=later + i) for i in range(4)]
    assert fired == [False, False, False, True]
    assert len(notifier.alerts) == 2


def test_game_deletion_is_audited(app_ctx, game, policy, notifier):
    trigger = _trigger(policy, GameStore(), notifier)
    code = game.game_code
    entry = trigger.on_game_delete(game, deleted_by=game.host_id, now=NOW)
    db.session.commit()
    assert entry.player_count == 1
    stored = GameDeletionAudit.query.one()
    assert stored.game_code == code
    assert stored.deleted_at == NOW


def test_rapid_update_tracking_is_bounded(app_ctx, notifier):
    policy = SecurityPolicy(rapid_update_limit=3, rapid_update_window_sec=60, tracking_cache_size=50)
    trigger = _trigger(policy, GameStore(), notifier)
    for i in range(500):
        trigger.detect_rapid_updates(f'G{i:03d}', now=NOW)
    assert len(trigger._recent_writes) == 50
    # the most recently written games are the ones kept
    assert 'G499' in trigger._recent_writes
    assert 'G000' not in trigger._recent_writes


def test_idle_games_are_forgotten(app_ctx, policy, notifier):
    trigger = _trigger(policy, GameStore(), notifier)
    trigger.detect_rapid_updates('OLD1', now=NOW)
    trigger.detect_rapid_updates('OLD2', now=NOW + 1)
    trigger.detect_rapid_updates('NEW1', now=NOW + 61)
    assert list(trigger._recent_writes) == ['NEW1']


def test_write_times_are_bounded(app_ctx, notifier):
    policy = SecurityPolicy(throttle_interval_ms=1000, tracking_cache_size=10)
    trigger = _trigger(policy, GameStore(), notifier)
    for user_id in range(100):
        trigger.record_write_time(user_id, 5000.0)
    assert len(trigger.last_write_ms) == 10
    assert trigger.last_write_ms[99] == 5000.0
    # entries older than the throttle interval are of no use and get dropped
    trigger.record_write_time(7, 9000.0)
    assert dict(trigger.last_write_ms) == {7: 9000.0}


class TimingOutStore:
    def __init__(self, current):
        self.current = current
        self.rolled_back = False

    def snapshot(self, game_id):
        return self.current

    def apply_corrections(self, game_id, expected_version, violations, now=None):
        from sqlalchemy.exc import TimeoutError as PoolTimeout
        raise PoolTimeout('connection timed out')

    def rollback(self):
        self.rolled_back = True


def test_store_timeout_forces_unresolved_ban(app_ctx, make_user, policy, notifier):
    user = make_user('slow')
    before = GameSnapshot(game_id=1, game_code='SLOW', phase='lobby', scores={1: 0},
                          score_times={1: NOW - 5}, version=1)
    store = TimingOutStore(GameSnapshot(game_id=1, game_code='SLOW', phase='finished', scores={1: 900},
                                        score_times={1: NOW}, version=2))
    outcome = _trigger(policy, store, notifier).on_game_write(1, before, Actor(user_id=user.id),
                                                              game_code='SLOW', now=NOW)
    assert store.rolled_back
    assert outcome.unresolved
    assert outcome.escalation.status == 'banned'
    assert AuditEntry.query.one().action == 'unresolved'


def test_escalation_store_error_is_logged_not_raised(app_ctx, policy, notifier, monkeypatch, caplog):
    from sqlalchemy.exc import OperationalError

    store = AlwaysConflicting(GameSnapshot(game_id=1, game_code='LOCK', phase='results', version=2))
    trigger = _trigger(policy, store, notifier)

    def db_down(*args, **kwargs):
        raise OperationalError('UPDATE violation_record', {}, Exception('database is locked'))

    monkeypatch.setattr(trigger.escalator, 'record_violation', db_down)
    before = GameSnapshot(game_id=1, game_code='LOCK', phase='lobby', version=1)
    outcome = trigger.on_game_write(1, before, Actor(user_id=5), game_code='LOCK', now=NOW)
    assert not outcome.accepted
    assert outcome.escalation is None
    assert any('[escalate-failed]' in r.getMessage() for r in caplog.records)
