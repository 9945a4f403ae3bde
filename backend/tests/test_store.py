import pytest

from partyguard import db
from partyguard.errors import ConcurrentUpdateConflict
from partyguard.models import Game, Player
from partyguard.services.security import GameStore
from partyguard.services.security.validator import Violation, ViolationKind

NOW = 1_800_000_000.0


@pytest.fixture()
def game(app_ctx, make_user):
    host = make_user('host')
    g = Game(host_id=host.id, phase='playing', current_round=1, updated_at=NOW - 10)
    db.session.add(g)
    db.session.flush()
    db.session.add(Player(name='host', game_id=g.id, user_id=host.id, score=500, score_updated_at=NOW))
    db.session.commit()
    return g


def _score_fix(player_id, corrective=120):
    return Violation(ViolationKind.SCORE_JUMP, 'score_increase_too_high', 'score', 100, 500, corrective,
                     player_id=player_id)


def test_snapshot_reads_the_committed_record(game):
    snap = GameStore().snapshot(game.id)
    assert snap.game_code == game.game_code
    assert snap.phase == 'playing'
    assert list(snap.scores.values()) == [500]
    assert snap.version == game.version
    assert GameStore().snapshot(9999) is None


def test_apply_corrections_bumps_version(game):
    store = GameStore()
    before = store.snapshot(game.id)
    pid = game.players[0].id
    store.apply_corrections(game.id, before.version, [_score_fix(pid)], now=NOW + 1)
    after = store.snapshot(game.id)
    assert after.scores[pid] == 120
    assert after.score_times[pid] == NOW + 1
    assert after.version == before.version + 1


def test_moved_version_is_a_conflict(game):
    store = GameStore()
    pid = game.players[0].id
    stale_version = store.snapshot(game.id).version
    game.phase = 'results'
    db.session.commit()

    with pytest.raises(ConcurrentUpdateConflict) as exc:
        store.apply_corrections(game.id, stale_version, [_score_fix(pid)], now=NOW)
    assert exc.value.record_id == game.id
    assert db.session.get(Player, pid).score == 500


def test_write_racing_the_correction_is_a_conflict(game):
    store = GameStore()
    pid = game.players[0].id
    expected = store.snapshot(game.id).version
    table = Game.__table__

    def corrections():
        # another worker commits between the version check and the flush
        with db.engine.begin() as conn:
            conn.execute(table.update().where(table.c.id == game.id)
                         .values(phase='results', version=table.c.version + 1))
        yield _score_fix(pid)

    with pytest.raises(ConcurrentUpdateConflict):
        store.apply_corrections(game.id, expected, corrections(), now=NOW)
    refreshed = store.snapshot(game.id)
    assert refreshed.phase == 'results'
    assert refreshed.scores[pid] == 500
