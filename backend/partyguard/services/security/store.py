import time
from typing import Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from partyguard import db
from partyguard.errors import ConcurrentUpdateConflict
from partyguard.models import Game, Player
from .validator import GameSnapshot, Violation


def snapshot_of(game: Game) -> GameSnapshot:
    return GameSnapshot(
        game_id=game.id,
        game_code=game.game_code,
        phase=game.phase,
        age_rating=game.age_rating,
        categories=tuple(game.categories),
        scores={p.id: int(p.score or 0) for p in game.players},
        score_times={p.id: p.score_updated_at for p in game.players},
        version=game.version,
    )


class GameStore:
    """Shared game-state store backed by the SQLAlchemy session.

    Every write to a game, including corrective ones, bumps ``Game.version``
    so concurrent writers are detected on flush.
    """

    def rollback(self) -> None:
        db.session.rollback()

    def snapshot(self, game_id: int) -> Optional[GameSnapshot]:
        db.session.expire_all()
        game = db.session.get(Game, game_id)
        if game is None:
            return None
        return snapshot_of(game)

    def apply_corrections(self, game_id: int, expected_version: Optional[int],
                          violations: Iterable[Violation], now: Optional[float] = None) -> None:
        now = time.time() if now is None else now
        db.session.expire_all()
        game = db.session.get(Game, game_id)
        if game is None:
            raise ConcurrentUpdateConflict('game disappeared during rollback', record_id=game_id)
        if expected_version is not None and game.version != expected_version:
            raise ConcurrentUpdateConflict(
                f'game version moved {expected_version} -> {game.version}', record_id=game_id
            )
        for violation in violations:
            if violation.field == 'score':
                player = db.session.get(Player, violation.player_id)
                if player is None or player.game_id != game.id:
                    continue
                if player.score != violation.corrective:
                    player.score = violation.corrective
                    player.score_updated_at = now
            elif violation.field == 'phase':
                game.phase = violation.corrective
            elif violation.field == 'age_rating':
                game.age_rating = violation.corrective
            elif violation.field == 'selected_categories':
                game.categories = violation.corrective
        game.updated_at = now
        try:
            db.session.commit()
        except StaleDataError as exc:
            db.session.rollback()
            raise ConcurrentUpdateConflict(str(exc), record_id=game_id) from exc
        except SQLAlchemyError:
            db.session.rollback()
            raise
