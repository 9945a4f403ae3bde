from partyguard import db, bcrypt
from flask_login import UserMixin
import json
import string
import random
import time

class User(UserMixin, db.Model):
    __tablename__ = 'user'
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(64), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(256), nullable=False)
    is_admin = db.Column(db.Boolean, default=False, nullable=False)
    age_verified = db.Column(db.Boolean, default=False, nullable=False)
    age_level = db.Column(db.Integer, default=0, nullable=False)

    def set_password(self, password):
        self.password_hash = bcrypt.generate_password_hash(password).decode('utf-8')

    def check_password(self, password):
        return bcrypt.check_password_hash(self.password_hash, password)

    def to_dict(self):
        return {
            'id': self.id,
            'username': self.username,
            'is_admin': self.is_admin,
            'age_verified': self.age_verified,
            'age_level': self.age_level,
        }

class Player(db.Model):
    __tablename__ = 'player'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(64), nullable=False)
    game_id = db.Column(db.Integer, db.ForeignKey('game.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    score = db.Column(db.Integer, default=0, nullable=False)
    # Wall-clock time of the last write to score; bounds plausible deltas
    score_updated_at = db.Column(db.Float, nullable=True)
    game = db.relationship('Game', back_populates='players')

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'game_id': self.game_id,
            'user_id': self.user_id,
            'score': self.score,
        }

def generate_game_code(length=4):
    """Generate a unique, short game code."""
    while True:
        code = ''.join(random.choices(string.ascii_uppercase + string.digits, k=length))
        if not Game.query.filter_by(game_code=code).first():
            return code

class Game(db.Model):
    __tablename__ = 'game'
    id = db.Column(db.Integer, primary_key=True)
    game_code = db.Column(db.String(4), unique=True, index=True)
    host_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    phase = db.Column(db.String(32), nullable=False, default='lobby')
    age_rating = db.Column(db.Integer, nullable=True, default=0)
    selected_categories = db.Column(db.Text, nullable=True)  # JSON-encoded list of category ids
    current_round = db.Column(db.Integer, nullable=True)
    updated_at = db.Column(db.Float, nullable=True)
    version = db.Column(db.Integer, nullable=False)
    players = db.relationship('Player', back_populates='game', order_by='Player.id')

    __mapper_args__ = {'version_id_col': version}

    def __init__(self, **kwargs):
        super(Game, self).__init__(**kwargs)
        if not self.game_code:
            self.game_code = generate_game_code()
        if self.updated_at is None:
            self.updated_at = time.time()

    @property
    def categories(self):
        try:
            return json.loads(self.selected_categories) if self.selected_categories else []
        except ValueError:
            return []

    @categories.setter
    def categories(self, value):
        self.selected_categories = json.dumps(list(value)) if value is not None else None

    def to_dict(self):
        return {
            'id': self.id,
            'game_code': self.game_code,
            'host_id': self.host_id,
            'phase': self.phase,
            'age_rating': self.age_rating,
            'selected_categories': self.categories,
            'current_round': self.current_round,
            'players': [p.to_dict() for p in self.players],
        }

class ViolationRecord(db.Model):
    __tablename__ = 'violation_record'
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), unique=True, nullable=False, index=True)
    count = db.Column(db.Integer, default=0, nullable=False)
    last_violation_at = db.Column(db.Float, nullable=True)
    status = db.Column(db.String(16), default='clean', nullable=False)  # clean, throttled, banned
    version = db.Column(db.Integer, nullable=False)

    __mapper_args__ = {'version_id_col': version}

    def to_dict(self):
        return {
            'user_id': self.user_id,
            'count': self.count,
            'last_violation_at': self.last_violation_at,
            'status': self.status,
        }

class AuditEntry(db.Model):
    """Append-only; rows are never updated or deleted by the service."""
    __tablename__ = 'audit_entry'
    id = db.Column(db.Integer, primary_key=True)
    timestamp = db.Column(db.Float, nullable=False, index=True)
    user_id = db.Column(db.Integer, nullable=True, index=True)
    record_id = db.Column(db.String(64), nullable=True)
    kind = db.Column(db.String(32), nullable=False)
    reason = db.Column(db.String(64), nullable=True)
    field = db.Column(db.String(64), nullable=True)
    previous_value = db.Column(db.Text, nullable=True)  # JSON
    corrective_value = db.Column(db.Text, nullable=True)  # JSON
    action = db.Column(db.String(32), nullable=False)

    def to_dict(self):
        return {
            'id': self.id,
            'timestamp': self.timestamp,
            'user_id': self.user_id,
            'record_id': self.record_id,
            'kind': self.kind,
            'reason': self.reason,
            'field': self.field,
            'previous_value': json.loads(self.previous_value) if self.previous_value else None,
            'corrective_value': json.loads(self.corrective_value) if self.corrective_value else None,
            'action': self.action,
        }

class AdminAlert(db.Model):
    """Queued admin email; an external mailer sends and marks it."""
    __tablename__ = 'admin_alert'
    id = db.Column(db.Integer, primary_key=True)
    recipient = db.Column(db.String(256), nullable=False)
    sender = db.Column(db.String(256), nullable=False)
    subject = db.Column(db.String(256), nullable=False)
    body = db.Column(db.Text, nullable=False)
    status = db.Column(db.String(16), default='pending', nullable=False)
    created_at = db.Column(db.Float, nullable=False)

class GameDeletionAudit(db.Model):
    __tablename__ = 'game_deletion_audit'
    id = db.Column(db.Integer, primary_key=True)
    game_code = db.Column(db.String(4), nullable=False)
    host_id = db.Column(db.Integer, nullable=True)
    player_count = db.Column(db.Integer, default=0, nullable=False)
    deleted_by = db.Column(db.Integer, nullable=True)
    deleted_at = db.Column(db.Float, nullable=False)
