"""Realtime write policing: validation, rollback, escalation and alerts.

``init_app`` wires the pieces for a Flask app and stores the trigger in
``app.extensions['security']``; routes reach it through ``get_trigger()``.
"""

from flask import current_app

from .escalator import ViolationEscalator
from .notifier import AdminNotifier
from .policy import SecurityPolicy
from .store import GameStore, snapshot_of
from .trigger import RealtimeTrigger
from .validator import ADMIN_RESET, UPDATE, Actor, Classification, GameSnapshot, ViolationKind, WriteValidator


def init_app(flask_app, broadcaster=None) -> RealtimeTrigger:
    policy = SecurityPolicy.from_config(flask_app.config)
    notifier = AdminNotifier.from_config(flask_app.config, flask_app.logger)
    validator = WriteValidator(policy, GameStore(), flask_app.logger)
    escalator = ViolationEscalator(policy, notifier, flask_app.logger)
    trigger = RealtimeTrigger(validator, escalator, policy, notifier, flask_app.logger, broadcaster)
    flask_app.extensions['security'] = trigger
    return trigger


def get_trigger() -> RealtimeTrigger:
    return current_app.extensions['security']


def actor_for(user) -> Actor:
    return Actor(
        user_id=user.id,
        is_admin=bool(user.is_admin),
        age_verified=bool(user.age_verified),
        age_level=int(user.age_level or 0),
    )
