from functools import wraps

from flask import Blueprint, jsonify, request, current_app
from flask_login import login_required, current_user
from partyguard import db
from partyguard.models import AuditEntry, User
from partyguard.services.security import get_trigger


integrity = Blueprint('integrity', __name__)
security_admin = Blueprint('security_admin', __name__)


def _gate():
    return current_app.extensions['trust_gate']


@integrity.route('/whitelist', methods=['GET'])
def whitelist_status():
    return jsonify(_gate().summary())


@integrity.route('/whitelist/check', methods=['GET'])
def whitelist_check():
    domain = request.args.get('domain', '')
    gate = _gate()
    decision = gate.check(domain)
    if not decision.allowed:
        current_app.logger.info(f"[whitelist-deny] domain={domain!r} reason={decision.reason}")
    return jsonify({
        'domain': domain,
        'whitelisted': decision.allowed,
        'reason': decision.reason,
        'trust_state': gate.state.value,
    })


def admin_required(view):
    @wraps(view)
    def wrapper(*args, **kwargs):
        if not current_user.is_admin:
            return jsonify({'error': 'Permission denied'}), 403
        return view(*args, **kwargs)
    return wrapper


@security_admin.route('/audit', methods=['GET'])
@login_required
@admin_required
def list_audit_entries():
    query = AuditEntry.query
    user_id = request.args.get('user_id', type=int)
    if user_id is not None:
        query = query.filter_by(user_id=user_id)
    record_id = request.args.get('game_code')
    if record_id:
        query = query.filter_by(record_id=record_id.upper())
    limit = min(request.args.get('limit', 100, type=int), 500)
    entries = query.order_by(AuditEntry.id.desc()).limit(limit).all()
    return jsonify([e.to_dict() for e in entries])


@security_admin.route('/users/<int:user_id>', methods=['GET'])
@login_required
@admin_required
def user_status(user_id):
    user = db.get_or_404(User, user_id)
    escalator = get_trigger().escalator
    record = escalator.get_record(user.id)
    return jsonify({
        'user': user.to_dict(),
        'status': escalator.effective_status(user.id),
        'record': record.to_dict() if record else None,
    })


@security_admin.route('/users/<int:user_id>/pardon', methods=['POST'])
@login_required
@admin_required
def pardon_user(user_id):
    user = db.get_or_404(User, user_id)
    escalator = get_trigger().escalator
    escalator.pardon(user.id)
    current_app.logger.warning(f"[pardon] user={user.id} by={current_user.id}")
    return jsonify({'user_id': user.id, 'status': escalator.effective_status(user.id)})
