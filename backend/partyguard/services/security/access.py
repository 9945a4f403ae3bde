import time
from functools import wraps

from flask import current_app, jsonify
from flask_login import current_user

from .policy import BANNED, THROTTLED


def guarded_write(view):
    """Store-boundary gate for write endpoints; place below ``login_required``.

    Banned users get a generic 403. Throttled users get one write per
    THROTTLE_INTERVAL_MS, anything faster is answered with 429.
    """
    @wraps(view)
    def wrapper(*args, **kwargs):
        trigger = current_app.extensions['security']
        user_id = current_user.id
        status = trigger.escalator.effective_status(user_id)
        if status == BANNED:
            current_app.logger.info(f"[write-rejected] user={user_id} status=banned")
            return jsonify({'error': 'Permission denied'}), 403
        now_ms = time.time() * 1000.0
        if status == THROTTLED:
            last = trigger.last_write_ms.get(user_id, 0)
            if now_ms - last < trigger.policy.throttle_interval_ms:
                current_app.logger.info(f"[write-throttled] user={user_id}")
                return jsonify({'error': 'Too many requests'}), 429
        trigger.record_write_time(user_id, now_ms)
        return view(*args, **kwargs)
    return wrapper
