import dataclasses
import json

from partyguard.models import AuditEntry, GameDeletionAudit, User, ViolationRecord


def _create_game(client, **body):
    res = client.post('/api/games/create', json=body)
    assert res.status_code == 201
    data = res.get_json()
    return data['game_code'], data['player']['id']


def _state(client, code):
    res = client.get(f'/api/games/{code}/state')
    assert res.status_code == 200
    return res.get_json()


def _user_id(username):
    return User.query.filter_by(username=username).one().id


def _no_throttle(flask_app):
    trigger = flask_app.extensions['security']
    trigger.policy = dataclasses.replace(trigger.policy, throttle_interval_ms=0)


def test_register_login_and_check(client):
    res = client.post('/register', json={'username': 'alice', 'password': 'secret'})
    assert res.status_code == 201
    assert client.get('/check_login').get_json()['user']['username'] == 'alice'
    client.post('/logout')
    assert client.post('/login', json={'username': 'alice', 'password': 'wrong'}).status_code == 401
    assert client.post('/login', json={'username': 'alice', 'password': 'secret'}).status_code == 200


def test_writes_require_login(client):
    assert client.post('/api/games/create').status_code == 401
    assert client.patch('/api/games/ABCD/state', json={'phase': 'playing'}).status_code == 401


def test_create_join_and_state(login_client):
    host = login_client('host')
    code, host_player = _create_game(host, age_rating=12)
    guest = login_client('guest')
    res = guest.post('/api/games/join', json={'game_code': code.lower(), 'name': 'Guesty'})
    assert res.status_code == 201
    state = _state(guest, code)
    assert state['phase'] == 'lobby'
    assert state['age_rating'] == 12
    assert {p['name'] for p in state['players']} == {'host', 'Guesty'}
    assert guest.post('/api/games/join', json={'game_code': code}).status_code == 400


def test_plausible_write_stands(flask_app, login_client):
    host = login_client('host')
    code, pid = _create_game(host)
    res = host.patch(f'/api/games/{code}/state', json={'phase': 'playing', 'scores': {str(pid): 15}})
    assert res.status_code == 200
    state = _state(host, code)
    assert state['phase'] == 'playing'
    assert state['players'][0]['score'] == 15
    with flask_app.app_context():
        assert AuditEntry.query.count() == 0


def test_score_jump_is_silently_reverted(flask_app, login_client):
    host = login_client('host')
    code, pid = _create_game(host)
    res = host.patch(f'/api/games/{code}/state', json={'scores': {str(pid): 500}})
    # the cheating client gets a normal answer
    assert res.status_code == 200
    assert res.get_json() == {'success': True}
    assert _state(host, code)['players'][0]['score'] == 20
    with flask_app.app_context():
        entry = AuditEntry.query.one()
        assert entry.kind == 'score_jump'
        assert entry.user_id == _user_id('host')
        assert json.loads(entry.corrective_value) == 20


def test_phase_skip_is_clamped(login_client):
    host = login_client('host')
    code, _ = _create_game(host)
    host.patch(f'/api/games/{code}/state', json={'phase': 'results'})
    assert _state(host, code)['phase'] == 'playing'


def test_rating_and_restricted_categories(flask_app, login_client):
    host = login_client('host')
    code, _ = _create_game(host, age_rating=16)
    host.patch(f'/api/games/{code}/state', json={'age_rating': 0, 'selected_categories': ['classic', 'fsk18']})
    state = _state(host, code)
    assert state['age_rating'] == 16
    assert state['selected_categories'] == []
    with flask_app.app_context():
        kinds = sorted(e.kind for e in AuditEntry.query.all())
    assert kinds == ['fsk_category', 'rating']


def test_verified_adult_may_pick_restricted_category(login_client):
    host = login_client('grownup', age_verified=True, age_level=18)
    code, _ = _create_game(host)
    host.patch(f'/api/games/{code}/state', json={'selected_categories': ['fsk18']})
    assert _state(host, code)['selected_categories'] == ['fsk18']


def test_admin_reset(login_client):
    host = login_client('host')
    code, _ = _create_game(host)
    host.patch(f'/api/games/{code}/state', json={'phase': 'playing'})
    admin = login_client('boss', is_admin=True)
    admin.patch(f'/api/games/{code}/state', json={'phase': 'lobby', 'admin_reset': True})
    assert _state(admin, code)['phase'] == 'lobby'


def test_throttled_user_is_rate_limited(flask_app, login_client):
    host = login_client('host')
    code, pid = _create_game(host)
    host.patch(f'/api/games/{code}/state', json={'scores': {str(pid): 900}})
    host.patch(f'/api/games/{code}/state', json={'scores': {str(pid): 900}})
    with flask_app.app_context():
        assert ViolationRecord.query.one().status == 'throttled'
    res = host.patch(f'/api/games/{code}/state', json={'phase': 'playing'})
    assert res.status_code == 429


def test_banned_user_is_rejected(flask_app, login_client):
    _no_throttle(flask_app)
    host = login_client('host')
    code, pid = _create_game(host)
    for score in (500, 600, 700):
        assert host.patch(f'/api/games/{code}/state', json={'scores': {str(pid): score}}).status_code == 200
    with flask_app.app_context():
        assert ViolationRecord.query.one().status == 'banned'
    res = host.patch(f'/api/games/{code}/state', json={'phase': 'playing'})
    assert res.status_code == 403
    assert res.get_json() == {'error': 'Permission denied'}
    assert host.post('/api/games/create').status_code == 403
    assert _state(host, code)['phase'] == 'lobby'


def test_invalid_payloads(login_client):
    host = login_client('host')
    code, pid = _create_game(host)
    assert host.patch(f'/api/games/{code}/state', json={'scores': {'9999': 1}}).status_code == 400
    assert host.patch(f'/api/games/{code}/state', json={'scores': {str(pid): 'ten'}}).status_code == 400
    assert host.patch(f'/api/games/{code}/state', json={'age_rating': 'adult'}).status_code == 400
    assert host.patch(f'/api/games/{code}/state', json={'selected_categories': 'fsk18'}).status_code == 400
    assert host.patch('/api/games/ZZZZ/state', json={'phase': 'playing'}).status_code == 404


def test_delete_game_is_audited(flask_app, login_client):
    host = login_client('host')
    code, _ = _create_game(host)
    guest = login_client('guest')
    guest.post('/api/games/join', json={'game_code': code})
    assert guest.delete(f'/api/games/{code}').status_code == 403
    assert host.delete(f'/api/games/{code}').status_code == 200
    with flask_app.app_context():
        audit = GameDeletionAudit.query.one()
        assert audit.game_code == code
        assert audit.player_count == 2
        assert audit.deleted_by == _user_id('host')
    assert host.get(f'/api/games/{code}/state').status_code == 404


def test_admin_security_endpoints(login_client, flask_app):
    host = login_client('host')
    code, pid = _create_game(host)
    host.patch(f'/api/games/{code}/state', json={'scores': {str(pid): 999}})
    with flask_app.app_context():
        host_id = ViolationRecord.query.one().user_id
        assert host_id == _user_id('host')

    assert host.get('/api/security/audit').status_code == 403

    admin = login_client('boss', is_admin=True)
    entries = admin.get(f'/api/security/audit?user_id={host_id}').get_json()
    assert len(entries) == 1
    assert entries[0]['record_id'] == code
    assert entries[0]['corrective_value'] == 20

    status = admin.get(f'/api/security/users/{host_id}').get_json()
    assert status['record']['count'] == 1
    assert status['status'] == 'clean'

    res = admin.post(f'/api/security/users/{host_id}/pardon')
    assert res.get_json()['status'] == 'clean'
    assert admin.get('/api/security/users/4242').status_code == 404


def test_whitelist_distrusted_without_key(client):
    assert client.get('/api/integrity/whitelist').get_json()['state'] == 'distrusted'
    res = client.get('/api/integrity/whitelist/check?domain=localhost').get_json()
    assert res == {'domain': 'localhost', 'whitelisted': False, 'reason': 'distrusted', 'trust_state': 'distrusted'}


def test_whitelist_trusted_from_config(tmp_path, signed_doc, key_pair, app_factory):
    _, public_pem = key_pair
    path = tmp_path / 'allowed-domains.json'
    path.write_text(json.dumps(signed_doc, indent=2))

    # meta tag form: PEM with the line breaks stripped
    signed_app = app_factory(WHITELIST_PATH=str(path), WHITELIST_PUBLIC_KEY=public_pem.replace('\n', ''))
    test_client = signed_app.test_client()
    summary = test_client.get('/api/integrity/whitelist').get_json()
    assert summary['state'] == 'trusted'
    assert summary['domains'] == 3
    ok = test_client.get('/api/integrity/whitelist/check?domain=play.partyguard.app').get_json()
    assert ok['whitelisted'] is True
    nope = test_client.get('/api/integrity/whitelist/check?domain=evil.example').get_json()
    assert nope['reason'] == 'not_listed'


def test_violation_is_charged_to_the_writer(flask_app, login_client):
    host = login_client('host')
    code, _ = _create_game(host)
    guest = login_client('guest')
    guest_pid = guest.post('/api/games/join', json={'game_code': code}).get_json()['id']
    host.patch(f'/api/games/{code}/state', json={'phase': 'playing'})
    guest.patch(f'/api/games/{code}/state', json={'scores': {str(guest_pid): 800}})
    with flask_app.app_context():
        record = ViolationRecord.query.one()
        assert record.user_id == _user_id('guest')
    assert host.patch(f'/api/games/{code}/state', json={'phase': 'results'}).status_code == 200


def test_store_timeout_during_rollback_is_escalated(flask_app, login_client, monkeypatch):
    from sqlalchemy.exc import TimeoutError as PoolTimeout
    from partyguard.services.security.store import GameStore

    def timed_out(self, game_id, expected_version, violations, now=None):
        raise PoolTimeout('QueuePool limit reached, connection timed out')

    monkeypatch.setattr(GameStore, 'apply_corrections', timed_out)
    host = login_client('host')
    code, pid = _create_game(host)
    res = host.patch(f'/api/games/{code}/state', json={'scores': {str(pid): 500}})
    # no hint to the client that anything was detected
    assert res.status_code == 200
    assert res.get_json() == {'success': True}
    with flask_app.app_context():
        entry = AuditEntry.query.one()
        assert entry.action == 'unresolved'
        assert entry.kind == 'score_jump'
        assert ViolationRecord.query.one().status == 'banned'
    assert host.patch(f'/api/games/{code}/state', json={'phase': 'playing'}).status_code == 403
