import os
import sys
import pytest

# Ensure the backend root (containing the `partyguard` package) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
BACKEND_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if BACKEND_ROOT not in sys.path:
    sys.path.insert(0, BACKEND_ROOT)

from partyguard import create_app, db, socketio
from partyguard.services.integrity import codec


class TestConfig:
    TESTING = True
    SECRET_KEY = os.environ.get('SECRET_KEY', 'test-secret')
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    WTF_CSRF_ENABLED = False
    BCRYPT_LOG_ROUNDS = 4
    WHITELIST_PATH = None
    WHITELIST_PUBLIC_KEY = None
    WHITELIST_PUBLIC_KEY_PATH = None
    SCORE_MAX_DELTA = 20
    SCORE_DELTA_WINDOW_SEC = 5
    THROTTLE_THRESHOLD = 2
    BAN_THRESHOLD = 3
    ADMIN_EMAIL = 'admin@example.test'
    SLACK_WEBHOOK_URL = None


@pytest.fixture(scope='session')
def key_pair():
    return codec.generate_key_pair()


@pytest.fixture(scope='session')
def other_key_pair():
    return codec.generate_key_pair()


@pytest.fixture()
def whitelist_doc():
    return {
        'version': '1.2.0',
        'lastUpdated': '2026-01-01T00:00:00.000Z',
        'domains': ['partyguard.app', 'www.partyguard.app', 'localhost'],
        'patterns': [r'^192\.168\.\d+\.\d+$', r'\.web\.app$'],
    }


@pytest.fixture()
def signed_doc(whitelist_doc, key_pair):
    private_pem, _ = key_pair
    doc = dict(whitelist_doc)
    doc['signature'] = codec.sign(codec.canonicalize(doc), private_pem)
    return doc


@pytest.fixture()
def app_factory():
    """Build an extra app on top of TestConfig with a few settings overridden."""
    def _build(**overrides):
        return create_app(type('OverrideConfig', (TestConfig,), overrides))
    return _build


@pytest.fixture()
def flask_app():
    application = create_app(TestConfig)
    with application.app_context():
        # Ensure models are imported so tables are created
        import partyguard.models  # noqa: F401
        db.create_all()
    # No context is held open here: each request must get its own, or
    # Flask-Login's per-context user leaks from one test client to the next.
    yield application
    with application.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def app_ctx(flask_app):
    """App context for tests that drive the services directly, without clients."""
    with flask_app.app_context():
        yield flask_app


@pytest.fixture()
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture()
def make_user(flask_app):
    from partyguard.models import User

    def _make(username, password='password', **attrs):
        with flask_app.app_context():
            user = User(username=username, **attrs)
            user.set_password(password)
            db.session.add(user)
            db.session.commit()
            db.session.refresh(user)
        return user
    return _make


@pytest.fixture()
def login_client(flask_app, make_user):
    """Return a fresh test client logged in as a new user."""
    def _login(username, **attrs):
        make_user(username, **attrs)
        test_client = flask_app.test_client()
        res = test_client.post('/login', json={'username': username, 'password': 'password'})
        assert res.status_code == 200
        return test_client
    return _login


@pytest.fixture()
def sio_client(flask_app):
    test_client = socketio.test_client(
        flask_app,
        flask_test_client=flask_app.test_client(),
        namespace='/ws'
    )
    yield test_client
    try:
        test_client.disconnect(namespace='/ws')
    except Exception:
        pass
