from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from flask_bcrypt import Bcrypt
from flask_login import LoginManager
from flask_cors import CORS
from flask_migrate import Migrate
from flask_socketio import SocketIO
import os
import click
from config import Config

db = SQLAlchemy()
bcrypt = Bcrypt()
login_manager = LoginManager()
migrate = Migrate()
allowed_origins = [
    "http://localhost:5173",
    "http://127.0.0.1:5173",
]
socketio = SocketIO(cors_allowed_origins=allowed_origins, async_mode=None)

def create_app(config_class=Config):
    flask_app = Flask(__name__)
    flask_app.config.from_object(config_class)

    db.init_app(flask_app)
    bcrypt.init_app(flask_app)
    login_manager.init_app(flask_app)
    migrate.init_app(flask_app, db)
    CORS(flask_app, supports_credentials=True, origins=allowed_origins)

    socketio.init_app(flask_app, cors_allowed_origins=allowed_origins)

    from partyguard.services import security
    from partyguard.socketio_events import broadcast_state_update
    security.init_app(flask_app, broadcaster=broadcast_state_update)

    _init_trust_gate(flask_app)

    from partyguard.main import main
    flask_app.register_blueprint(main)

    from partyguard.api.games import games
    flask_app.register_blueprint(games, url_prefix='/api/games')

    from partyguard.api.security import integrity, security_admin
    flask_app.register_blueprint(integrity, url_prefix='/api/integrity')
    flask_app.register_blueprint(security_admin, url_prefix='/api/security')

    from partyguard.socketio_events import register_socketio_handlers
    register_socketio_handlers(testing=flask_app.config.get('TESTING', False))

    from partyguard.models import User

    @login_manager.user_loader
    def load_user(user_id):
        return db.session.get(User, int(user_id))

    @click.command('db-reset')
    def db_reset_command():
        """Drops, recreates, and seeds the database."""
        with flask_app.app_context():
            db.drop_all()
            db.create_all()

            admin = User(username='admin', is_admin=True, age_verified=True, age_level=18)
            admin.set_password('password')
            db.session.add(admin)
            for u in ['testuser1', 'testuser2', 'testuser3']:
                user = User(username=u)
                user.set_password('password')
                db.session.add(user)

            db.session.commit()
            print('Database has been reset and seeded!')

    @click.command('verify-whitelist')
    def verify_whitelist_command():
        """Re-verify the signed whitelist and report the trust state."""
        gate = _init_trust_gate(flask_app)
        summary = gate.summary()
        click.echo(f"Whitelist {summary['state']}: version={summary['version']} "
                   f"domains={summary['domains']} patterns={summary['patterns']}")
        if summary['state'] != 'trusted':
            raise SystemExit(1)

    from partyguard.services.integrity.distributor import keygen_command, sign_whitelist_command
    flask_app.cli.add_command(db_reset_command)
    flask_app.cli.add_command(verify_whitelist_command)
    flask_app.cli.add_command(sign_whitelist_command)
    flask_app.cli.add_command(keygen_command)

    return flask_app

def _init_trust_gate(flask_app):
    """Verify the signed whitelist once at start-up; fail closed if anything is missing."""
    from partyguard.services.integrity import ConfigTrustGate

    gate = ConfigTrustGate(logger=flask_app.logger)
    flask_app.extensions['trust_gate'] = gate

    public_key = flask_app.config.get('WHITELIST_PUBLIC_KEY')
    key_path = flask_app.config.get('WHITELIST_PUBLIC_KEY_PATH')
    if not public_key and key_path and os.path.isfile(key_path):
        with open(key_path, 'r', encoding='utf-8') as f:
            public_key = f.read()
    artifact_path = flask_app.config.get('WHITELIST_PATH')

    if not public_key:
        gate.mark_unavailable('no whitelist public key configured')
    elif not artifact_path or not os.path.isfile(artifact_path):
        gate.mark_unavailable(f'whitelist artifact not found: {artifact_path}')
    else:
        gate.load_file(artifact_path, public_key)
    return gate
