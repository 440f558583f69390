import logging
import os

import click
from flask import Flask, jsonify, request
from flask_login import LoginManager, current_user, login_required, login_user, logout_user
from werkzeug.exceptions import HTTPException

from config import Config
from errors import LibraryError, ValidationFailed
import library
from models import db, User
from routes import api
import rules

login_manager = LoginManager()


@login_manager.user_loader
def load_user(user_id):
    return db.session.get(User, int(user_id))


@login_manager.unauthorized_handler
def unauthorized():
    return jsonify({'detail': 'Authentication required', 'code': 'not_authenticated'}), 401


def create_app(config_object=None):
    app = Flask(__name__)
    app.config.from_object(config_object or Config)

    logging.basicConfig(level=app.config['LOG_LEVEL'],
                        format='%(asctime)s %(levelname)s %(name)s: %(message)s')
    # Ensure upload folder exists
    os.makedirs(app.config['UPLOAD_FOLDER'], exist_ok=True)

    db.init_app(app)
    login_manager.init_app(app)

    register_auth(app)
    register_error_handlers(app)
    register_commands(app)
    app.register_blueprint(api)
    return app


def register_auth(app):
    @app.route('/api/auth/register', methods=['POST'])
    def register():
        body = request.get_json(silent=True) or {}
        profile = {k: body[k] for k in library.PROFILE_FIELDS if k in body}
        # Self-registration always creates a borrower; staff accounts come from an administrator
        user = library.register_user(body.get('username'), body.get('email'), body.get('password'),
                                     role=rules.BORROWER, **profile)
        login_user(user)
        app.logger.info('User %s registered and logged in', user.username)
        return jsonify(user.to_dict()), 201

    @app.route('/api/auth/login', methods=['POST'])
    def login():
        body = request.get_json(silent=True) or {}
        username = body.get('username')
        password = body.get('password')
        if not username or not password:
            raise ValidationFailed('Missing credentials')
        user = library.authenticate(username, password)
        if user is None:
            app.logger.warning('Failed login for %s', username)
            return jsonify({'detail': 'Invalid username or password', 'code': 'invalid_credentials'}), 401
        login_user(user)
        app.logger.info('User %s logged in', user.username)
        return jsonify(user.to_dict())

    @app.route('/api/auth/logout', methods=['POST'])
    @login_required
    def logout():
        app.logger.info('User %s logged out', current_user.username)
        logout_user()
        return '', 204

    @app.route('/api/auth/me')
    @login_required
    def me():
        return jsonify(current_user.summary(rules.utcnow()))


def register_error_handlers(app):
    @app.errorhandler(LibraryError)
    def handle_library_error(error):
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(error):
        return jsonify({'detail': error.description, 'code': error.name.lower().replace(' ', '_')}), error.code


def register_commands(app):
    @app.cli.command('init-db')
    @click.option('--admin-password', default='admin123', help='Password for the default administrator.')
    def init_db(admin_password):
        """Create tables and a default administrator."""
        db.create_all()
        # Create Admin if not exists
        if not User.query.filter_by(role=rules.ADMINISTRATOR).first():
            library.register_user('admin', 'admin@library.local', admin_password,
                                  role=rules.ADMINISTRATOR)
            click.echo('Created administrator "admin".')
        click.echo('Database ready.')

    @app.cli.command('sweep')
    def sweep():
        """Expire reservations and sanctions, send overdue and due-soon notices."""
        counts = library.sweep()
        for name, count in counts.items():
            click.echo('%s: %d' % (name, count))
        app.logger.info('Sweep finished from CLI')


if __name__ == '__main__':
    app = create_app()
    with app.app_context():
        db.create_all()
        if not User.query.filter_by(role=rules.ADMINISTRATOR).first():
            library.register_user('admin', 'admin@library.local', 'admin123', role=rules.ADMINISTRATOR)

    app.run(debug=os.environ.get('FLASK_DEBUG') == '1', host='0.0.0.0', port=5000)
