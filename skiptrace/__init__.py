"""
Flask application factory.

Creates and configures the Flask app, registers all blueprints, and wires the
engine services the routes use into app.extensions['skiptrace'].
"""
from flask import Flask


def create_app(session_factory=None, bind=None, redis_client=None):
    """Create and configure the Flask application."""
    from skiptrace.logging_config import configure_logging
    from skiptrace.config import ADMIN_TOKEN

    app = Flask(__name__)

    configure_logging(app)

    app.config['ADMIN_TOKEN'] = ADMIN_TOKEN

    # Shared engine services
    from skiptrace import database
    from skiptrace.pipeline.run_manager import RunManager

    if redis_client is None:
        from skiptrace.extensions import redis_client

    # Import models so Base.metadata knows about them (required for SQLAlchemy).
    # Schema is managed by Alembic, no init_db() call.
    database.import_models()

    app.extensions['skiptrace'] = {
        'session_factory': session_factory or database.get_session,
        'bind': bind if bind is not None else database.engine,
        'redis': redis_client,
        'run_manager': RunManager(session_factory),
        'report_generator': None,
    }

    # Register blueprints
    from skiptrace.routes.runs import bp as runs_bp
    from skiptrace.routes.admin import bp as admin_bp

    app.register_blueprint(runs_bp)
    app.register_blueprint(admin_bp)

    return app
