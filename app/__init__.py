from flask import Flask
import logging


def create_app(test_config=None):
    """Flask application factory."""
    app = Flask(__name__)

    if test_config is not None:
        app.config.update(test_config)

    logging.basicConfig(
        level=app.config.get('LOG_LEVEL', logging.INFO),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )

    # Register blueprints
    from app.main import main_bp
    app.register_blueprint(main_bp)

    return app
