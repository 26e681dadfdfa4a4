import logging

from flask import Flask
from flask.logging import default_handler

from config import Config
from db import db


def configure_logging(app: Flask) -> None:
    """Configure application logging if no handlers are present."""

    level = app.config.get('LOG_LEVEL', 'INFO')
    app.logger.removeHandler(default_handler)
    app.logger.setLevel(level)

    if app.logger.handlers:
        return

    handler = logging.StreamHandler()
    handler.setFormatter(
        logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    )

    app.logger.addHandler(handler)
    app.logger.propagate = False

    # Module loggers (logging.getLogger(__name__)) share the app's handler
    for name in ('models', 'services', 'blueprints'):
        module_logger = logging.getLogger(name)
        module_logger.setLevel(level)
        module_logger.addHandler(handler)

    app.logger.info('Logging configured at %s', level)


def create_app(config_class=Config) -> Flask:
    """Create and configure the review engine application."""

    app = Flask(__name__)
    app.config.from_object(config_class)

    configure_logging(app)
    db.init_app(app)

    from blueprints.routes import bp
    app.register_blueprint(bp)

    with app.app_context():
        db.create_all()

    return app


if __name__ == '__main__':
    create_app().run(debug=True)
