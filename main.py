import logging
import os

from dotenv import load_dotenv
from flasgger import Swagger
from flask import Flask
from flask_cors import CORS

from swagger__config import SWAGGER_CONFIG, SWAGGER_TEMPLATE

load_dotenv()
from backoffice.api.booking.appointments import appointments_bp  # noqa: E402
from backoffice.api.booking.public_booking import public_booking_bp  # noqa: E402
from backoffice.api.booking.settings import booking_settings_bp  # noqa: E402
from backoffice.api.payments.invoices import invoices_bp  # noqa: E402
from backoffice.api.promotions.discount_codes import promotions_bp  # noqa: E402
from backoffice.config import Config  # noqa: E402
from backoffice.errors import register_error_handlers  # noqa: E402
from backoffice.extensions import db  # noqa: E402
from backoffice.migrations import run_migrations  # noqa: E402
from backoffice.scheduler import init_scheduler, scheduler  # noqa: E402
from backoffice.services.email_service import email_service  # noqa: E402
from backoffice.services.event_handlers import register_event_handlers  # noqa: E402
from backoffice.services.events import event_bus  # noqa: E402

logger = logging.getLogger(__name__)


def create_app(test_config=None):
    app = Flask(__name__)
    app.config.from_object(Config)
    if test_config:
        app.config.update(test_config)

    level = getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    logging.basicConfig(
        level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    app.logger.setLevel(level)

    CORS(app)
    db.init_app(app)

    host = os.environ.get("API_HOST", "127.0.0.1:5000")
    swagger_template = SWAGGER_TEMPLATE.copy()
    swagger_template["host"] = host
    Swagger(app, config=SWAGGER_CONFIG, template=swagger_template)

    register_error_handlers(app)

    blueprints = [
        appointments_bp,
        public_booking_bp,
        booking_settings_bp,
        invoices_bp,
        promotions_bp,
    ]
    for bp in blueprints:
        app.register_blueprint(bp)
        logger.debug("Blueprint %s registered", bp.name)

    email_service.init_app(app)
    run_scheduler = app.config.get("SCHEDULER_ENABLED") and not app.config.get("TESTING")
    event_bus.init_app(app, scheduler if run_scheduler else None)
    register_event_handlers(event_bus)

    if app.config.get("AUTO_MIGRATE"):
        with app.app_context():
            applied = run_migrations(db.engine)
            if applied:
                logger.info("Applied migrations: %s", applied)

    if run_scheduler:
        init_scheduler(app)

    @app.route("/")
    def home():
        """
        Root endpoint - API status
        ---
        tags:
          - Utility
        responses:
          200:
            description: API is running
            schema:
              type: object
              properties:
                status:
                  type: string
                message:
                  type: string
                docs_url:
                  type: string
        """
        return {
            "status": "ok",
            "message": "Backend is running!",
            "docs_url": "/api/docs",
        }, 200

    logger.info("Application created with %d routes", len(list(app.url_map.iter_rules())))
    return app


app = create_app()


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    app.run(
        host="0.0.0.0", port=port, debug=os.environ.get("FLASK_ENV") != "production"
    )
