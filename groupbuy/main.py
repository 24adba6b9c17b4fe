# groupbuy/main.py
import logging
import time
from typing import Optional

import click
from flask import Flask, abort, g, jsonify, request, session
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from groupbuy.blueprints.catalog import catalog_bp
from groupbuy.blueprints.checkout import checkout_bp
from groupbuy.blueprints.common import PAYMENT_GATEWAY_EXTENSION
from groupbuy.blueprints.groups import groups_bp
from groupbuy.blueprints.payments import payments_bp
from groupbuy.config import Config
from groupbuy.database import Base, SessionLocal, close_db, engine as default_engine, get_db
from groupbuy.errors import GroupBuyError
from groupbuy.models import User, UserRole
from groupbuy.observability import (
    check_database_health,
    configure_logging,
    get_metrics_snapshot,
    increment_counter,
    observe_latency,
)
from groupbuy.observability.logging_config import ensure_request_id
from groupbuy.services.checkout_service import CheckoutService
from groupbuy.services.payment_gateway import StripePaymentGateway

logger = logging.getLogger(__name__)


def create_app(
    config: type[Config] = Config,
    engine: Optional[Engine] = None,
    payment_gateway: Optional[StripePaymentGateway] = None,
) -> Flask:
    app = Flask(__name__)
    config.configure_app(app)
    configure_logging(app)

    db_engine = engine or default_engine
    session_factory = SessionLocal
    if engine is not None:
        session_factory = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)
    app.extensions["groupbuy.config"] = config
    app.extensions["groupbuy.engine"] = db_engine
    app.extensions["groupbuy.session_factory"] = session_factory
    app.extensions[PAYMENT_GATEWAY_EXTENSION] = payment_gateway or StripePaymentGateway.from_config(config)

    app.register_blueprint(catalog_bp)
    app.register_blueprint(groups_bp)
    app.register_blueprint(checkout_bp)
    app.register_blueprint(payments_bp)

    init_database(db_engine)
    _register_request_hooks(app)
    _register_error_handlers(app)
    _register_core_routes(app)
    _register_cli(app)
    return app


def init_database(db_engine: Engine) -> None:
    """Initialize database tables"""
    try:
        Base.metadata.create_all(bind=db_engine)
        logger.info("Database tables initialized successfully")
    except Exception as e:
        logger.exception("Error initializing database: %s", e)
        raise


def _register_request_hooks(app: Flask) -> None:
    @app.before_request
    def before_request_logging():
        g.current_user = None
        if 'user_id' in session:
            db = get_db()
            g.current_user = db.query(User).filter_by(id=session['user_id']).first()
        g.request_started_at = time.perf_counter()
        g.request_id = ensure_request_id()
        increment_counter(
            "http_requests_total",
            labels={
                "method": request.method,
                "endpoint": request.endpoint or request.path,
            },
        )

    @app.after_request
    def after_request_logging(response):
        started = getattr(g, 'request_started_at', None)
        if started is not None:
            duration_ms = (time.perf_counter() - started) * 1000
            observe_latency(
                "http_request_latency_ms",
                duration_ms,
                labels={
                    "method": request.method,
                    "endpoint": request.endpoint or request.path,
                    "status": str(response.status_code),
                },
            )
        if response.status_code >= 500:
            increment_counter(
                "http_errors_total",
                labels={
                    "method": request.method,
                    "endpoint": request.endpoint or request.path,
                    "status": str(response.status_code),
                },
            )
            logger.error("Request finished with error status %s", response.status_code)
        else:
            logger.info("Request finished", extra={"status_code": response.status_code})
        if getattr(g, "request_id", None):
            response.headers[Config.REQUEST_ID_HEADER] = g.request_id
        return response

    @app.teardown_appcontext
    def teardown_db(exception):
        close_db(exception)


def _register_error_handlers(app: Flask) -> None:
    @app.errorhandler(GroupBuyError)
    def handle_groupbuy_error(error: GroupBuyError):
        # Services roll back their own writes; clear anything left pending
        db = g.get('db')
        if db is not None:
            db.rollback()
        increment_counter(
            "http_client_errors_total",
            labels={"code": error.code, "endpoint": request.endpoint or request.path},
        )
        log = logger.error if error.status_code >= 500 else logger.info
        log("Request rejected: %s", error.message, extra={"error_code": error.code})
        return jsonify(error.to_dict()), error.status_code


def _register_core_routes(app: Flask) -> None:
    @app.route('/health', methods=['GET'])
    def health():
        db_status = check_database_health(app.extensions["groupbuy.engine"])
        overall = "UP" if db_status.get("status") == "UP" else "DEGRADED"
        status_code = 200 if overall == "UP" else 503
        return jsonify({
            "status": overall,
            "components": {
                "database": db_status
            }
        }), status_code

    @app.route('/admin/metrics', methods=['GET'])
    def admin_metrics():
        user = getattr(g, "current_user", None)
        if user is None or user.role != UserRole.ADMIN:
            abort(403)
        return jsonify(get_metrics_snapshot())


def _register_cli(app: Flask) -> None:
    @app.cli.command("expire-checkouts")
    @click.option("--group-id", type=int, default=None, help="Only sweep this group's sessions.")
    def expire_checkouts(group_id):
        """Cancel open checkout sessions whose expiry has passed."""
        db = app.extensions["groupbuy.session_factory"]()
        try:
            service = CheckoutService(
                db,
                payment_gateway=app.extensions[PAYMENT_GATEWAY_EXTENSION],
                config=app.extensions["groupbuy.config"],
            )
            expired = service.expire_stale_sessions(group_id=group_id)
        finally:
            db.close()
        click.echo(f"Expired {expired} checkout session(s)")
