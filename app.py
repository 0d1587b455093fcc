import os
import logging
from datetime import timedelta
from flask import Flask, current_app, jsonify
from dotenv import load_dotenv
from flask_jwt_extended import JWTManager
from flask_limiter.errors import RateLimitExceeded
from flask_wtf.csrf import CSRFError
from werkzeug.exceptions import HTTPException
from extensions import db, migrate, limiter, csrf
from errors import BillingError, ServerError, Unauthorized
from credits import credits_bp
from billing import billing_bp, billing_webhooks_bp

load_dotenv()


def _flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def init_jwt_manager(jwt: JWTManager):
    @jwt.expired_token_loader
    def expired_token_callback(jwt_header, jwt_payload):
        return jsonify(Unauthorized("Token has expired").to_dict()), 401

    @jwt.invalid_token_loader
    def invalid_token_callback(err):
        return jsonify(Unauthorized("Invalid token").to_dict()), 401

    @jwt.unauthorized_loader
    def missing_token_callback(err):
        return jsonify(Unauthorized("Authorization required").to_dict()), 401


def register_error_handlers(app: Flask):
    @app.errorhandler(BillingError)
    def handle_billing_error(err: BillingError):
        return jsonify(err.to_dict()), err.status_code

    @app.errorhandler(CSRFError)
    def handle_csrf_error(e):
        return jsonify({"ok": False, "error": {"code": "csrf_failed", "message": e.description}}), 400

    @app.errorhandler(RateLimitExceeded)
    def handle_ratelimit_error(e):
        return jsonify({"ok": False, "error": {"code": "rate_limited", "message": "Too many requests."}}), 429

    @app.errorhandler(Exception)
    def handle_uncaught_error(err: Exception):
        if isinstance(err, HTTPException):
            return err
        db.session.rollback()
        current_app.logger.exception("unhandled error")
        # In debug, include a short repr; in prod, hide internals.
        payload = ServerError("Something went wrong").to_dict()
        if current_app.debug:
            payload["error"]["details"] = {"exception": repr(err)}
        return jsonify(payload), 500


def create_app(config_overrides=None):
    app = Flask(__name__, instance_relative_config=True)

    app.config.from_mapping(
        SECRET_KEY=os.getenv('SECRET_KEY', 'dev'),
        JWT_SECRET_KEY=os.getenv('JWT_SECRET_KEY', os.getenv('SECRET_KEY', 'dev')),
        SQLALCHEMY_DATABASE_URI=os.getenv(
            'DATABASE_URL', f"sqlite:///{os.path.join(app.instance_path, 'app.db')}"
        ),
        SQLALCHEMY_TRACK_MODIFICATIONS=False,
        JWT_ACCESS_TOKEN_EXPIRES=timedelta(days=1),

        APP_ENV=os.getenv('APP_ENV', 'development'),
        LOG_LEVEL=os.getenv('LOG_LEVEL', 'INFO'),

        DODO_WEBHOOK_SECRET=os.getenv('DODO_WEBHOOK_SECRET'),
        WEBHOOK_TOLERANCE_SECONDS=int(os.getenv('WEBHOOK_TOLERANCE_SECONDS', 300)),
        WEBHOOK_ALLOW_UNSIGNED=_flag('WEBHOOK_ALLOW_UNSIGNED'),
        DODO_PRODUCT_PRO_MONTHLY=os.getenv('DODO_PRODUCT_PRO_MONTHLY', 'prod_pro_monthly'),
        DODO_PRODUCT_GROWTH_MONTHLY=os.getenv('DODO_PRODUCT_GROWTH_MONTHLY', 'prod_growth_monthly'),
        DODO_PRODUCT_SCALE_MONTHLY=os.getenv('DODO_PRODUCT_SCALE_MONTHLY', 'prod_scale_monthly'),
        CHECKOUT_SESSION_TTL_MINUTES=int(os.getenv('CHECKOUT_SESSION_TTL_MINUTES', 30)),

        RATELIMIT_HEADERS_ENABLED=True,
    )
    # ───────── COOKIE SETTINGS ─────────
    app.config.update({
        "JWT_TOKEN_LOCATION": ["cookies", "headers"],
        "JWT_COOKIE_SECURE": True,                    # only send over HTTPS
        "JWT_COOKIE_SAMESITE": "Lax",
        "JWT_COOKIE_CSRF_PROTECT": True,              # enable double-submit CSRF
        "JWT_ACCESS_COOKIE_PATH": "/",
        "JWT_ACCESS_CSRF_COOKIE_PATH": "/",
        "WTF_CSRF_TIME_LIMIT": 3600,
        "WTF_CSRF_METHODS": ['POST', 'PUT', 'PATCH', 'DELETE'],
        "WTF_CSRF_HEADERS": ["X-CSRFToken", "X-CSRF-Token"],
    })

    app.config.setdefault('CELERY_BROKER_URL', os.getenv('CELERY_BROKER_URL', 'redis://127.0.0.1:6379/0'))
    app.config.setdefault('CELERY_RESULT_BACKEND', os.getenv('CELERY_RESULT_BACKEND', 'redis://127.0.0.1:6379/1'))
    app.config.setdefault('CELERY_TIMEZONE', os.getenv('CELERY_TIMEZONE', 'UTC'))

    if config_overrides:
        app.config.update(config_overrides)

    app.logger.setLevel(getattr(logging, str(app.config["LOG_LEVEL"]).upper(), logging.INFO))

    os.makedirs(app.instance_path, exist_ok=True)

    csrf.init_app(app)
    limiter.init_app(app)
    jwt = JWTManager(app)
    db.init_app(app)
    migrate.init_app(app, db)

    # models must be imported before create_all / migrations see the metadata
    import accounts.models  # noqa: F401
    import credits.models  # noqa: F401
    import billing.models  # noqa: F401

    app.register_blueprint(credits_bp)
    app.register_blueprint(billing_bp)
    app.register_blueprint(billing_webhooks_bp)

    init_jwt_manager(jwt)
    register_error_handlers(app)

    @app.get('/health')
    def health():
        return jsonify({"ok": True}), 200

    return app


if __name__ == '__main__':
    app = create_app()
    app.run(host='0.0.0.0', port=int(os.getenv('PORT', 5000)), debug=True)
