from __future__ import annotations

import logging

import click
from flask import Flask, jsonify

from app.core.auth import auth_bp
from app.core.config import Config
from app.core.extensions import db, login_manager, migrate
from app.core.logging_config import setup_logging
from app.core.models import Organization, User, seed_demo_data
from app.core.tenancy import load_tenant_context
from app.signatures import signatures_bp
from app.signatures.delivery import init_delivery
from app.workflow import workflow_bp
from app.workflow.config import WorkflowConfigError

logger = logging.getLogger(__name__)


def create_app(config_object: type[Config] | None = None) -> Flask:
    app = Flask(__name__)
    app.config.from_object(config_object or Config)
    setup_logging(app)

    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    init_delivery(app)

    app.before_request(load_tenant_context)

    app.register_blueprint(auth_bp)
    app.register_blueprint(workflow_bp)
    app.register_blueprint(signatures_bp)

    register_cli(app)
    register_error_handlers(app)
    logger.info("App created (delivery channel: %s)", app.extensions["delivery_channel"].name)
    return app


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(401)
    def unauthorized(_error):
        return jsonify({"error": "No autenticado"}), 401

    @app.errorhandler(403)
    def forbidden(_error):
        return jsonify({"error": "Acceso denegado"}), 403

    @app.errorhandler(404)
    def not_found(_error):
        return jsonify({"error": "No encontrado"}), 404

    @app.errorhandler(WorkflowConfigError)
    def broken_workflow_config(error):
        logger.error("Stored workflow configuration is invalid: %s", error)
        return jsonify({"error": "La configuracion de workflow de la empresa es invalida", "detail": str(error)}), 500


def register_cli(app: Flask) -> None:
    @app.cli.command("seed-demo")
    @click.option("--reset", is_flag=True, help="Delete existing data before seed.")
    def seed_demo(reset: bool) -> None:
        """Seed demo data for local development."""
        if reset:
            db.drop_all()
            db.create_all()
        if not Organization.query.first():
            seed_demo_data(db.session)
            click.echo("Demo data seeded.")
        else:
            click.echo("Seed skipped: existing organizations found.")

    @app.cli.command("sweep-expired-links")
    def sweep_expired_links() -> None:
        """Expire overdue signature links and cascade to documents and sales."""
        from app.signatures.sweep import run_expiration_sweep

        result = run_expiration_sweep()
        click.echo(
            f"links={result.links_expired} documents={result.documents_updated} "
            f"sales={result.sales_updated} errors={len(result.errors)}"
        )
        for error in result.errors:
            click.echo(f"  error: {error}", err=True)

    @app.cli.command("send-signature-reminders")
    def send_reminders() -> None:
        """Remind recipients whose signature links are about to expire."""
        from app.signatures.reminders import send_signature_reminders

        result = send_signature_reminders()
        click.echo(f"sent={result.sent} skipped={result.skipped} errors={len(result.errors)}")
        for error in result.errors:
            click.echo(f"  error: {error}", err=True)


@login_manager.unauthorized_handler
def _unauthorized():
    return jsonify({"error": "No autenticado"}), 401


@login_manager.user_loader
def load_user(user_id: str) -> User | None:
    return db.session.get(User, int(user_id))
