from flask import Blueprint

signatures_bp = Blueprint("signatures", __name__)

from app.signatures import routes  # noqa: E402,F401
