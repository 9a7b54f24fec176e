"""
Municipal Document & Workflow Platform
Blueprint registry.
"""

from app.blueprints.asset_bp import asset_bp
from app.blueprints.chat_bp import chat_bp
from app.blueprints.counter_bp import counter_bp
from app.blueprints.document_bp import document_bp
from app.blueprints.health_bp import health_bp
from app.blueprints.licitacao_bp import licitacao_bp

ALL_BLUEPRINTS = (
    health_bp,
    counter_bp,
    document_bp,
    licitacao_bp,
    chat_bp,
    asset_bp,
)
