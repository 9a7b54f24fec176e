"""
Counter blueprint: sequential numbers per (sector, year) scope.

Endpoints:
    GET  /api/v1/counters/<sector_id>/<year>            raw counter state
    GET  /api/v1/counters/<sector_id>/<year>/next       peek (never mutates)
    POST /api/v1/counters/<sector_id>/<year>/increment  reserve the next value

A peek that fails answers {"next": null}; the UI shows no number rather
than zero. A failed increment answers 503.
"""

import logging

from flask import Blueprint, jsonify

from app.services import counter_service
from app.services.counter_service import CounterScope
from app.utils.errors import E, api_error, register_error_handlers

logger = logging.getLogger(__name__)

counter_bp = Blueprint("counter", __name__, url_prefix="/api/v1/counters")
register_error_handlers(counter_bp)


@counter_bp.route("/<sector_id>/<int:year>", methods=["GET"])
def get_counter(sector_id, year):
    return jsonify(counter_service.get_counter(CounterScope(sector_id, year)))


@counter_bp.route("/<sector_id>/<int:year>/next", methods=["GET"])
def peek_next(sector_id, year):
    scope = CounterScope(sector_id, year)
    value = counter_service.peek_next(scope)
    return jsonify({
        "sector_id": sector_id,
        "year": year,
        "next": value,
        "display": counter_service.format_number(value, year) if value is not None else None,
    })


@counter_bp.route("/<sector_id>/<int:year>/increment", methods=["POST"])
def increment(sector_id, year):
    scope = CounterScope(sector_id, year)
    value = counter_service.increment_and_get(scope)
    if value is None:
        return api_error(E.COUNTER_UNAVAILABLE, "Counter unavailable, try again")
    return jsonify({
        "sector_id": sector_id,
        "year": year,
        "value": value,
        "display": counter_service.format_number(value, year),
    }), 201
