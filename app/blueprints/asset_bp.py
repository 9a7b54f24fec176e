"""
Asset blueprint: explicit cache of letterhead / signature images.

Endpoints:
    POST /api/v1/assets/sync     {"targets": {key: url | null}}
    GET  /api/v1/assets          cached keys with their source URLs
    GET  /api/v1/assets/<key>    cached data URL (404 on miss)
    DELETE /api/v1/assets/<key>
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from app.utils.errors import E, api_error, register_error_handlers

logger = logging.getLogger(__name__)

asset_bp = Blueprint("asset", __name__, url_prefix="/api/v1/assets")
register_error_handlers(asset_bp)


def _cache():
    return current_app.extensions["asset_cache"]


@asset_bp.route("/sync", methods=["POST"])
def sync_assets():
    data = request.get_json(silent=True) or {}
    targets = data.get("targets")
    if not isinstance(targets, dict):
        return api_error(E.VALIDATION_REQUIRED, "targets must be an object of key -> url")
    results = _cache().sync(targets)
    logger.info("Asset sync: %s", results)
    return jsonify({"results": results})


@asset_bp.route("", methods=["GET"])
def list_assets():
    cache = _cache()
    return jsonify([{"key": k, "source_url": cache.source_url(k)} for k in cache.keys()])


@asset_bp.route("/<key>", methods=["GET"])
def get_asset(key):
    cache = _cache()
    data = cache.get(key)
    if data is None:
        return api_error(E.NOT_FOUND, f"Asset {key} not cached")
    return jsonify({"key": key, "data": data, "source_url": cache.source_url(key)})


@asset_bp.route("/<key>", methods=["DELETE"])
def invalidate_asset(key):
    _cache().invalidate(key)
    return jsonify({"invalidated": key})
