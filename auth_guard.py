from __future__ import annotations

from flask import jsonify, request


PUBLIC_PATHS = {"/api/health", "/metrics"}


def register_auth_guard(app, config):
    @app.before_request
    def require_api_key():
        if not config.has_auth():
            return None

        if request.path in PUBLIC_PATHS:
            return None

        api_key = request.headers.get("X-Api-Key") or request.args.get("apikey")
        if api_key and api_key == config.API_KEY:
            return None

        return jsonify({"error": "Unauthorized"}), 401

    return require_api_key
