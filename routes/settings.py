from __future__ import annotations

import os

from flask import Blueprint, jsonify, request

import path_mapper

CLIENT_TYPES = ("qbittorrent", "sabnzbd")
EBOOK_FORMATS = ("epub", "pdf", "mobi", "azw3", "any")
MASK_PREFIX = "••••"


def _flag(value):
    return "true" if value else "false"


def create_blueprint(ctx):
    bp = Blueprint("settings_routes", __name__)
    config = ctx["config"]
    config_service = ctx["config_service"]
    clients = ctx["client_manager"]
    logger = ctx["logger"]

    @bp.route("/api/admin/settings/download-client")
    def api_get_download_client():
        values = config_service.get_many((
            "download_client_type",
            "download_client_url",
            "download_client_username",
            "download_client_password",
            "download_client_disable_ssl_verify",
        ) + path_mapper.CONFIG_KEYS)
        return jsonify({
            "type": values.get("download_client_type") or "",
            "url": values.get("download_client_url") or "",
            "username": values.get("download_client_username") or "",
            "password": config.MASKED_SECRET if values.get("download_client_password") else "",
            "disable_ssl_verify": config.truthy(values.get("download_client_disable_ssl_verify")),
            "remote_path_mapping_enabled": config.truthy(
                values.get("download_client_remote_path_mapping_enabled")
            ),
            "remote_path": values.get("download_client_remote_path") or "",
            "local_path": values.get("download_client_local_path") or "",
        })

    @bp.route("/api/admin/settings/download-client", methods=["PUT"])
    def api_save_download_client():
        data = request.json or {}
        client_type = data.get("type")
        url = data.get("url") or ""
        username = data.get("username") or ""
        password = data.get("password") or ""

        if client_type not in CLIENT_TYPES:
            return jsonify({"success": False, "error": "Invalid client type. Must be qbittorrent or sabnzbd"}), 400
        if client_type == "sabnzbd" and (not url or not password):
            return jsonify({"success": False, "error": "URL and API key (password) are required for SABnzbd"}), 400
        if client_type == "qbittorrent" and (not url or not username or not password):
            return jsonify({
                "success": False,
                "error": "URL, username, and password are required for qBittorrent",
            }), 400

        mapping = path_mapper.PathMappingConfig(
            enabled=bool(data.get("remote_path_mapping_enabled")),
            remote_path=data.get("remote_path") or "",
            local_path=data.get("local_path") or "",
        )
        try:
            path_mapper.validate(mapping)
        except ValueError as e:
            return jsonify({"success": False, "error": str(e)}), 400

        values = {
            "download_client_type": client_type,
            "download_client_url": url,
            "download_client_username": username,
            "download_client_disable_ssl_verify": _flag(data.get("disable_ssl_verify")),
            "download_client_remote_path_mapping_enabled": _flag(mapping.enabled),
            "download_client_remote_path": mapping.remote_path,
            "download_client_local_path": mapping.local_path,
        }
        if not password.startswith(MASK_PREFIX):
            values["download_client_password"] = password
        try:
            config_service.set_many([
                {"key": key, "value": value, "category": "download_client"}
                for key, value in values.items()
            ])
        except Exception as e:
            logger.error("Failed to update download client settings: %s", e)
            return jsonify({"success": False, "error": str(e) or "Failed to update settings"}), 500
        clients.invalidate()
        logger.info("Download client settings updated (%s)", client_type)
        return jsonify({"success": True, "message": "Download client settings updated successfully"})

    @bp.route("/api/admin/settings/test-download-client", methods=["POST"])
    def api_test_download_client():
        data = request.json or {}
        client_type = data.get("type")
        url = (data.get("url") or "").rstrip("/")
        username = data.get("username") or ""
        password = data.get("password") or ""

        if not client_type or not url:
            return jsonify({"success": False, "error": "Type and URL are required"}), 400
        if client_type not in CLIENT_TYPES:
            return jsonify({"success": False, "error": "Invalid client type. Must be qbittorrent or sabnzbd"}), 400

        if password.startswith(MASK_PREFIX):
            password = config_service.get("download_client_password") or ""
            if not password:
                return jsonify({
                    "success": False,
                    "error": "No stored password/API key found. Please re-enter it.",
                }), 400

        if client_type == "qbittorrent" and (not username or not password):
            return jsonify({"success": False, "error": "Username and password are required for qBittorrent"}), 400
        if client_type == "sabnzbd" and not password:
            return jsonify({"success": False, "error": "API key (password) is required for SABnzbd"}), 400

        result = ctx["test_download_client"](
            client_type,
            url,
            username,
            password,
            disable_ssl_verify=bool(data.get("disable_ssl_verify")),
        )
        if not result.get("success"):
            return jsonify({
                "success": False,
                "error": result.get("error") or "Failed to connect to download client",
                "error_class": result.get("error_class"),
            }), 500

        if data.get("remote_path_mapping_enabled"):
            remote_path = data.get("remote_path") or ""
            local_path = data.get("local_path") or ""
            if not remote_path or not local_path:
                return jsonify({
                    "success": False,
                    "error": "Remote path and local path are required when path mapping is enabled",
                }), 400
            if not os.access(local_path, os.R_OK):
                return jsonify({
                    "success": False,
                    "error": (
                        f'Local path "{local_path}" is not accessible. '
                        "Please verify the path exists and has correct permissions."
                    ),
                }), 400

        return jsonify({"success": True, "version": result.get("version")})

    @bp.route("/api/admin/settings/ebook")
    def api_get_ebook_settings():
        values = config_service.get_many((
            "ebook_sidecar_enabled",
            "ebook_sidecar_preferred_format",
            "ebook_sidecar_base_url",
            "ebook_sidecar_flaresolverr_url",
        ))
        return jsonify({
            "enabled": config.truthy(values.get("ebook_sidecar_enabled")),
            "format": values.get("ebook_sidecar_preferred_format") or "epub",
            "base_url": values.get("ebook_sidecar_base_url") or "",
            "flaresolverr_url": values.get("ebook_sidecar_flaresolverr_url") or "",
        })

    @bp.route("/api/admin/settings/ebook", methods=["PUT"])
    def api_save_ebook_settings():
        data = request.json or {}
        file_format = data.get("format")
        base_url = data.get("base_url") or ""
        flaresolverr_url = data.get("flaresolverr_url") or ""

        if file_format and file_format not in EBOOK_FORMATS:
            return jsonify({
                "success": False,
                "error": f"Invalid format. Must be one of: {', '.join(EBOOK_FORMATS)}",
            }), 400
        if base_url and not base_url.startswith("http"):
            return jsonify({"success": False, "error": "Base URL must start with http:// or https://"}), 400
        if flaresolverr_url and not flaresolverr_url.startswith("http"):
            return jsonify({"success": False, "error": "FlareSolverr URL must start with http:// or https://"}), 400

        try:
            config_service.set_many([
                {
                    "key": "ebook_sidecar_enabled",
                    "value": _flag(data.get("enabled")),
                    "category": "ebook",
                    "description": "Enable e-book sidecar downloads from Anna's Archive",
                },
                {
                    "key": "ebook_sidecar_preferred_format",
                    "value": file_format or "epub",
                    "category": "ebook",
                    "description": "Preferred e-book format",
                },
                {
                    "key": "ebook_sidecar_base_url",
                    "value": base_url or "https://annas-archive.li",
                    "category": "ebook",
                    "description": "Base URL for Anna's Archive",
                },
                {
                    "key": "ebook_sidecar_flaresolverr_url",
                    "value": flaresolverr_url,
                    "category": "ebook",
                    "description": "FlareSolverr URL for bypassing Cloudflare protection",
                },
            ])
        except Exception as e:
            logger.error("Failed to save e-book settings: %s", e)
            return jsonify({"success": False, "error": "Failed to save settings"}), 500
        return jsonify({"success": True})

    @bp.route("/api/admin/settings/ebook/test-flaresolverr", methods=["POST"])
    def api_test_flaresolverr():
        url = (request.json or {}).get("url") or ""
        if not url:
            return jsonify({"success": False, "error": "FlareSolverr URL is required"}), 400
        if not url.startswith("http"):
            return jsonify({"success": False, "error": "URL must start with http:// or https://"}), 400
        return jsonify(ctx["test_flaresolverr_connection"](url))

    @bp.route("/api/admin/settings/paths", methods=["PUT"])
    def api_save_paths():
        data = request.json or {}
        values = {}
        for key in ("downloads_dir", "download_dir", "media_dir"):
            if key in data:
                values[key] = (data.get(key) or "").strip()
        for key in ("prowlarr_url", "prowlarr_api_key"):
            if key in data and data[key] != config.MASKED_SECRET:
                values[key] = (data.get(key) or "").strip()
        if not values:
            return jsonify({"success": False, "error": "No data provided"}), 400
        config_service.set_many(values)
        return jsonify({"success": True, "updated": sorted(values)})

    return bp
