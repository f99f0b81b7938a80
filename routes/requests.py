from __future__ import annotations

from flask import Blueprint, jsonify, request

from organize_processor import sanitize_filename
from request_store import RequestNotFound

ANNAS_ARCHIVE = "annas_archive"
REUSABLE_CHILD_STATUSES = ("failed", "awaiting_search", "pending")


def _recent_row(item):
    history = item.get("download_history") or {}
    candidates = history.get("candidates") or []
    return {
        "request_id": item["id"],
        "title": item["audiobook"]["title"],
        "author": item["audiobook"]["author"],
        "status": item["status"],
        "type": item.get("type") or "audiobook",
        "user": item.get("user_id"),
        "progress": item.get("progress"),
        "created_at": item.get("created_at"),
        "completed_at": item.get("completed_at"),
        "error_message": item.get("error_message"),
        "torrent_url": history.get("torrent_url"),
        "download_urls": candidates,
    }


def create_blueprint(ctx):
    bp = Blueprint("request_routes", __name__)
    store = ctx["store"]
    job_queue = ctx["job_queue"]
    config_service = ctx["config_service"]
    logger = ctx["logger"]

    @bp.route("/api/requests", methods=["POST"])
    def api_create_request():
        data = request.json or {}
        title = (data.get("title") or "").strip()
        if not title:
            return jsonify({"success": False, "error": "Title is required"}), 400
        author = (data.get("author") or "").strip()
        audiobook_id = store.add_audiobook(title, author, asin=data.get("asin") or None)
        row = store.create_request(audiobook_id, user_id=data.get("user_id"), status="pending")
        job_id = job_queue.add_search_job(row["id"], {"id": audiobook_id, "title": title, "author": author})
        logger.info("Created request %s for %r by %s", row["id"], title, author or "unknown author")
        return jsonify({"success": True, "request_id": row["id"], "job_id": job_id}), 201

    @bp.route("/api/requests/<request_id>")
    def api_get_request(request_id):
        row = store.get_request(request_id)
        if row is None:
            return jsonify({"success": False, "error": "Request not found"}), 404
        row["download_history"] = store.list_download_history(request_id)
        return jsonify(row)

    @bp.route("/api/requests/<request_id>", methods=["DELETE"])
    def api_delete_request(request_id):
        try:
            store.update_request(request_id, status="cancelled")
        except RequestNotFound:
            return jsonify({"success": False, "error": "Request not found"}), 404
        store.soft_delete_request(request_id)
        return jsonify({"success": True})

    @bp.route("/api/admin/requests/recent")
    def api_recent_requests():
        try:
            rows = store.list_recent_with_history(limit=50)
        except Exception as e:
            logger.error("Failed to fetch recent requests: %s", e)
            return jsonify({"error": "Failed to fetch recent requests"}), 500
        return jsonify({"requests": [_recent_row(item) for item in rows]})

    @bp.route("/api/requests/<parent_request_id>/select-ebook", methods=["POST"])
    def api_select_ebook(parent_request_id):
        data = request.json or {}
        selected = data.get("ebook")
        if not selected:
            return jsonify({"error": "No ebook selected"}), 400
        source = selected.get("source")
        if not source:
            return jsonify({"error": "Ebook source not specified"}), 400

        parent = store.get_request(parent_request_id)
        if parent is None:
            return jsonify({"error": "Request not found"}), 404
        if (parent.get("type") or "audiobook") != "audiobook":
            return jsonify({"error": "Can only select ebooks for audiobook requests"}), 400
        if parent["status"] not in ("downloaded", "available"):
            return jsonify({"error": f"Cannot select ebook for request in {parent['status']} status"}), 400

        child = store.find_child_request(parent_request_id, "ebook")
        if child is not None and child["status"] not in REUSABLE_CHILD_STATUSES:
            return jsonify({
                "error": f"E-book request already exists (status: {child['status']})",
                "existing_request_id": child["id"],
            }), 400

        try:
            if child is not None:
                child = store.reset_request(child["id"], "searching")
                logger.info("Reusing existing ebook request %s", child["id"])
            else:
                child = store.create_request(
                    parent["audiobook_id"],
                    request_type="ebook",
                    user_id=parent.get("user_id"),
                    parent_request_id=parent_request_id,
                    status="searching",
                )
                logger.info("Created new ebook request %s", child["id"])

            audiobook = parent["audiobook"]
            if source == ANNAS_ARCHIVE:
                _queue_direct_download(child["id"], audiobook, selected)
                source_label = "Anna's Archive"
            else:
                _queue_indexer_download(child["id"], audiobook, selected)
                source_label = selected.get("indexer") or source
        except Exception as e:
            logger.error("Failed to start ebook download for %s: %s", parent_request_id, e)
            return jsonify({"error": str(e) or "Internal server error"}), 500

        return jsonify({
            "success": True,
            "message": f"E-book download started from {source_label}",
            "request_id": child["id"],
        })

    def _queue_direct_download(request_id, audiobook, selected):
        preferred_format = config_service.get("ebook_sidecar_preferred_format") or "epub"
        file_format = selected.get("format") or preferred_format
        filename = (
            f"{sanitize_filename(audiobook['title'])} - {sanitize_filename(audiobook['author'])}"
            f".{sanitize_filename(file_format)}"
        )
        logger.info("Starting Anna's Archive download for %r (md5=%s, format=%s)",
                    audiobook["title"], selected.get("md5"), file_format)
        history = store.create_download_history(
            request_id,
            download_client="direct",
            indexer_name="Anna's Archive",
            torrent_name=filename,
            quality_score=selected.get("score"),
            candidate_urls=selected.get("download_urls") or [],
        )
        job_queue.add_start_direct_download_job(request_id, history["id"], selected.get("download_url"), filename)
        logger.info("Queued direct download job for request %s", request_id)

    def _queue_indexer_download(request_id, audiobook, selected):
        logger.info("Starting indexer download for %r: %r from %s",
                    audiobook["title"], selected.get("title"), selected.get("indexer"))
        ranked_result = {
            "guid": selected.get("guid"),
            "title": selected.get("title"),
            "size": selected.get("size"),
            "seeders": selected.get("seeders") or 0,
            "indexer": selected.get("indexer"),
            "download_url": selected.get("download_url"),
            "info_url": selected.get("info_url"),
            "score": selected.get("score"),
            "protocol": selected.get("protocol"),
        }
        job_queue.add_download_job(
            request_id,
            {"id": audiobook["id"], "title": audiobook["title"], "author": audiobook["author"]},
            ranked_result,
        )
        logger.info("Queued download job for request %s", request_id)

    return bp
