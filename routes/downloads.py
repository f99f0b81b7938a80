from __future__ import annotations

from flask import Blueprint, jsonify, request

from download_clients import DownloadClientError
from job_queue import JOB_RETRY_FAILED_IMPORTS, JOB_STATUSES


def create_blueprint(ctx):
    bp = Blueprint("download_routes", __name__)
    store = ctx["store"]
    job_queue = ctx["job_queue"]
    clients = ctx["client_manager"]
    logger = ctx["logger"]

    def _live_transfer(history, client):
        """(speed, eta) from the client for one history row; (0, None) when unknown."""
        if client is None or not history:
            return 0, None
        try:
            if history.get("torrent_hash") and clients.client_type() == "qbittorrent":
                torrent = client.get_torrent(history["torrent_hash"])
                if torrent:
                    eta = torrent.get("eta") or 0
                    return int(torrent.get("dlspeed") or 0), (eta if eta > 0 else None)
            elif history.get("nzb_id") and clients.client_type() == "sabnzbd":
                info = client.get_nzb(history["nzb_id"])
                if info:
                    return info["speed"], info["eta"]
        except DownloadClientError as e:
            logger.error("Failed to get transfer info for request %s: %s", history.get("request_id"), e)
        return 0, None

    @bp.route("/api/admin/downloads/active")
    def api_active_downloads():
        try:
            active = store.list_active_downloads(limit=20)
        except Exception as e:
            logger.error("Failed to fetch active downloads: %s", e)
            return jsonify({"error": "Failed to fetch active downloads"}), 500

        try:
            client = clients.get_client()
        except DownloadClientError as e:
            logger.warning("Download client unavailable for active downloads: %s", e)
            client = None

        downloads = []
        for item in active:
            history = item.get("download_history") or {}
            speed, eta = _live_transfer(history, client)
            downloads.append({
                "request_id": item["id"],
                "title": item["audiobook"]["title"],
                "author": item["audiobook"]["author"],
                "status": item["status"],
                "progress": item.get("progress"),
                "speed": speed,
                "eta": eta,
                "torrent_name": history.get("torrent_name"),
                "download_status": history.get("download_status"),
                "download_client": history.get("download_client"),
                "user": item.get("user_id"),
                "started_at": item.get("updated_at"),
            })
        return jsonify({"downloads": downloads})

    @bp.route("/api/admin/jobs/retry-imports", methods=["POST"])
    def api_retry_imports():
        if job_queue.has_pending(JOB_RETRY_FAILED_IMPORTS):
            return jsonify({"success": True, "queued": False, "message": "Import retry already pending"})
        job_id = job_queue.add_retry_failed_imports_job()
        logger.info("Manual import retry queued as job %s", job_id)
        return jsonify({"success": True, "queued": True, "job_id": job_id})

    @bp.route("/api/admin/jobs")
    def api_jobs():
        status = request.args.get("status") or None
        if status and status not in JOB_STATUSES:
            return jsonify({"success": False, "error": f"Unknown job status: {status}"}), 400
        limit = min(request.args.get("limit", 50, type=int), 500)
        offset = request.args.get("offset", 0, type=int)
        jobs = job_queue.list_jobs(status=status, job_type=request.args.get("type") or None,
                                   limit=limit, offset=offset)
        return jsonify({"jobs": jobs, "counts": job_queue.count_by_status()})

    @bp.route("/api/admin/jobs/<job_id>")
    def api_job_detail(job_id):
        job = job_queue.get_job(job_id)
        if job is None:
            return jsonify({"success": False, "error": "Job not found"}), 404
        job["logs"] = ctx["activity"].get_activity(limit=200, job_id=job_id)
        return jsonify(job)

    @bp.route("/api/admin/activity")
    def api_activity():
        limit = min(request.args.get("limit", 50, type=int), 500)
        offset = request.args.get("offset", 0, type=int)
        return jsonify({
            "items": ctx["activity"].get_activity(
                limit=limit,
                offset=offset,
                request_id=request.args.get("request_id") or None,
            ),
            "total": ctx["activity"].count_activity(),
        })

    return bp
