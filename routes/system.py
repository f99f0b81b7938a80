from __future__ import annotations

import sqlite3

from flask import Blueprint, Response, jsonify


def create_blueprint(ctx):
    bp = Blueprint("system_routes", __name__)

    @bp.route("/api/health")
    def api_health():
        return jsonify({"status": "ok", "version": ctx.get("version", "1.0.0")})

    @bp.route("/api/schema")
    def api_schema_status():
        with sqlite3.connect(ctx["db_path"], timeout=10) as conn:
            migrations = ctx["get_migration_status"](conn)
        return jsonify({"migrations": migrations, "count": len(migrations)})

    @bp.route("/metrics")
    def metrics_endpoint():
        lines = [
            "# HELP rmab_jobs_by_status Number of queued jobs by current status.",
            "# TYPE rmab_jobs_by_status gauge",
        ]
        for status, count in sorted(ctx["job_queue"].count_by_status().items()):
            lines.append(f'rmab_jobs_by_status{{status="{status}"}} {count}')

        lines.extend([
            "# HELP rmab_requests_by_status Number of non-deleted requests by status.",
            "# TYPE rmab_requests_by_status gauge",
        ])
        for status, count in sorted(ctx["store"].count_by_status().items()):
            lines.append(f'rmab_requests_by_status{{status="{status}"}} {count}')

        lines.extend([
            "# HELP rmab_activity_events_total Number of activity log events.",
            "# TYPE rmab_activity_events_total gauge",
            f"rmab_activity_events_total {ctx['activity'].count_activity()}",
        ])
        return Response(
            ctx["telemetry"].metrics.render(lines),
            mimetype="text/plain; version=0.0.4",
        )

    return bp
