from __future__ import annotations


REQUEST_STATE_TRANSITIONS = {
    None: {"pending", "searching", "awaiting_search", "downloading"},
    "pending": {"searching", "awaiting_search", "downloading", "failed", "cancelled"},
    "searching": {"pending", "awaiting_search", "downloading", "failed", "cancelled"},
    "awaiting_search": {"searching", "downloading", "failed", "cancelled"},
    "downloading": {"processing", "awaiting_import", "failed", "cancelled"},
    "processing": {"downloaded", "awaiting_import", "failed"},
    "awaiting_import": {"processing", "downloaded", "failed", "cancelled"},
    "downloaded": {"available", "processing"},
    "available": {"downloaded"},
    "failed": {"pending", "searching", "awaiting_search", "downloading", "cancelled"},
    "cancelled": {"pending", "searching"},
}

ACTIVE_STATUSES = ("searching", "downloading", "processing")
TERMINAL_STATUSES = ("downloaded", "available", "failed", "cancelled")


def request_transition_allowed(old_status, new_status, state_transitions=REQUEST_STATE_TRANSITIONS):
    if old_status == new_status:
        return True
    return new_status in state_transitions.get(old_status, set())


def record_request_status_transition(request_id, old_status, new_status, request_row, *, telemetry):
    request_type = (request_row or {}).get("type") or "audiobook"
    telemetry.metrics.inc(
        "rmab_request_transitions_total",
        from_status=old_status or "none",
        to_status=new_status,
        type=request_type,
    )
    if new_status in TERMINAL_STATUSES:
        telemetry.metrics.inc(
            "rmab_request_terminal_total",
            status=new_status,
            type=request_type,
        )
    if new_status in ("downloaded", "failed", "awaiting_import"):
        telemetry.emit_event(
            f"request_{new_status}",
            {
                "request_id": request_id,
                "type": request_type,
                "status": new_status,
                "progress": (request_row or {}).get("progress"),
                "error": (request_row or {}).get("error_message"),
            },
        )
