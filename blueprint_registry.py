from __future__ import annotations

from routes.downloads import create_blueprint as create_downloads_blueprint
from routes.requests import create_blueprint as create_requests_blueprint
from routes.settings import create_blueprint as create_settings_blueprint
from routes.system import create_blueprint as create_system_blueprint


def register_blueprints(app, deps):
    app.register_blueprint(create_system_blueprint({
        "db_path": deps["db_path"],
        "get_migration_status": deps["get_migration_status"],
        "job_queue": deps["job_queue"],
        "store": deps["store"],
        "activity": deps["activity"],
        "telemetry": deps["telemetry"],
    }))
    app.register_blueprint(create_requests_blueprint({
        "store": deps["store"],
        "job_queue": deps["job_queue"],
        "config_service": deps["config_service"],
        "logger": deps["logger"],
    }))
    app.register_blueprint(create_downloads_blueprint({
        "store": deps["store"],
        "job_queue": deps["job_queue"],
        "client_manager": deps["client_manager"],
        "activity": deps["activity"],
        "logger": deps["logger"],
    }))
    app.register_blueprint(create_settings_blueprint({
        "config": deps["config"],
        "config_service": deps["config_service"],
        "client_manager": deps["client_manager"],
        "logger": deps["logger"],
        "test_download_client": deps["test_download_client"],
        "test_flaresolverr_connection": deps["test_flaresolverr_connection"],
    }))
