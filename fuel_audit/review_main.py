from __future__ import annotations

import uvicorn
from fastapi import FastAPI

from fuel_audit.config import Settings, load_dotenv
from fuel_audit.logger import configure_logging
from fuel_audit.main import build_services
from fuel_audit.review_api import create_review_app


def create_app() -> FastAPI:
    load_dotenv()
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    services = build_services(settings)
    return create_review_app(
        services.pipeline,
        fleet_store=services.fleet,
        anomaly_store=services.anomalies,
        metrics_path=settings.metrics_path,
        dead_letter_path=settings.dead_letter_path,
    )


def main(host: str = "0.0.0.0", port: int = 8000) -> None:
    uvicorn.run("fuel_audit.review_main:create_app", factory=True, host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
