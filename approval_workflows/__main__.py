#!/usr/bin/env python3
"""Main entry point for the approval workflow service"""

import sys

import uvicorn

from .api import create_app
from .config import get_config
from .engine import WorkflowEngine
from .escalation import EscalationScheduler
from .logging_config import setup_logging
from .storage import create_storage


def main():
    """Start the API server and the escalation sweep"""
    config = get_config()
    logger = setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)

    storage = create_storage(config.database_url)
    engine = WorkflowEngine(storage, config=config)
    scheduler = EscalationScheduler(engine, config.escalation_interval_seconds)
    app = create_app(engine, scheduler, config)

    if config.escalation_enabled:
        scheduler.start()

    logger.info(f"Approval workflow service starting on http://{config.api_host}:{config.api_port}")
    try:
        uvicorn.run(
            app,
            host=config.api_host,
            port=config.api_port,
            reload=False,
            access_log=False
        )
    except Exception:
        logger.exception("Approval workflow service failed")
        sys.exit(1)
    finally:
        scheduler.stop(timeout=5)
        storage.close()


if __name__ == "__main__":
    main()
