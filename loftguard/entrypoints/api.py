"""Run the loftguard API with uvicorn."""

import argparse
import os

import structlog
import uvicorn
from dotenv import load_dotenv

from loftguard.api import create_app
from loftguard.config import load_settings, last_yaml_path
from loftguard.utils.logging_config import configure_logging


def main() -> None:
    parser = argparse.ArgumentParser(description="loftguard API server")
    parser.add_argument("--host", default=os.getenv("LOFTGUARD_HOST", "0.0.0.0"))
    parser.add_argument("--port", type=int, default=int(os.getenv("LOFTGUARD_PORT", "8000")))
    parser.add_argument("--log-level", default=os.getenv("LOFTGUARD_LOG_LEVEL", "INFO"))
    parser.add_argument("--json-logs", action="store_true")
    args = parser.parse_args()

    load_dotenv()
    configure_logging(args.log_level, json_logs=args.json_logs)
    logger = structlog.get_logger("loftguard.entrypoints.api")

    settings = load_settings()
    logger.info("config_loaded", yaml_path=last_yaml_path())

    app = create_app(settings)
    uvicorn.run(app, host=args.host, port=args.port, log_config=None)


if __name__ == "__main__":
    main()
