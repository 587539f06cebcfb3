#!/usr/bin/env python3
"""
Service Monitor - Main Application Entry Point.

============================================================
SINGLE ENTRYPOINT
============================================================
This is the ONE executable entry point of the monitor.

- Builds one MonitoringRuntime from environment or YAML
- Serves /ws, /metrics and /health
- Starts the periodic tasks with the server, stops them on
  SIGINT/SIGTERM

============================================================
USAGE
============================================================
Direct execution:
    python app.py

With a YAML config:
    python app.py --config monitor.yaml --port 9100

Environment-based configuration:
    MONITORED_SERVICES=api=http://localhost:8000 python app.py

============================================================
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.absolute()
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from aiohttp import web

from core.exceptions import ConfigurationError
from service_monitor.config import MonitorConfig
from service_monitor.runtime import MonitoringRuntime


# ============================================================
# LOGGING
# ============================================================

def setup_logging(level: str = "INFO", log_format: str = "text") -> logging.Logger:
    """
    Set up process-wide logging.

    Args:
        level: Log level
        log_format: Output format (json or text)

    Returns:
        Application logger
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    if log_format == "json":
        formatter = logging.Formatter(
            json.dumps({
                "timestamp": "%(asctime)s",
                "level": "%(levelname)s",
                "logger": "%(name)s",
                "message": "%(message)s",
            })
        )
    else:
        formatter = logging.Formatter("%(asctime)s | %(levelname)-8s | %(name)s | %(message)s")

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = [handler]

    # aiohttp access logs are noisy at INFO
    logging.getLogger("aiohttp.access").setLevel(max(log_level, logging.WARNING))

    return logging.getLogger("service_monitor")


# ============================================================
# CLI ARGUMENT PARSER
# ============================================================

def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="service-monitor",
        description="Health polling, metrics, alerting and realtime push for dependent services",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s                                  # Configure from environment / .env
  %(prog)s --config monitor.yaml            # Configure from YAML
  %(prog)s --validate-config                # Check configuration and exit
        """
    )

    # --------------------------------------------------------
    # Configuration
    # --------------------------------------------------------
    config_group = parser.add_argument_group("Configuration")

    config_group.add_argument(
        "--config", "-c",
        type=str,
        metavar="PATH",
        help="YAML configuration file (default: environment variables)",
    )

    config_group.add_argument(
        "--env-file",
        type=str,
        metavar="PATH",
        help="dotenv file to load before reading the environment",
    )

    config_group.add_argument(
        "--validate-config",
        action="store_true",
        help="Validate configuration and exit",
    )

    # --------------------------------------------------------
    # Server
    # --------------------------------------------------------
    server_group = parser.add_argument_group("Server Options")

    server_group.add_argument("--host", type=str, help="Bind address (overrides MONITOR_HOST)")
    server_group.add_argument("--port", type=int, help="Bind port (overrides MONITOR_PORT)")

    # --------------------------------------------------------
    # Logging Options
    # --------------------------------------------------------
    logging_group = parser.add_argument_group("Logging Options")

    logging_group.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (overrides LOG_LEVEL)",
    )

    logging_group.add_argument(
        "--log-format",
        type=str,
        choices=["json", "text"],
        help="Log output format (overrides LOG_FORMAT)",
    )

    return parser


def build_config(args: argparse.Namespace) -> MonitorConfig:
    """Build configuration from file/environment plus CLI overrides."""
    if args.config:
        config = MonitorConfig.from_yaml(Path(args.config))
    else:
        config = MonitorConfig.from_env(args.env_file)

    if args.host:
        config.host = args.host
    if args.port:
        config.port = args.port
    if args.log_level:
        config.log_level = args.log_level
    if args.log_format:
        config.log_format = args.log_format

    return config


# ============================================================
# APPLICATION
# ============================================================

def build_app(runtime: MonitoringRuntime) -> web.Application:
    """Web application whose lifecycle drives the runtime."""
    app = runtime.create_app()

    async def on_startup(_app: web.Application) -> None:
        await runtime.start()

    async def on_cleanup(_app: web.Application) -> None:
        await runtime.stop()

    app.on_startup.append(on_startup)
    app.on_cleanup.append(on_cleanup)
    return app


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = create_parser().parse_args(argv)

    try:
        config = build_config(args)
    except ConfigurationError as e:
        setup_logging()
        logging.getLogger("service_monitor").error(e.to_log_format())
        return 2

    logger = setup_logging(config.log_level, config.log_format)

    errors = config.validate()
    if errors:
        for error in errors:
            logger.error(f"Configuration error: {error}")
        return 2

    if args.validate_config:
        logger.info("Configuration valid")
        logger.info(json.dumps(config.to_dict(), indent=2))
        return 0

    runtime = MonitoringRuntime(config)

    logger.info(f"Starting {config.service_name} on {config.host}:{config.port}")
    web.run_app(build_app(runtime), host=config.host, port=config.port, print=None)
    return 0


if __name__ == "__main__":
    sys.exit(main())
