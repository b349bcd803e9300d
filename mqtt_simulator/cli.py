"""
MQTT Device Simulator
Connects a configurable range of simulated devices to an MQTT broker,
routes inbound messages to scripted handlers and pushes random device events.
"""

import argparse
import logging
import os
import signal
import sys
import threading
from typing import List, Optional

from .config import load_config
from .errors import ConfigError
from .scripting import script_registration
from .simulator import MQTTSimulator

logger = logging.getLogger(__name__)

STATS_INTERVAL = 60  # seconds


def configure_logging(level: str):
    logging.basicConfig(
        level=getattr(logging, level),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler('mqtt_simulator.log')
        ]
    )


def setup_signal_handlers(shutdown_event: threading.Event):
    """Setup signal handlers for graceful shutdown."""

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, initiating shutdown...")
        shutdown_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='MQTT Device Simulator. Settings come from MQTT_* / mqtt.* environment '
                    'variables and are overridden by key=value arguments, '
                    'e.g. address=10.0.0.5 limit=5000 binds=10.0.0.2,10.0.0.3',
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    parser.add_argument('overrides', nargs='*', metavar='key=value',
                        help='Configuration overrides')
    parser.add_argument('--log-level', choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                        default=os.getenv('LOG_LEVEL', 'INFO'),
                        help='Logging level')
    return parser


def run(simulator: MQTTSimulator, shutdown_event: threading.Event) -> int:
    try:
        simulator.start(script_registration(simulator.config.script_file))
        while not shutdown_event.wait(timeout=STATS_INTERVAL):
            simulator.print_statistics()
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt, shutting down...")
    finally:
        simulator.shutdown()
    return 0


def main(argv: Optional[List[str]] = None):
    """Main entry point with argument parsing."""
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)

    try:
        config = load_config(args=args.overrides)
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    simulator = MQTTSimulator(config)
    logger.info(f"Using configuration:\n{simulator.describe_config()}")

    shutdown_event = threading.Event()
    setup_signal_handlers(shutdown_event)
    sys.exit(run(simulator, shutdown_event))

