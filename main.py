#!/usr/bin/env python3
"""
Modbus Relay Controller - Entry Point

Runs the relay controller service:
- Bus: serialized Modbus RTU access to the relay boards on one RS-485 port
- Schedules: persistent once/daily/weekly windows per relay
- Reconciler: drives relays to their scheduled state every interval
- API: HTTP endpoints for manual control and schedule management

Usage:
    python main.py                    # Start with config.yaml
    python main.py --config my.yaml   # Use custom config file
    python main.py --dry-run          # Print config and exit
    python main.py --verbose          # Enable debug logging
"""

import argparse
import asyncio
import sys

from common.config import ControllerConfig, load_config_file
from common.exceptions import ConfigError
from common.logging_setup import configure_logging, get_service_logger
from common.timezone import get_zone

# Default configuration path
DEFAULT_CONFIG_PATH = "config.yaml"


def print_startup_banner(config: ControllerConfig) -> None:
    """Print startup information."""
    serial = config.serial
    print()
    print("=" * 60)
    print("  MODBUS RELAY CONTROLLER")
    print("=" * 60)
    print()
    print(f"  Serial port:  {serial.port} ({serial.baudrate} {serial.bytesize}"
          f"{serial.parity.value}{serial.stopbits})")
    print(f"  Slaves:       {', '.join(str(s) for s in config.slaves)} (default {config.default_slave})")
    print(f"  Bus pacing:   {config.bus.min_interval_ms}ms between requests, "
          f"{config.bus.transaction_timeout_s}s timeout")
    print(f"  Schedules:    {config.schedule.store_path} ({config.schedule.policy.value} per relay)")
    print(f"  Timezone:     {config.schedule.timezone}")
    print(f"  Reconcile:    every {config.reconciler.interval_s:g}s")
    print(f"  API:          http://{config.api.host}:{config.api.port}")
    print()
    print("=" * 60)
    print()


async def main_async(config: ControllerConfig) -> None:
    """Run the controller until SIGINT/SIGTERM."""
    # Imported here so logging is configured before module loggers are built
    from services.controller.service import RelayControllerService

    logger = get_service_logger("main")
    logger.info("Starting Modbus relay controller")

    service = RelayControllerService(config)
    try:
        await service.run()
    except Exception as e:
        logger.critical(f"Controller failed: {e}", exc_info=True)
        raise


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Modbus RTU relay controller with schedules and HTTP API",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python main.py                    # Start with default config
    python main.py --config my.yaml   # Use custom config file
    python main.py --dry-run          # Validate config and exit
    python main.py -v                 # Enable debug logging

Environment overrides:
    MODBUS_SERIAL_PORT, MODBUS_BAUD_RATE, MODBUS_PARITY, MODBUS_DATA_BITS,
    MODBUS_STOP_BITS, MODBUS_DEVICE_ID, MODBUS_RECONNECT_DELAY (ms),
    RELAYCTL_TIMEZONE, HOST, PORT, RELAYCTL_LOG_LEVEL, RELAYCTL_LOG_FORMAT
        """
    )

    parser.add_argument(
        "--config", "-c",
        type=str,
        default=DEFAULT_CONFIG_PATH,
        help=f"Path to configuration file (default: {DEFAULT_CONFIG_PATH})"
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate configuration and exit without starting"
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose (debug) logging"
    )

    parser.add_argument(
        "--version",
        action="version",
        version="Modbus Relay Controller v1.0.0"
    )

    args = parser.parse_args()

    try:
        config = load_config_file(args.config)
        # Fail on a bad zone name now rather than at first schedule
        get_zone(config.schedule.timezone)
    except ConfigError as e:
        print(f"Error: {e.message}")
        sys.exit(1)

    if args.verbose:
        # Plain text in verbose/debug mode
        configure_logging("DEBUG", json_format=False)
    else:
        configure_logging(config.logging.level, json_format=config.logging.format == "json")

    print_startup_banner(config)

    if args.dry_run:
        print("Dry run mode - configuration valid")
        print("Exiting without starting services")
        sys.exit(0)

    print("Starting controller...")
    print("Press Ctrl+C to stop")
    print()

    try:
        asyncio.run(main_async(config))
    except KeyboardInterrupt:
        print("\nShutdown requested")


if __name__ == "__main__":
    main()
