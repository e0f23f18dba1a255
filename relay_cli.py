#!/usr/bin/env python3
"""
Relay CLI - Direct relay board maintenance

Command-line tool that talks to the relay boards without the running
service. Use it while the controller is stopped (the serial port cannot be
shared).

Usage:
    # Read relays 1..8 of slave 2
    python relay_cli.py read --slave 2 --relay 1 --count 8

    # Switch relay 3 of slave 1 on
    python relay_cli.py write --slave 1 --relay 3 --state on

    # Blink relay 1 for 500ms
    python relay_cli.py pulse --slave 1 --relay 1 --duration-ms 500

    # Read / change the board's slave id (holding register 0).
    # Only one board may be on the bus; it answers on unit 0.
    python relay_cli.py read-id
    python relay_cli.py set-id --new-id 2

Output is JSON for easy parsing by scripts.
"""

import argparse
import asyncio
import json
import sys

from common.config import MAX_SLAVE_ID, MIN_SLAVE_ID, ControllerConfig, load_config_file
from common.exceptions import RelayControlError
from common.logging_setup import LogContext, configure_logging
from services.bus.transport import SerialTransport

# Board configuration register holding the slave id
SLAVE_ID_REGISTER = 0
# Address every board answers on regardless of its configured id
CONFIG_UNIT = 0


async def _with_transport(config: ControllerConfig, unit: int, action) -> dict:
    transport = SerialTransport(config.serial, timeout=config.bus.transaction_timeout_s)
    result: dict = {"success": False, "port": config.serial.port, "error": None}

    if not await transport.connect():
        result["error"] = f"Failed to open serial port {config.serial.port}"
        return result

    try:
        transport.set_slave(unit)
        result.update(await action(transport))
        result["success"] = True
    except RelayControlError as e:
        result["error"] = e.message
        result["kind"] = e.kind
    finally:
        transport.close()

    return result


async def read_relays(config: ControllerConfig, slave: int, relay: int, count: int) -> dict:
    async def action(transport: SerialTransport) -> dict:
        bits = await transport.read_coils(relay - 1, count)
        return {
            "slave_id": slave,
            "relays": {str(relay + i): state for i, state in enumerate(bits)},
        }

    return await _with_transport(config, slave, action)


async def write_relay(config: ControllerConfig, slave: int, relay: int, state: bool) -> dict:
    async def action(transport: SerialTransport) -> dict:
        await transport.write_coil(relay - 1, state)
        read_back = (await transport.read_coils(relay - 1, 1))[0]
        return {
            "slave_id": slave,
            "relay": relay,
            "written_state": state,
            "read_back_state": read_back,
            "verified": read_back == state,
        }

    return await _with_transport(config, slave, action)


async def pulse_relay(config: ControllerConfig, slave: int, relay: int, duration_ms: int) -> dict:
    async def action(transport: SerialTransport) -> dict:
        await transport.write_coil(relay - 1, True)
        await asyncio.sleep(duration_ms / 1000)
        await transport.write_coil(relay - 1, False)
        return {"slave_id": slave, "relay": relay, "duration_ms": duration_ms}

    return await _with_transport(config, slave, action)


async def read_slave_id(config: ControllerConfig, unit: int) -> dict:
    async def action(transport: SerialTransport) -> dict:
        registers = await transport.read_holding_registers(SLAVE_ID_REGISTER, 1)
        return {"slave_id": registers[0]}

    return await _with_transport(config, unit, action)


async def set_slave_id(config: ControllerConfig, unit: int, new_id: int) -> dict:
    async def action(transport: SerialTransport) -> dict:
        await transport.write_registers(SLAVE_ID_REGISTER, [new_id])
        # Give the board time to store the id
        await asyncio.sleep(0.2)
        registers = await transport.read_holding_registers(SLAVE_ID_REGISTER, 1)
        return {
            "written_id": new_id,
            "read_back_id": registers[0],
            "verified": registers[0] == new_id,
        }

    return await _with_transport(config, unit, action)


def _state(value: str) -> bool:
    text = value.strip().lower()
    if text in ("on", "1", "true"):
        return True
    if text in ("off", "0", "false"):
        return False
    raise argparse.ArgumentTypeError(f"invalid state {value!r} (use on/off)")


def _slave_id(value: str) -> int:
    slave = int(value)
    if not MIN_SLAVE_ID <= slave <= MAX_SLAVE_ID:
        raise argparse.ArgumentTypeError(f"slave id must be {MIN_SLAVE_ID}-{MAX_SLAVE_ID}")
    return slave


def _relay_number(value: str) -> int:
    relay = int(value)
    if relay < 1:
        raise argparse.ArgumentTypeError("relay numbers start at 1")
    return relay


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Read/write relay boards directly over Modbus RTU",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", "-c", default="config.yaml", help="Config file for serial settings")
    parser.add_argument("--port", help="Serial port (overrides config)")

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    read_parser = subparsers.add_parser("read", help="Read relay states")
    read_parser.add_argument("--slave", type=_slave_id, required=True, help="Slave id")
    read_parser.add_argument("--relay", type=_relay_number, default=1, help="First relay (1-based)")
    read_parser.add_argument("--count", type=int, default=1, help="Number of relays")

    write_parser = subparsers.add_parser("write", help="Set one relay")
    write_parser.add_argument("--slave", type=_slave_id, required=True, help="Slave id")
    write_parser.add_argument("--relay", type=_relay_number, required=True, help="Relay (1-based)")
    write_parser.add_argument("--state", type=_state, required=True, help="on or off")

    pulse_parser = subparsers.add_parser("pulse", help="Switch a relay on, then off")
    pulse_parser.add_argument("--slave", type=_slave_id, required=True, help="Slave id")
    pulse_parser.add_argument("--relay", type=_relay_number, required=True, help="Relay (1-based)")
    pulse_parser.add_argument("--duration-ms", type=int, default=500, help="On time in ms")

    read_id_parser = subparsers.add_parser("read-id", help="Read a board's slave id")
    read_id_parser.add_argument("--unit", type=int, default=CONFIG_UNIT, help="Unit to address")

    set_id_parser = subparsers.add_parser("set-id", help="Change a board's slave id")
    set_id_parser.add_argument("--new-id", type=_slave_id, required=True, help="New slave id")
    set_id_parser.add_argument("--unit", type=int, default=CONFIG_UNIT, help="Unit to address")

    return parser


def run_command(args: argparse.Namespace, config: ControllerConfig) -> dict:
    if args.command == "read":
        if args.count < 1:
            return {"success": False, "error": "count must be at least 1"}
        return asyncio.run(read_relays(config, args.slave, args.relay, args.count))
    if args.command == "write":
        return asyncio.run(write_relay(config, args.slave, args.relay, args.state))
    if args.command == "pulse":
        if args.duration_ms < 1:
            return {"success": False, "error": "duration must be at least 1ms"}
        return asyncio.run(pulse_relay(config, args.slave, args.relay, args.duration_ms))
    if args.command == "read-id":
        return asyncio.run(read_slave_id(config, args.unit))
    if args.command == "set-id":
        return asyncio.run(set_slave_id(config, args.unit, args.new_id))
    return {"success": False, "error": f"Unknown command {args.command}"}


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        config = load_config_file(args.config)
    except RelayControlError as e:
        print(json.dumps({"success": False, "error": e.message}))
        sys.exit(1)
    if args.port:
        config.serial.port = args.port

    # Keep stdout clean for JSON; only problems are logged
    configure_logging("WARNING", json_format=True)

    with LogContext(command=args.command):
        result = run_command(args, config)

    print(json.dumps(result))
    if not result.get("success"):
        sys.exit(1)


if __name__ == "__main__":
    main()
