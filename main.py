# Author: Omi Shrestha

import asyncio
import logging

from ble_commands import parse_intent
from ble_driver import BleakRadioDriver
from radar_mapper import ring_for
from rover_config import BLE_CONNECT_TIMEOUT, LOG_LEVEL
from rover_controller import RoverController

HELP = """
Commands:
  - 'scan' to scan for rovers (7 seconds)
  - 'list' to show discovered peripherals
  - 'connect <n>' to connect to peripheral number n from 'list'
  - 'disconnect' to drop the connection
  - 'forward', 'backward', 'left', 'right' to drive
  - 'speed <0-255>' to set the PWM speed
  - 'radar' to request a radar sweep
  - 'read' to read the control characteristic
  - 'quit' to exit
"""


async def terminal_prompt(prompt):
    """Ask the user on stdin; True when they pick the action button."""
    print(f"\n[WARNING] {prompt.warning}")
    try:
        answer = await asyncio.to_thread(input, f"  {prompt.action} / Cancel? ")
    except (EOFError, KeyboardInterrupt):
        return False
    return answer.strip().lower() in (prompt.action.lower(), prompt.action[0].lower(), "y", "yes")


def print_peripherals(controller):
    peripherals = controller.registry.values()
    if not peripherals:
        print('  No Peripherals, type "scan" first.')
        return
    for idx, p in enumerate(peripherals, 1):
        status = ""
        if p.connecting:
            status = " - Connecting..."
        elif p.connected:
            status = " - Connected"
        print(f"  {idx}. {p.name} ({p.identity}) rssi={p.rssi}{status}")


def print_radar(classifications):
    print("\n[RADAR]")
    for angle, bucket in classifications.items():
        ring = ring_for(bucket)
        marker = "-" * (ring * 4) + "o" if ring else ""
        print(f"  {angle:>3}° {marker:<14} {bucket.value}")


async def handle_command(controller, line):
    parts = line.split()
    command, args = parts[0].lower(), parts[1:]

    if command == "scan":
        await controller.start_scan()
        print("Scanning...")
    elif command == "list":
        print_peripherals(controller)
    elif command == "connect":
        peripherals = controller.registry.values()
        try:
            target = peripherals[int(args[0]) - 1]
        except (IndexError, ValueError):
            print("Usage: connect <n> (see 'list')")
            return
        print(f"Attempting to connect to {target.name}...")
        result = await controller.connect(target.identity)
        print("Connected!" if result.ok else "Connection failed.")
    elif command == "disconnect":
        if not await controller.disconnect():
            print("Not connected.")
    elif command == "speed":
        try:
            print(f"PWM Speed: {controller.dispatcher.set_speed(args[0])}")
        except (IndexError, ValueError) as e:
            print(f"Usage: speed <0-255> ({e})")
    elif command == "read":
        data = await controller.dispatcher.request_read()
        if data is not None:
            print(f"[READ] {list(data)}")
    else:
        try:
            intent = parse_intent(command)
        except ValueError:
            print(f"Unknown command: {command}")
            return
        await controller.send(intent)


async def main():
    """Main application entry point."""
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    driver = BleakRadioDriver(connect_timeout=BLE_CONNECT_TIMEOUT)
    async with RoverController(driver, prompt_handler=terminal_prompt) as controller:
        controller.radar.subscribe(
            lambda classifications: print_radar(classifications) if controller.radar_mode else None)

        print(HELP)
        while True:
            try:
                line = await asyncio.to_thread(input, "Enter command: ")
            except (EOFError, KeyboardInterrupt):
                print("\nExiting...")
                break

            if not line.strip():
                continue
            if line.strip().lower() == "quit":
                break
            await handle_command(controller, line)


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
