#!/usr/bin/env python3
"""
Atomizer Link - Main Entry Point

Runs the communication core headless: connects to the atomizer, mirrors its
status and logs telemetry until interrupted.
"""

import sys
import signal
import argparse
import logging

from PyQt6.QtCore import QCoreApplication, QTimer

from .communication.ble_transport import BleakTransport
from .controllers.connection_manager import ConnectionManager
from .controllers.device_controller import DeviceController
from .models.config_manager import ConfigManager
from .models.settings_store import MemorySettingsStore, QSettingsStore
from .constants import SETTINGS_APPLICATION, SETTINGS_ORGANIZATION
from .utils.error_handler import get_error_handler
from .utils.logger import setup_logger


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Atomizer Link - BLE controller core for the atomizer heater",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s                       # Restore the last device or scan for one
  %(prog)s --forget              # Forget the remembered device first
  %(prog)s --ephemeral -v        # Do not touch saved settings, debug logging
"""
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging"
    )

    parser.add_argument(
        "--ephemeral",
        action="store_true",
        help="Keep settings in memory only"
    )

    parser.add_argument(
        "--forget",
        action="store_true",
        help="Forget the remembered device before starting"
    )

    parser.add_argument(
        "--no-auto-reconnect",
        action="store_true",
        help="Do not scan or reconnect automatically"
    )

    return parser.parse_args(argv)


def main(argv=None):
    """Main application entry point."""
    args = parse_args(argv)

    setup_logger(log_level=logging.DEBUG if args.verbose else logging.INFO)
    logger = logging.getLogger(__name__)

    logger.info("Starting Atomizer Link...")

    app = QCoreApplication(sys.argv if argv is None else [sys.argv[0]] + list(argv))
    app.setApplicationName(SETTINGS_APPLICATION)
    app.setOrganizationName(SETTINGS_ORGANIZATION)
    app.setApplicationVersion("1.0.0")

    error_handler = get_error_handler()
    error_handler.install_global_handler()

    store = MemorySettingsStore() if args.ephemeral else QSettingsStore()
    config_manager = ConfigManager(store)
    if args.forget:
        config_manager.clear_saved_peripheral()

    transport = BleakTransport()
    connection = ConnectionManager(transport, config_manager, error_handler=error_handler)
    if args.no_auto_reconnect:
        connection.set_auto_reconnect(False)

    controller = DeviceController(connection, config_manager, error_handler=error_handler)

    connection.state_changed.connect(lambda state: logger.info(f"Connection: {state.name}"))
    controller.mode_changed.connect(lambda mode: logger.info(f"Active mode: {mode}"))

    def log_error_message(message):
        if message:
            logger.warning(f"Device: {message}")

    controller.error_message_changed.connect(log_error_message)

    def log_sample():
        point = controller.telemetry.latest
        if point is None:
            return
        temp = "--" if point.temperature is None else f"{point.temperature:.1f}"
        logger.info(f"T={temp} SP={point.setpoint:.1f} OUT={point.output_percent:.0f}%")

    controller.history_changed.connect(log_sample)

    def shutdown():
        logger.info("Shutting down...")
        counts = error_handler.counts_by_category()
        if counts:
            summary = ", ".join(f"{cat.value}={n}" for cat, n in counts.items())
            logger.info(f"Problems this session: {summary}")
        connection.shutdown()
        error_handler.uninstall_global_handler()
        app.quit()

    # Let Python handle Ctrl+C while the Qt loop runs
    signal.signal(signal.SIGINT, lambda *_: shutdown())
    heartbeat = QTimer()
    heartbeat.start(250)
    heartbeat.timeout.connect(lambda: None)

    controller.start()
    logger.info("Application started successfully")

    return app.exec()


if __name__ == "__main__":
    sys.exit(main())
