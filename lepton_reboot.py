#!/usr/bin/env python3
"""Lepton reboot utility.

Reboots the camera in case it is in a funny state, then makes sure GPIO3 is
in VSYNC mode so frame capture can sync to it.
"""

from __future__ import annotations

from collections.abc import Sequence

import argparse
import logging

from lepton_cci import (
    DEFAULT_DEVICE,
    BusSetupError,
    CCIConfig,
    CCIError,
    GpioMode,
    HandshakeTimeoutError,
    LeptonCamera,
    UnexpectedValueError,
)


logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_NO_DEVICE = -1
EXIT_TIMEOUT = 1
EXIT_CCI_ERROR = 2


def reboot_and_enable_vsync(camera: LeptonCamera, reboot: bool = True) -> GpioMode:
    """Reboot the camera and enable VSYNC on GPIO3 if needed.

    Args:
        camera: Connected camera.
        reboot: Run the OEM reboot first.

    A first GPIO3 read outside the GpioMode range counts as "not VSYNC".

    Returns:
        GPIO3 mode read back after the update.
    """
    if reboot:
        logger.info("Starting reboot...")
        camera.run_reboot()
        logger.info("  Done")

    logger.info("Read GPIO3...")
    try:
        mode = camera.get_gpio_mode()
    except UnexpectedValueError as e:
        logger.warning("  GPIO3 value unknown (%s)", e)
        mode = None
    else:
        logger.info("  GPIO3 value = %d", mode)
    if mode != GpioMode.VSYNC:
        logger.info("enabling VSYNC...")
        camera.set_gpio_mode(GpioMode.VSYNC)
    else:
        logger.info("already enabled...")
    mode = camera.get_gpio_mode()
    logger.info("  GPIO3 value = %d", mode)
    logger.info("  Done")
    return mode


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point."""
    parser = argparse.ArgumentParser(
        description="Reboot a FLIR Lepton over I2C and enable VSYNC on GPIO3",
    )
    parser.add_argument(
        "--device",
        type=str,
        default=DEFAULT_DEVICE,
        help=f"I2C device (default: {DEFAULT_DEVICE})",
    )
    parser.add_argument(
        "--no-reboot",
        action="store_true",
        help="Skip the reboot and only configure GPIO3",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Give up on a busy camera after this many seconds "
        "(default: wait forever; never applied right after reboot)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Log every CCI command",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    config = CCIConfig(device=args.device, handshake_timeout=args.timeout)
    camera = LeptonCamera(config=config)
    try:
        camera.connect()
    except OSError as e:
        logger.critical(
            "I2C: failed to open device - check permissions & i2c enabled (%s)", e
        )
        return EXIT_NO_DEVICE
    except BusSetupError as e:
        logger.critical("I2C: %s", e)
        return EXIT_NO_DEVICE

    try:
        reboot_and_enable_vsync(camera, reboot=not args.no_reboot)
    except HandshakeTimeoutError as e:
        logger.error("CCI: %s", e)
        return EXIT_TIMEOUT
    except CCIError as e:
        logger.error("CCI: %s", e)
        return EXIT_CCI_ERROR
    finally:
        camera.disconnect()
    return EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
