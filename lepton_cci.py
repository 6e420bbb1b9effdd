"""FLIR Lepton CCI Driver.

Register access, busy handshake, and typed commands for the Command and
Control Interface (CCI) of FLIR Lepton thermal cameras over Linux I2C.

Wire protocol:
- Camera is an I2C slave at 7-bit address 0x2A
- Registers are 16-bit words addressed by 16-bit IDs, big-endian on the wire
- Register write: [addr_hi, addr_lo, val_hi, val_lo]
- Register read: write [addr_hi, addr_lo], then read [val_hi, val_lo]
- 32-bit payloads span DATA_0 (low word) and DATA_0 + 2 (high word)

Every command runs inside a "booted, not busy" window: the STATUS register
is polled before the command is issued and again before results are read.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from enum import IntEnum
from typing import Any, TypeVar

import contextlib
import dataclasses
import fcntl
import logging
import os
import struct
import time

import smbus2


logger = logging.getLogger(__name__)

# Bus constants
DEFAULT_DEVICE = "/dev/i2c-2"
CCI_ADDRESS = 0x2A
I2C_SLAVE = 0x0703  # ioctl request from linux/i2c-dev.h

# Register constants
WORD_LENGTH = 2  # Bytes per register
PAYLOAD_WORDS = 2  # DATA_LENGTH for every 32-bit payload
REGISTER_SENTINEL = 0xFFFF  # Returned by read_register() on a failed transfer

# STATUS register low byte
STATUS_BUSY = 0x01
STATUS_BOOT_STATUS = 0x04
STATUS_READY_MASK = 0x07
STATUS_READY = 0x06  # Booted, not busy
STATUS_UNKNOWN = 0x07  # Seed value before the first real read

REBOOT_DELAY = 6.0  # Seconds the bus stays silent after RUN_REBOOT


class CCIError(Exception):
    """Base class for CCI driver errors."""

    pass


class BusSetupError(CCIError):
    """Raised when the slave address cannot be bound, or the bus is unusable."""

    pass


class TransferError(CCIError):
    """Raised when an I2C transfer moves fewer bytes than requested."""

    def __init__(self, expected: int, actual: int) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(f"transferred {actual} of {expected} bytes")


class ShortWriteError(TransferError):
    """Raised when the bus accepts fewer bytes than written."""

    pass


class ShortReadError(TransferError):
    """Raised when the bus returns fewer bytes than requested."""

    def __init__(self, expected: int, data: bytes) -> None:
        self.data = data
        super().__init__(expected, len(data))


class HandshakeTimeoutError(CCIError):
    """Raised by a bounded handshake when the camera never reports ready."""

    def __init__(self, timeout: float, status: int) -> None:
        self.timeout = timeout
        self.status = status
        super().__init__(
            f"camera not ready after {timeout:.3f}s (last STATUS=0x{status:04X})"
        )


class UnexpectedValueError(CCIError, ValueError):
    """Raised when a GET returns a value outside the expected enumeration."""

    def __init__(self, cmd: int, value: int, enum_cls: type[IntEnum]) -> None:
        self.cmd = cmd
        self.value = value
        self.enum_cls = enum_cls
        super().__init__(
            f"{command_name(cmd)} returned 0x{value:08X}, "
            f"not a valid {enum_cls.__name__}"
        )


class Register(IntEnum):
    """CCI register addresses."""

    STATUS = 0x0002
    COMMAND = 0x0004
    DATA_LENGTH = 0x0006
    DATA_0 = 0x0008  # Data word k lives at DATA_0 + 2*k


class Module(IntEnum):
    """Command module IDs (OEM and RAD carry the 0x4000 protection bit)."""

    AGC = 0x0100
    SYS = 0x0200
    RAD = 0x4E00
    OEM = 0x4800


class CommandType(IntEnum):
    """Command access type (low two bits of a command ID)."""

    GET = 0
    SET = 1
    RUN = 2


class Command(IntEnum):
    """CCI command IDs: module | opcode | access type."""

    # SYS
    RUN_FFC = 0x0242
    GET_UPTIME = 0x020C
    GET_TELEMETRY_ENABLE_STATE = 0x0218
    SET_TELEMETRY_ENABLE_STATE = 0x0219
    GET_TELEMETRY_LOCATION = 0x0220
    SET_TELEMETRY_LOCATION = 0x0221
    # RAD
    GET_RADIOMETRY_ENABLE_STATE = 0x4E10
    SET_RADIOMETRY_ENABLE_STATE = 0x4E11
    GET_RADIOMETRY_TLINEAR_ENABLE_STATE = 0x4EC0
    SET_RADIOMETRY_TLINEAR_ENABLE_STATE = 0x4EC1
    # AGC
    GET_AGC_ENABLE_STATE = 0x0100
    SET_AGC_ENABLE_STATE = 0x0101
    GET_CALC_ENABLE_STATE = 0x0148
    SET_CALC_ENABLE_STATE = 0x0149
    # OEM
    RUN_REBOOT = 0x4840
    GET_GPIO_MODE = 0x4854
    SET_GPIO_MODE = 0x4855


class EnableState(IntEnum):
    """Enable state for telemetry, radiometry, T-Linear, AGC and AGC calc."""

    DISABLED = 0
    ENABLED = 1


class TelemetryLocation(IntEnum):
    """Where telemetry rows are placed in the video frame."""

    HEADER = 0
    FOOTER = 1


class GpioMode(IntEnum):
    """GPIO3 pin mode."""

    GPIO = 0
    I2C_MASTER = 1
    SPI_MASTER_VLB_DATA = 2
    SPIO_MASTER_REG_DATA = 3
    SPI_SLAVE_VLB_DATA = 4
    VSYNC = 5  # Pulse at each frame boundary


class HandshakeState(IntEnum):
    """Busy handshake progress."""

    UNKNOWN = 0
    BUSY = 1
    BOOTED_READY = 2


@dataclasses.dataclass(kw_only=True, frozen=True, slots=True)
class CCIConfig:
    """Driver configuration."""

    device: str = DEFAULT_DEVICE  # I2C character device
    address: int = CCI_ADDRESS  # 7-bit slave address
    reboot_delay: float = REBOOT_DELAY  # Sleep after RUN_REBOOT (seconds)
    handshake_timeout: float | None = None  # None = poll forever


@dataclasses.dataclass(kw_only=True, slots=True)
class BusStats:
    """Transfer diagnostics, per device handle."""

    last_read_count: int = 0  # Bytes returned by the most recent read
    short_writes: int = 0
    short_reads: int = 0
    status_polls: int = 0  # STATUS reads attempted by the handshake


@dataclasses.dataclass(kw_only=True, frozen=True, slots=True)
class StatusFlags:
    """Decoded STATUS register."""

    busy: bool
    booted: bool
    result: int  # Signed result code of the last command (0 = OK)

    @property
    def ready(self) -> bool:
        """Booted and not busy."""
        return self.booted and not self.busy


# =============================================================================
# Wire Encoding (Pure Functions)
# =============================================================================


def _check_word(value: int, name: str) -> None:
    if not 0 <= value <= 0xFFFF:
        raise ValueError(f"{name} 0x{value:X} does not fit in 16 bits")


def encode_register_write(reg: int, value: int) -> bytes:
    """Build the 4-byte frame that writes a register.

    Args:
        reg: Register address.
        value: 16-bit register value.

    Returns:
        [reg_hi, reg_lo, value_hi, value_lo].
    """
    _check_word(reg, "register")
    _check_word(value, "value")
    return struct.pack(">HH", reg, value)


def encode_register_address(reg: int) -> bytes:
    """Build the 2-byte frame that selects a register for reading."""
    _check_word(reg, "register")
    return struct.pack(">H", reg)


def decode_register_value(data: bytes) -> int:
    """Decode a 2-byte big-endian register read."""
    return data[0] << 8 | data[1]


def split_words(value: int) -> tuple[int, int]:
    """Split a 32-bit payload into (least significant, most significant) words."""
    if not 0 <= value <= 0xFFFFFFFF:
        raise ValueError(f"payload 0x{value:X} does not fit in 32 bits")
    return value & 0xFFFF, (value >> 16) & 0xFFFF


def join_words(ls_word: int, ms_word: int) -> int:
    """Join (least significant, most significant) words into a 32-bit value."""
    return (ms_word << 16) | ls_word


def parse_status(value: int) -> StatusFlags:
    """Decode a STATUS register value.

    Low byte: bit 2 BOOT_STATUS, bit 0 BUSY.
    High byte: result code of the last command, as a signed byte.
    """
    result = (value >> 8) & 0xFF
    if result >= 0x80:
        result -= 0x100
    return StatusFlags(
        busy=bool(value & STATUS_BUSY),
        booted=bool(value & STATUS_BOOT_STATUS),
        result=result,
    )


def is_ready(status: int) -> bool:
    """Return True if a STATUS value reads as booted and not busy."""
    return (status & STATUS_READY_MASK) == STATUS_READY


def command_id(module: Module, base: int, kind: CommandType) -> int:
    """Compose a command ID from its module, opcode base and access type."""
    return module | base | kind


def command_type(cmd: int) -> CommandType:
    """Return the access type encoded in a command ID."""
    return CommandType(cmd & 0x3)


def command_name(cmd: int) -> str:
    """Human-readable command name for logging."""
    try:
        return Command(cmd).name
    except ValueError:
        return f"0x{cmd:04X}"


# =============================================================================
# Transport and Register Layer (Stateful)
# =============================================================================


@dataclasses.dataclass(kw_only=True, slots=True)
class I2CDevice:
    """Exclusively owned I2C endpoint bound to the camera.

    Raw transfers go through _write(), _read() and _set_slave(); everything
    above them (short-transfer detection, register framing, the handshake)
    is protocol logic shared by every backend.
    """

    fd: int = -1
    address: int | None = None  # Bound slave address
    stats: BusStats = dataclasses.field(default_factory=BusStats)
    handshake_state: HandshakeState = HandshakeState.UNKNOWN
    setup_failed: bool = False
    _bus: Any = dataclasses.field(default=None, repr=False)  # smbus2.SMBus

    @classmethod
    def open(cls, path: str = DEFAULT_DEVICE) -> I2CDevice:
        """Open an I2C character device read/write.

        Raises:
            OSError: If the device cannot be opened.
        """
        logger.info("opening I2C device ... %s", path)
        bus = smbus2.SMBus(path)
        return cls(fd=bus.fd, _bus=bus)

    def close(self) -> None:
        """Close the underlying device."""
        if self._bus is not None:
            self._bus.close()
            self._bus = None
        self.fd = -1
        self.address = None

    def __enter__(self) -> I2CDevice:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # Transport

    def bind(self, address: int = CCI_ADDRESS) -> None:
        """Address the camera's slave address on this bus.

        Raises:
            BusSetupError: If the bus rejects the address. The device then
                refuses every further transfer.
        """
        try:
            self._set_slave(address)
        except OSError as e:
            self.setup_failed = True
            logger.error("CCI: failed to initialise the CCI (I2C setup failed): %s", e)
            raise BusSetupError(
                f"cannot bind slave address 0x{address:02X}: {e}"
            ) from e
        self.address = address
        self.setup_failed = False

    def write_bytes(self, buf: bytes) -> None:
        """Write the whole buffer in a single transfer.

        Raises:
            BusSetupError: If the device is not bound.
            ShortWriteError: If fewer than len(buf) bytes were accepted.
        """
        self._check_usable()
        try:
            n = self._write(buf)
        except OSError as e:
            logger.debug("I2C write failed: %s", e)
            n = 0
        if n != len(buf):
            self.stats.short_writes += 1
            raise ShortWriteError(len(buf), n)

    def read_bytes(self, n: int) -> bytes:
        """Read exactly n bytes in a single transfer.

        Updates stats.last_read_count.

        Raises:
            BusSetupError: If the device is not bound.
            ShortReadError: If fewer than n bytes were returned.
        """
        self._check_usable()
        try:
            data = bytes(self._read(n))
        except OSError as e:
            logger.debug("I2C read failed: %s", e)
            data = b""
        self.stats.last_read_count = len(data)
        if len(data) != n:
            self.stats.short_reads += 1
            raise ShortReadError(n, data)
        return data

    # Register layer

    def write_register(self, reg: int, value: int) -> bool:
        """Write a 16-bit register.

        Returns:
            True if the whole frame was accepted. A failure is logged and
            reported here, never raised.
        """
        try:
            self.write_bytes(encode_register_write(reg, value))
        except ShortWriteError as e:
            logger.error(
                "CCI: failed to write CCI register 0x%04X with value 0x%04X (%s)",
                reg,
                value,
                e,
            )
            return False
        return True

    def read_register(self, reg: int) -> int:
        """Read a 16-bit register.

        Returns:
            The register value, or REGISTER_SENTINEL (0xFFFF) if either half
            of the exchange under-transferred. In that case
            stats.last_read_count is zeroed.
        """
        try:
            return self.read_register_strict(reg)
        except ShortWriteError as e:
            logger.error("CCI: failed to write CCI register 0x%04X (%s)", reg, e)
        except ShortReadError as e:
            logger.error(
                "CCI: failed to read from CCI register 0x%04X (read %d)",
                reg,
                e.actual,
            )
        self.stats.last_read_count = 0
        return REGISTER_SENTINEL

    def read_register_strict(self, reg: int) -> int:
        """Read a 16-bit register, raising on a short transfer.

        Raises:
            ShortWriteError: If the register address was not accepted.
            ShortReadError: If fewer than 2 bytes came back.
        """
        self.write_bytes(encode_register_address(reg))
        return decode_register_value(self.read_bytes(WORD_LENGTH))

    # Busy handshake

    def wait_busy_clear(self, timeout: float | None = None) -> int:
        """Poll STATUS until the camera reports booted and not busy.

        Short transfers while polling are logged and the poll repeats. There
        is no sleep between polls; the bus round-trip paces the loop.

        Args:
            timeout: Give up after this many seconds. None (the default)
                polls forever, which is what the post-reboot path needs.

        Returns:
            The STATUS value that ended the wait.

        Raises:
            HandshakeTimeoutError: If timeout elapses first.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        self.handshake_state = HandshakeState.UNKNOWN
        status = STATUS_UNKNOWN
        while not is_ready(status):
            polled = self._poll_status()
            if polled is not None:
                status = polled
                if is_ready(status):
                    break
                self.handshake_state = HandshakeState.BUSY
            if deadline is not None and time.monotonic() >= deadline:
                raise HandshakeTimeoutError(timeout, status)

        self.handshake_state = HandshakeState.BOOTED_READY
        flags = parse_status(status)
        if flags.result:
            logger.debug("CCI: last command result code %d", flags.result)
        return status

    def _poll_status(self) -> int | None:
        self.stats.status_polls += 1
        try:
            self.write_bytes(encode_register_address(Register.STATUS))
        except ShortWriteError:
            logger.error("CCI: failed to set STATUS register")
        try:
            return decode_register_value(self.read_bytes(WORD_LENGTH))
        except ShortReadError as e:
            logger.error("CCI: failed to read STATUS register (read %d)", e.actual)
        return None

    # Syscall seam

    def _check_usable(self) -> None:
        if self.setup_failed:
            raise BusSetupError("CCI setup failed; device refuses transfers")
        if self.address is None:
            raise BusSetupError("slave address not bound")

    def _set_slave(self, address: int) -> None:
        fcntl.ioctl(self.fd, I2C_SLAVE, address)

    def _write(self, buf: bytes) -> int:
        return os.write(self.fd, buf)

    def _read(self, n: int) -> bytes:
        return os.read(self.fd, n)


# =============================================================================
# Camera Class (Command Layer)
# =============================================================================


E = TypeVar("E", bound=IntEnum)


@dataclasses.dataclass(kw_only=True, slots=True)
class LeptonCamera:
    """Lepton camera command interface.

    Wraps a bound I2CDevice. The device is single-owner: callers sharing a
    camera between threads must serialise access themselves.
    """

    dev: I2CDevice | None = None
    config: CCIConfig = dataclasses.field(default_factory=CCIConfig)
    sleep: Callable[[float], None] = dataclasses.field(
        default=time.sleep,
        repr=False,
    )

    def connect(self) -> None:
        """Open and bind the configured I2C device.

        Closes any device opened by an earlier connect().

        Raises:
            OSError: If the device cannot be opened.
            BusSetupError: If the slave address cannot be bound.
        """
        self.disconnect()
        dev = I2CDevice.open(self.config.device)
        try:
            dev.bind(self.config.address)
        except BusSetupError:
            dev.close()
            raise
        self.dev = dev

    def disconnect(self) -> None:
        """Close the I2C device."""
        if self.dev is not None:
            self.dev.close()
        self.dev = None

    @contextlib.contextmanager
    def command(
        self,
        cmd: int,
        *,
        settle: float = 0.0,
        bounded_exit: bool = True,
    ) -> Iterator[I2CDevice]:
        """Bracket a command body with the busy handshake.

        Waits for ready, runs the body, optionally sleeps, then waits for
        ready again.

        Args:
            cmd: Command ID (for logging).
            settle: Seconds to sleep after the body, before the closing wait.
            bounded_exit: Apply config.handshake_timeout to the closing wait.
                False always polls forever.
        """
        dev = self._require_dev()
        timeout = self.config.handshake_timeout
        dev.wait_busy_clear(timeout)
        logger.debug("CCI: %s (0x%04X)", command_name(cmd), cmd)
        yield dev
        if settle > 0:
            self.sleep(settle)
        dev.wait_busy_clear(timeout if bounded_exit else None)

    # Templates

    def get(self, cmd: int) -> int:
        """Run a GET command and return its 32-bit result."""
        with self.command(cmd) as dev:
            dev.write_register(Register.DATA_LENGTH, PAYLOAD_WORDS)
            dev.write_register(Register.COMMAND, cmd)
        ls_word = dev.read_register(Register.DATA_0)
        ms_word = dev.read_register(Register.DATA_0 + WORD_LENGTH)
        return join_words(ls_word, ms_word)

    def set(self, cmd: int, value: int) -> None:
        """Run a SET command with a 32-bit argument.

        COMMAND is written before DATA_LENGTH; firmware accepts this order.
        """
        ls_word, ms_word = split_words(int(value))
        with self.command(cmd) as dev:
            dev.write_register(Register.DATA_0, ls_word)
            dev.write_register(Register.DATA_0 + WORD_LENGTH, ms_word)
            dev.write_register(Register.COMMAND, cmd)
            dev.write_register(Register.DATA_LENGTH, PAYLOAD_WORDS)

    def run(
        self,
        cmd: int,
        *,
        settle: float = 0.0,
        bounded_exit: bool = True,
    ) -> None:
        """Run a command with no payload."""
        with self.command(cmd, settle=settle, bounded_exit=bounded_exit) as dev:
            dev.write_register(Register.COMMAND, cmd)

    # SYS

    def run_ffc(self) -> None:
        """Request a flat field correction now."""
        self.run(Command.RUN_FFC)

    def get_uptime(self) -> int:
        """Get camera uptime in milliseconds."""
        return self.get(Command.GET_UPTIME)

    def get_telemetry_enable_state(self) -> EnableState:
        """Get whether telemetry rows are added to frames."""
        return self._get_enum(Command.GET_TELEMETRY_ENABLE_STATE, EnableState)

    def set_telemetry_enable_state(self, state: EnableState | int) -> None:
        """Enable or disable telemetry rows."""
        self.set(Command.SET_TELEMETRY_ENABLE_STATE, EnableState(state))

    def get_telemetry_location(self) -> TelemetryLocation:
        """Get whether telemetry is a frame header or footer."""
        return self._get_enum(Command.GET_TELEMETRY_LOCATION, TelemetryLocation)

    def set_telemetry_location(self, location: TelemetryLocation | int) -> None:
        """Place telemetry in the frame header or footer."""
        self.set(Command.SET_TELEMETRY_LOCATION, TelemetryLocation(location))

    # RAD

    def get_radiometry_enable_state(self) -> EnableState:
        """Get the radiometry enable state."""
        return self._get_enum(Command.GET_RADIOMETRY_ENABLE_STATE, EnableState)

    def set_radiometry_enable_state(self, state: EnableState | int) -> None:
        """Enable or disable radiometry."""
        self.set(Command.SET_RADIOMETRY_ENABLE_STATE, EnableState(state))

    def get_radiometry_tlinear_enable_state(self) -> EnableState:
        """Get the T-Linear (absolute temperature output) enable state."""
        return self._get_enum(
            Command.GET_RADIOMETRY_TLINEAR_ENABLE_STATE, EnableState
        )

    def set_radiometry_tlinear_enable_state(self, state: EnableState | int) -> None:
        """Enable or disable T-Linear output."""
        self.set(Command.SET_RADIOMETRY_TLINEAR_ENABLE_STATE, EnableState(state))

    # AGC

    def get_agc_enable_state(self) -> EnableState:
        """Get the AGC enable state."""
        return self._get_enum(Command.GET_AGC_ENABLE_STATE, EnableState)

    def set_agc_enable_state(self, state: EnableState | int) -> None:
        """Enable or disable AGC."""
        self.set(Command.SET_AGC_ENABLE_STATE, EnableState(state))

    def get_agc_calc_enable_state(self) -> EnableState:
        """Get the AGC calculation enable state."""
        return self._get_enum(Command.GET_CALC_ENABLE_STATE, EnableState)

    def set_agc_calc_enable_state(self, state: EnableState | int) -> None:
        """Enable or disable AGC calculation."""
        self.set(Command.SET_CALC_ENABLE_STATE, EnableState(state))

    # OEM

    def get_gpio_mode(self) -> GpioMode:
        """Get the GPIO3 pin mode."""
        return self._get_enum(Command.GET_GPIO_MODE, GpioMode)

    def set_gpio_mode(self, mode: GpioMode | int) -> None:
        """Set the GPIO3 pin mode."""
        self.set(Command.SET_GPIO_MODE, GpioMode(mode))

    def run_reboot(self) -> None:
        """Reboot the camera.

        The bus stops responding while the camera reboots and runs its
        first FFC, so the closing handshake waits config.reboot_delay
        seconds and then polls without a timeout.
        """
        self.run(
            Command.RUN_REBOOT,
            settle=self.config.reboot_delay,
            bounded_exit=False,
        )

    def read_settings(self) -> dict[str, int]:
        """Read every supported setting.

        Returns:
            Dictionary with:
            - uptime: Uptime in milliseconds
            - telemetry, telemetry_location, radiometry, tlinear, agc,
              agc_calc, gpio_mode: Current enumeration values
        """
        return {
            "uptime": self.get_uptime(),
            "telemetry": self.get_telemetry_enable_state(),
            "telemetry_location": self.get_telemetry_location(),
            "radiometry": self.get_radiometry_enable_state(),
            "tlinear": self.get_radiometry_tlinear_enable_state(),
            "agc": self.get_agc_enable_state(),
            "agc_calc": self.get_agc_calc_enable_state(),
            "gpio_mode": self.get_gpio_mode(),
        }

    # Private methods

    def _get_enum(self, cmd: int, enum_cls: type[E]) -> E:
        value = self.get(cmd)
        try:
            return enum_cls(value)
        except ValueError:
            logger.error(
                "CCI: %s returned unexpected value 0x%08X", command_name(cmd), value
            )
            raise UnexpectedValueError(cmd, value, enum_cls) from None

    def _require_dev(self) -> I2CDevice:
        if self.dev is None:
            raise RuntimeError("Not connected")
        return self.dev
