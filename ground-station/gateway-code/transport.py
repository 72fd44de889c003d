"""Physical link to the pod controller.

Every transport exposes the same line-oriented interface: ``connect()``,
``disconnect()``, ``send()`` and a single ``on_data`` consumer. The concrete
link only has to open the device, hand back raw chunks and write bytes.

Data path:
    _read_loop (producer)  --chunks-->  LineAssembler  --lines-->  bounded queue
    _dispatch_loop (consumer)  --line-->  on_data callback

The link delivers arbitrarily chunked data with no framing, so records are
rebuilt by splitting on newlines. A full queue suspends the read loop until
the consumer catches up. ``disconnect()`` drops whatever is still queued.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
from abc import ABC, abstractmethod
from typing import Callable, Optional, Union

import serial.tools.list_ports
import serial_asyncio
import websockets
from bleak import BleakClient, BleakScanner
from bleak.exc import BleakError
from websockets.exceptions import ConnectionClosedOK

from constants import (
    DEFAULT_BAUD_RATE,
    DEVICE_NAME_PREFIXES,
    LINE_QUEUE_SIZE,
    MAX_LINE_LENGTH,
    NUS_RX_CHAR_UUID,
    NUS_SERVICE_UUID,
    NUS_TX_CHAR_UUID,
    READ_CHUNK_SIZE,
)
from errors import (
    ConnectionFailed,
    ConnectionTimedOut,
    NotConnected,
    ParseError,
    SendFailed,
    TransportUnavailable,
)
from event_log import ErrorLog

logger = logging.getLogger(__name__)

_EOF = object()  # queued by the read loop when the stream ends


class LineAssembler:
    """Rebuilds newline-terminated records from arbitrarily split chunks.

    Bytes go through an incremental decoder so a multibyte character split
    across two chunks still decodes; undecodable bytes become U+FFFD.
    """

    def __init__(self, encoding: str = "utf-8", max_line_length: int = MAX_LINE_LENGTH):
        self.encoding = encoding
        self.max_line_length = max_line_length
        self.dropped = 0  # partial lines discarded for exceeding max_line_length
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buf = ""

    def feed(self, chunk: Union[bytes, bytearray, str]) -> list[str]:
        """Append a chunk and return every complete, non-empty, trimmed line."""
        if isinstance(chunk, (bytes, bytearray)):
            chunk = self._decoder.decode(bytes(chunk))
        self._buf += chunk

        parts = self._buf.split("\n")
        self._buf = parts.pop()  # remainder after the last newline
        lines = [p.strip() for p in parts]

        if len(self._buf) > self.max_line_length:
            self._buf = ""
            self.dropped += 1
        return [line for line in lines if line]

    @property
    def pending(self) -> str:
        return self._buf

    def reset(self):
        self._decoder.reset()
        self._buf = ""


class LineTransport(ABC):
    """Connection lifecycle + line framing shared by every physical link."""

    name = "transport"

    def __init__(self, error_log: ErrorLog, queue_size: int = LINE_QUEUE_SIZE,
                 encoding: str = "utf-8"):
        self.error_log = error_log
        self.queue_size = queue_size
        self.encoding = encoding
        self._assembler = LineAssembler(encoding)
        self._on_data: Optional[Callable[[str], None]] = None
        self._on_closed: Optional[Callable[[Optional[str]], None]] = None
        self._lines: Optional[asyncio.Queue] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._dispatch_task: Optional[asyncio.Task] = None
        self._connected = False
        self._close_reason: Optional[str] = None

    # ---- Link primitives (implemented per transport) ----

    @abstractmethod
    async def _open(self, baud_rate: int):
        """Acquire and open the device. Raise TransportUnavailable if impossible."""

    @abstractmethod
    async def _read_chunk(self) -> Union[bytes, str]:
        """Wait for the next chunk. Empty means end of stream."""

    @abstractmethod
    async def _write(self, data: bytes):
        """Write raw bytes to the device."""

    @abstractmethod
    async def _close(self):
        """Release the device handle. Must be safe to call repeatedly."""

    def describe(self) -> str:
        return self.name

    # ---- Public API ----

    @property
    def is_connected(self) -> bool:
        return self._connected

    def on_data(self, callback: Callable[[str], None]):
        """Register the consumer for decoded lines (replaces any previous one)."""
        self._on_data = callback

    def on_closed(self, callback: Callable[[Optional[str]], None]):
        """Register a callback fired when the stream ends on its own.

        The argument is the error message, or None for a clean end of stream.
        Not fired for an explicit disconnect().
        """
        self._on_closed = callback

    async def connect(self, baud_rate: int = DEFAULT_BAUD_RATE,
                      timeout: Optional[float] = None):
        """Open the device and start the read loop.

        Raises:
            TransportUnavailable: no transport capability on this host.
            ConnectionTimedOut: open did not finish within ``timeout`` seconds.
            ConnectionFailed: the device could not be opened.
        """
        if self._connected:
            await self.disconnect()

        try:
            if timeout:
                await asyncio.wait_for(self._open(baud_rate), timeout)
            else:
                await self._open(baud_rate)
        except (TransportUnavailable, ConnectionFailed):
            await self._close_quietly()
            raise
        except asyncio.TimeoutError as e:
            await self._close_quietly()
            raise ConnectionTimedOut(
                f"Timed out after {timeout:.1f}s opening {self.describe()}") from e
        except Exception as e:
            await self._close_quietly()
            raise ConnectionFailed(f"{self.describe()}: {e}") from e

        self._assembler.reset()
        self._close_reason = None
        self._lines = asyncio.Queue(maxsize=self.queue_size)
        self._connected = True
        self._reader_task = asyncio.create_task(
            self._read_loop(), name=f"{self.name}-read")
        self._dispatch_task = asyncio.create_task(
            self._dispatch_loop(), name=f"{self.name}-dispatch")
        logger.info("Connected to %s", self.describe())

    async def disconnect(self):
        """Stop reading, drop queued lines and release the device. Never raises."""
        current = asyncio.current_task()
        tasks = [t for t in (self._reader_task, self._dispatch_task)
                 if t is not None and t is not current]
        self._reader_task = None
        self._dispatch_task = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if self._connected:
            logger.info("Disconnected from %s", self.describe())
        await self._release()

    async def send(self, command: str):
        """Write ``command`` plus newline to the device.

        Raises:
            NotConnected: no open write channel.
            SendFailed: the underlying write failed.
        """
        if not self._connected:
            msg = "Cannot send command: not connected to the pod"
            self.error_log.error(msg, kind=NotConnected.__name__)
            raise NotConnected(msg)
        try:
            await self._write((command + "\n").encode(self.encoding))
        except Exception as e:
            msg = f"Send command error: {e}"
            self.error_log.error(msg, kind=SendFailed.__name__)
            raise SendFailed(msg) from e
        logger.debug("Sent: %s", command)

    async def wait_closed(self):
        """Wait until the current stream has ended and been fully dispatched."""
        task = self._dispatch_task
        if task is not None:
            await asyncio.wait({task})

    # ---- Internals ----

    async def _read_loop(self):
        try:
            while True:
                chunk = await self._read_chunk()
                if not chunk:
                    logger.info("%s: end of stream", self.describe())
                    break
                dropped = self._assembler.dropped
                for line in self._assembler.feed(chunk):
                    await self._lines.put(line)
                if self._assembler.dropped != dropped:
                    self.error_log.warning(
                        f"Discarded over-long line from {self.describe()} "
                        f"(> {self._assembler.max_line_length} chars without newline)",
                        kind=ParseError.__name__)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._close_reason = f"{self.describe()} reading error: {e}"
            self.error_log.error(self._close_reason, kind="ReadError")
        await self._lines.put(_EOF)

    async def _dispatch_loop(self):
        lines = self._lines
        while True:
            line = await lines.get()
            if line is _EOF:
                break
            self._deliver(line)
            if self._lines is not lines:
                return  # disconnect() ran inside the callback

        # Stream ended on its own: tear down and tell the owner
        reason = self._close_reason
        self._reader_task = None
        self._dispatch_task = None
        await self._release()
        if self._on_closed:
            self._on_closed(reason)

    def _deliver(self, line: str):
        if self._on_data is None:
            return
        try:
            self._on_data(line)
        except Exception as e:
            self.error_log.error(f"Data handling error: {e}", kind="DataError")

    async def _release(self):
        self._connected = False
        self._lines = None
        self._assembler.reset()
        await self._close_quietly()

    async def _close_quietly(self):
        try:
            await self._close()
        except Exception as e:
            logger.debug("Ignoring error while closing %s: %s", self.describe(), e)


class SerialTransport(LineTransport):
    """USB/UART serial link via pyserial-asyncio."""

    name = "serial"

    def __init__(self, error_log: ErrorLog, port: Optional[str] = None, **kwargs):
        super().__init__(error_log, **kwargs)
        self.port = port
        self._active_port: Optional[str] = None
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None

    def describe(self) -> str:
        return f"serial {self._active_port or self.port or '(auto)'}"

    async def _open(self, baud_rate: int):
        port = self.port or self.detect_port()
        self._reader, self._writer = await serial_asyncio.open_serial_connection(
            url=port, baudrate=baud_rate
        )
        self._active_port = port
        logger.info("Serial opened on %s @ %d", port, baud_rate)

    @staticmethod
    def detect_port() -> str:
        """Pick the only attached serial port."""
        ports = [p.device for p in serial.tools.list_ports.comports()]
        if not ports:
            raise TransportUnavailable("No serial ports found on this host")
        if len(ports) > 1:
            raise ConnectionFailed(
                f"Several serial ports found ({', '.join(ports)}); choose one with --port")
        return ports[0]

    async def _read_chunk(self) -> bytes:
        return await self._reader.read(READ_CHUNK_SIZE)

    async def _write(self, data: bytes):
        self._writer.write(data)
        await self._writer.drain()

    async def _close(self):
        writer = self._writer
        self._reader = None
        self._writer = None
        self._active_port = None
        if writer is not None:
            writer.close()


class WebSocketTransport(LineTransport):
    """WebSocket bridge (e.g. a serial-to-WS relay). One message = one record."""

    name = "websocket"

    def __init__(self, error_log: ErrorLog, url: Optional[str] = None, **kwargs):
        super().__init__(error_log, **kwargs)
        self.url = url
        self._ws = None

    def describe(self) -> str:
        return f"websocket {self.url or '(no url)'}"

    async def _open(self, baud_rate: int):
        if not self.url:
            raise TransportUnavailable("No WebSocket URL configured")
        # The connect timeout is enforced by LineTransport.connect()
        self._ws = await websockets.connect(self.url, open_timeout=None, max_size=1_000_000)

    async def _read_chunk(self) -> str:
        try:
            message = await self._ws.recv()
        except ConnectionClosedOK:
            return ""
        if isinstance(message, bytes):
            message = message.decode(self.encoding, errors="replace")
        if not message.endswith("\n"):
            message += "\n"
        return message

    async def _write(self, data: bytes):
        await self._ws.send(data.decode(self.encoding))

    async def _close(self):
        ws = self._ws
        self._ws = None
        if ws is not None:
            await ws.close()


def _matches_pod(device, adv_data) -> bool:
    """BLE scan filter: known name prefix or advertised UART service."""
    if device.name and any(p in device.name for p in DEVICE_NAME_PREFIXES):
        return True
    uuids = [str(u).lower() for u in (adv_data.service_uuids or [])]
    return NUS_SERVICE_UUID in uuids


class BleTransport(LineTransport):
    """BLE UART link (Nordic UART Service) via bleak.

    Notifications arrive in small MTU-sized pieces, possibly off the event
    loop thread; they are marshalled onto the loop and fed to the same line
    assembler as any other chunk.
    """

    name = "ble"

    def __init__(self, error_log: ErrorLog, address: Optional[str] = None,
                 scan_timeout: float = 10.0, **kwargs):
        super().__init__(error_log, **kwargs)
        self.address = address
        self.scan_timeout = scan_timeout
        self._client: Optional[BleakClient] = None
        self._chunks: Optional[asyncio.Queue] = None
        self._device_label: Optional[str] = None

    def describe(self) -> str:
        return f"ble {self._device_label or self.address or '(scan)'}"

    async def _find_device(self):
        try:
            if self.address:
                device = await BleakScanner.find_device_by_address(
                    self.address, timeout=self.scan_timeout)
            else:
                device = await BleakScanner.find_device_by_filter(
                    _matches_pod, timeout=self.scan_timeout)
        except BleakError as e:
            raise TransportUnavailable(f"Bluetooth unavailable: {e}") from e
        if device is None:
            raise ConnectionFailed("No pod controller found over BLE")
        return device

    async def _open(self, baud_rate: int):
        device = await self._find_device()
        loop = asyncio.get_running_loop()
        chunks: asyncio.Queue = asyncio.Queue()
        self._chunks = chunks

        def _on_notify(_char, data: bytearray):
            loop.call_soon_threadsafe(chunks.put_nowait, bytes(data))

        def _on_disconnect(_client):
            loop.call_soon_threadsafe(chunks.put_nowait, b"")

        self._client = BleakClient(device, disconnected_callback=_on_disconnect)
        await self._client.connect()
        await self._client.start_notify(NUS_TX_CHAR_UUID, _on_notify)
        self._device_label = device.name or device.address
        logger.info("BLE connected to %s [%s]", device.name, device.address)

    async def _read_chunk(self) -> bytes:
        return await self._chunks.get()

    async def _write(self, data: bytes):
        await self._client.write_gatt_char(NUS_RX_CHAR_UUID, data, response=False)

    async def _close(self):
        client = self._client
        self._client = None
        self._chunks = None
        self._device_label = None
        if client is not None and client.is_connected:
            await client.disconnect()


def create_transport(settings, error_log: ErrorLog) -> LineTransport:
    """Build the transport selected by ``settings.transport``."""
    kind = settings.transport.lower()
    common = {"queue_size": settings.line_queue_size}
    if kind == "serial":
        return SerialTransport(error_log, port=settings.serial_port, **common)
    if kind in ("websocket", "ws"):
        return WebSocketTransport(error_log, url=settings.ws_url, **common)
    if kind == "ble":
        return BleTransport(error_log, address=settings.ble_address, **common)
    raise ValueError(f"Unknown transport '{settings.transport}' (use serial, websocket or ble)")
