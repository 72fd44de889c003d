"""Tests for line assembly and the transport lifecycle."""

import asyncio
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from conftest import FakeTransport, settle
from errors import ConnectionFailed, ConnectionTimedOut, NotConnected, SendFailed, TransportUnavailable
from transport import (
    BleTransport,
    LineAssembler,
    SerialTransport,
    WebSocketTransport,
    create_transport,
)


# ---- LineAssembler ----

def test_chunk_boundaries_do_not_change_lines():
    stream = b'{"a": 1}\nSTATE:1,0,1,0\n{"b": 2}\n'
    whole = LineAssembler().feed(stream)
    for split in range(1, len(stream)):
        assembler = LineAssembler()
        pieces = assembler.feed(stream[:split]) + assembler.feed(stream[split:])
        assert pieces == whole
    assert whole == ['{"a": 1}', "STATE:1,0,1,0", '{"b": 2}']


def test_partial_line_is_held_back():
    assembler = LineAssembler()
    assert assembler.feed(b'{"gap_he') == []
    assert assembler.pending == '{"gap_he'
    assert assembler.feed(b'ight": 3}\n') == ['{"gap_height": 3}']
    assert assembler.pending == ""


def test_blank_lines_and_crlf_are_dropped():
    assert LineAssembler().feed(b"\r\n  \nhello\r\n\n") == ["hello"]


def test_multibyte_character_split_across_chunks():
    data = "temp 25°C\n".encode("utf-8")
    cut = data.index(b"\xb0")  # inside the two-byte degree sign
    assembler = LineAssembler()
    assert assembler.feed(data[:cut]) == []
    assert assembler.feed(data[cut:]) == ["temp 25°C"]


def test_invalid_bytes_are_replaced():
    assert LineAssembler().feed(b"ok\xff\n") == ["ok�"]


def test_overlong_partial_line_is_discarded():
    assembler = LineAssembler(max_line_length=16)
    assert assembler.feed(b"x" * 20) == []
    assert assembler.dropped == 1
    assert assembler.pending == ""
    assert assembler.feed(b"tail\nnext\n") == ["tail", "next"]


def test_text_chunks_accepted():
    assert LineAssembler().feed("a\nb\n") == ["a", "b"]


# ---- LineTransport lifecycle ----

@pytest.mark.asyncio
async def test_lines_delivered_in_order(fake_transport):
    received = []
    fake_transport.on_data(received.append)
    await fake_transport.connect()
    fake_transport.push(b"one\ntw")
    fake_transport.push(b"o\nthree\n")
    await settle()
    assert received == ["one", "two", "three"]
    await fake_transport.disconnect()


@pytest.mark.asyncio
async def test_send_appends_newline_terminated_command(fake_transport):
    await fake_transport.connect()
    await fake_transport.send("RELAY1_ON")
    assert fake_transport.written == ["RELAY1_ON"]
    await fake_transport.disconnect()


@pytest.mark.asyncio
async def test_send_when_disconnected_raises_and_logs(fake_transport, error_log):
    with pytest.raises(NotConnected):
        await fake_transport.send("STATUS")
    assert len(error_log.by_kind("NotConnected")) == 1


@pytest.mark.asyncio
async def test_send_failure_raises_and_logs(fake_transport, error_log):
    await fake_transport.connect()
    fake_transport.write_error = OSError("device unplugged")
    with pytest.raises(SendFailed):
        await fake_transport.send("ALL_OFF")
    entries = error_log.by_kind("SendFailed")
    assert len(entries) == 1
    assert "device unplugged" in entries[0].message
    assert fake_transport.is_connected
    await fake_transport.disconnect()


@pytest.mark.asyncio
async def test_open_failure_becomes_connection_failed(error_log):
    transport = FakeTransport(error_log, open_error=PermissionError("access denied"))
    with pytest.raises(ConnectionFailed, match="access denied"):
        await transport.connect()
    assert not transport.is_connected
    assert transport.closed == 1


@pytest.mark.asyncio
async def test_transport_unavailable_passes_through(error_log):
    transport = FakeTransport(error_log, open_error=TransportUnavailable("no ports"))
    with pytest.raises(TransportUnavailable):
        await transport.connect()


@pytest.mark.asyncio
async def test_connect_timeout(fake_transport):
    fake_transport.open_delay = 5.0
    with pytest.raises(ConnectionTimedOut):
        await fake_transport.connect(timeout=0.01)
    assert not fake_transport.is_connected


@pytest.mark.asyncio
async def test_disconnect_discards_unprocessed_data(error_log):
    transport = FakeTransport(error_log, queue_size=10)
    received = []
    transport.on_data(received.append)
    await transport.connect()
    # Data arrives but disconnect() runs before the loops get a turn
    transport.push(b"a\nb\nc\n")
    await transport.disconnect()
    await settle()
    assert received == []
    assert not transport.is_connected
    assert transport.closed == 1


@pytest.mark.asyncio
async def test_disconnect_is_idempotent(fake_transport):
    await fake_transport.disconnect()
    await fake_transport.connect()
    await fake_transport.disconnect()
    await fake_transport.disconnect()
    assert not fake_transport.is_connected


@pytest.mark.asyncio
async def test_remote_eof_delivers_then_reports_closed(fake_transport):
    received = []
    closed = MagicMock()
    fake_transport.on_data(received.append)
    fake_transport.on_closed(closed)
    await fake_transport.connect()
    fake_transport.push(b"last\n")
    fake_transport.end_stream()
    await fake_transport.wait_closed()
    assert received == ["last"]
    closed.assert_called_once_with(None)
    assert not fake_transport.is_connected


@pytest.mark.asyncio
async def test_read_error_reports_reason(fake_transport, error_log):
    closed = MagicMock()
    fake_transport.on_closed(closed)
    await fake_transport.connect()
    fake_transport.break_stream(OSError("framing error"))
    await fake_transport.wait_closed()
    reason = closed.call_args.args[0]
    assert "reading error" in reason
    assert "framing error" in reason
    assert len(error_log.by_kind("ReadError")) == 1


@pytest.mark.asyncio
async def test_handler_exception_does_not_stop_stream(fake_transport, error_log):
    received = []

    def handler(line):
        if line == "bad":
            raise RuntimeError("boom")
        received.append(line)

    fake_transport.on_data(handler)
    await fake_transport.connect()
    fake_transport.push(b"good\nbad\nafter\n")
    await settle()
    assert received == ["good", "after"]
    assert len(error_log.by_kind("DataError")) == 1
    await fake_transport.disconnect()


@pytest.mark.asyncio
async def test_full_queue_applies_backpressure(error_log):
    transport = FakeTransport(error_log, queue_size=2)
    await transport.connect()
    # Stop the consumer so nothing drains the queue
    transport._dispatch_task.cancel()
    await asyncio.sleep(0)
    transport.push(b"1\n2\n3\n4\n")
    await settle()
    # Reader is suspended on put() with the queue full
    assert transport._lines.full()
    assert not transport._reader_task.done()
    await transport.disconnect()


@pytest.mark.asyncio
async def test_reconnect_replaces_stream(fake_transport):
    received = []
    fake_transport.on_data(received.append)
    await fake_transport.connect()
    await fake_transport.connect()
    assert fake_transport.opened == 2
    fake_transport.push(b"fresh\n")
    await settle()
    assert received == ["fresh"]
    await fake_transport.disconnect()


# ---- Concrete transports ----

@pytest.mark.asyncio
async def test_websocket_without_url_is_unavailable(error_log):
    transport = WebSocketTransport(error_log, url=None)
    with pytest.raises(TransportUnavailable):
        await transport.connect()


def test_serial_detect_port_none():
    with patch("transport.serial.tools.list_ports.comports", return_value=[]):
        with pytest.raises(TransportUnavailable):
            SerialTransport.detect_port()


def test_serial_detect_port_single():
    ports = [SimpleNamespace(device="/dev/ttyUSB0")]
    with patch("transport.serial.tools.list_ports.comports", return_value=ports):
        assert SerialTransport.detect_port() == "/dev/ttyUSB0"


def test_serial_detect_port_ambiguous():
    ports = [SimpleNamespace(device="/dev/ttyUSB0"), SimpleNamespace(device="/dev/ttyACM0")]
    with patch("transport.serial.tools.list_ports.comports", return_value=ports):
        with pytest.raises(ConnectionFailed, match="Several serial ports"):
            SerialTransport.detect_port()


def test_create_transport_selects_kind(error_log):
    base = dict(serial_port=None, ws_url="ws://pod", ble_address=None, line_queue_size=5)
    assert isinstance(create_transport(SimpleNamespace(transport="serial", **base), error_log),
                      SerialTransport)
    ws = create_transport(SimpleNamespace(transport="websocket", **base), error_log)
    assert isinstance(ws, WebSocketTransport)
    assert ws.queue_size == 5
    assert isinstance(create_transport(SimpleNamespace(transport="ble", **base), error_log),
                      BleTransport)
    with pytest.raises(ValueError):
        create_transport(SimpleNamespace(transport="carrier-pigeon", **base), error_log)
