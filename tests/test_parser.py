"""Tests for the line parser and sensor extraction."""

import math

import pytest

from pod_state import Acceleration, Calibration, RelayState, Vector3


# ---- parse_json ----

def test_parse_json_object(message_parser):
    assert message_parser.parse_json('{"gap_height": 12.5}') == {"gap_height": 12.5}


@pytest.mark.parametrize("line", ["", "hello pod", "ACK RELAY1_ON", "STATE:1,0,1,0", "[1, 2]"])
def test_non_object_lines_are_skipped_silently(message_parser, error_log, line):
    assert message_parser.parse_json(line) is None
    assert len(error_log) == 0


def test_malformed_json_logs_parse_error_with_excerpt(message_parser, error_log):
    assert message_parser.parse_json("{not json") is None
    entries = error_log.by_kind("ParseError")
    assert len(entries) == 1
    assert "{not json" in entries[0].message
    assert entries[0].message.startswith("JSON parse error:")


def test_parse_error_excerpt_is_truncated(message_parser, error_log):
    line = "{" + "x" * 500
    message_parser.parse_json(line)
    message = error_log.entries()[0].message
    assert line[:100] in message
    assert line[:101] not in message


# ---- parse_relay_line ----

def test_relay_line(message_parser):
    assert message_parser.parse_relay_line("STATE:1,0,1,0") == RelayState(True, False, True, False)


def test_relay_line_with_prefix_and_spaces(message_parser):
    state = message_parser.parse_relay_line("Relay STATE: 0, 1 ,0,1")
    assert state == RelayState(False, True, False, True)


def test_relay_tokens_other_than_one_are_off(message_parser):
    assert message_parser.parse_relay_line("STATE:1,x,2,1") == RelayState(True, False, False, True)


def test_line_without_marker_is_not_relay(message_parser, error_log):
    assert message_parser.parse_relay_line("hello") is None
    assert len(error_log) == 0


@pytest.mark.parametrize("line", ["STATE:1,0,1", "STATE:1,0,1,0,1", "STATE:"])
def test_malformed_relay_line_warns(message_parser, error_log, line):
    assert message_parser.parse_relay_line(line) is None
    entries = error_log.by_kind("ParseError")
    assert len(entries) == 1
    assert entries[0].severity.value == "warning"
    assert entries[0].message.startswith("Malformed relay state line")


# ---- parse_relay_object ----

def test_relay_object_partial(message_parser):
    raw = {"relayStates": {"relay1": True, "relay3": 0}}
    assert message_parser.parse_relay_object(raw) == {1: True, 3: False}


def test_relay_object_absent(message_parser):
    assert message_parser.parse_relay_object({"gap_height": 1}) is None


# ---- extract_sensor_update: temperatures ----

def test_temperature_array_wins_over_individual_fields(message_parser):
    update = message_parser.extract_sensor_update({"temp_sensors": [1, 2], "temp1": 99})
    assert update.temperatures == (1.0, 2.0, 0.0, 0.0)


def test_temperature_array_is_truncated_to_four(message_parser):
    update = message_parser.extract_sensor_update({"temp_sensors": [1, 2, 3, 4, 5, 6]})
    assert update.temperatures == (1.0, 2.0, 3.0, 4.0)


def test_single_element_array_falls_through_to_fields(message_parser):
    update = message_parser.extract_sensor_update({"temp_sensors": [7], "temp2": 30})
    assert update.temperatures == (0.0, 30.0, 0.0, 0.0)


def test_individual_temperature_fields(message_parser):
    update = message_parser.extract_sensor_update({"temp1": 21.5, "temp3": 25})
    assert update.temperatures == (21.5, 0.0, 25.0, 0.0)


def test_object_temp_fills_first_channel(message_parser):
    update = message_parser.extract_sensor_update({"object_temp": 40.25})
    assert update.temperatures == (40.25, 0.0, 0.0, 0.0)


def test_no_temperature_shape_leaves_field_absent(message_parser):
    update = message_parser.extract_sensor_update({"pressure": 1.0})
    assert update.temperatures is None


# ---- extract_sensor_update: vectors and scalars ----

def test_vectors_and_magnitude(message_parser):
    update = message_parser.extract_sensor_update({
        "orientation": [10, 20, 30],
        "acceleration": [3, 4, 12],
        "calibration": [3, 2, 1],
    })
    assert update.orientation == Vector3(10.0, 20.0, 30.0)
    assert update.acceleration == Acceleration(3.0, 4.0, 12.0, 13.0)
    assert update.calibration == Calibration(3, 2, 1)


def test_magnitude_is_euclidean_norm(message_parser):
    update = message_parser.extract_sensor_update({"acceleration": [0.1, -9.81, 0.3]})
    expected = math.sqrt(0.1 ** 2 + 9.81 ** 2 + 0.3 ** 2)
    assert update.acceleration.magnitude == pytest.approx(expected)


def test_absent_fields_are_omitted(message_parser):
    update = message_parser.extract_sensor_update({"gap_height": 11.2, "bno_health": 2})
    assert update.present() == {"gap_height": 11.2, "bno_health": 2}


def test_unknown_fields_are_ignored(message_parser):
    update = message_parser.extract_sensor_update({"firmware": "1.2.3", "voltage2": 12})
    assert update.present() == {"voltage2": 12.0}


def test_current_state_is_text(message_parser):
    update = message_parser.extract_sensor_update({"current_state": 4})
    assert update.current_state == "4"


def test_legacy_single_rail_fields(message_parser):
    update = message_parser.extract_sensor_update(
        {"voltage": 24.1, "voltage_health": 1, "temp_health": 0})
    assert update.voltage1 == 24.1
    assert update.voltage1_health == 1
    assert update.temp1_health == 0


def test_specific_field_beats_legacy_field(message_parser):
    update = message_parser.extract_sensor_update({"voltage": 1.0, "voltage1": 2.0})
    assert update.voltage1 == 2.0


def test_malformed_nested_structure_logs_extraction_error(message_parser, error_log):
    update = message_parser.extract_sensor_update({"gap_height": 3, "orientation": [1, 2]})
    assert update.is_empty()
    entries = error_log.by_kind("ExtractionError")
    assert len(entries) == 1
    assert entries[0].message.startswith("Sensor data extraction error:")
    assert "orientation" in entries[0].message


def test_non_numeric_scalar_logs_extraction_error(message_parser, error_log):
    update = message_parser.extract_sensor_update({"pressure": "high"})
    assert update.is_empty()
    assert len(error_log.by_kind("ExtractionError")) == 1
