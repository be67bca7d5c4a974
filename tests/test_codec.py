from datetime import datetime, timezone

import pytest

from smarthome_edge.codec import (
    Ack,
    ActuatorEcho,
    EchoUpdate,
    Telemetry,
    Unrecognized,
    decode_line,
    decode_telemetry,
    encode_command,
    encode_telemetry,
    parse_echo,
)
from smarthome_edge.core.models import TelemetrySample

NOW = datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)


def test_decode_line_parses_full_telemetry() -> None:
    decoded = decode_line(
        "GAS:123,LIGHT:456,SOIL:789,WATER:101,INFRAR:1,BTN1:0,BTN2:1", now=NOW
    )

    assert isinstance(decoded, Telemetry)
    assert decoded.sample == TelemetrySample(
        gas=123, light=456, soil=789, water=101, infrared=1, btn1=0, btn2=1, timestamp=NOW
    )


def test_decode_line_recognises_ack() -> None:
    assert decode_line("ACK") == Ack()
    assert decode_line("  ACK\r\n") == Ack()


def test_ack_is_case_sensitive() -> None:
    assert isinstance(decode_line("ack"), Unrecognized)


def test_decode_line_discards_all_zero_samples() -> None:
    decoded = decode_line("GAS:0,LIGHT:0,SOIL:0,WATER:0,INFRAR:1,BTN1:1,BTN2:1")

    assert isinstance(decoded, Unrecognized)
    assert decoded.reason == "noise"


def test_decode_line_marks_empty_lines() -> None:
    decoded = decode_line("   ")

    assert isinstance(decoded, Unrecognized)
    assert decoded.reason == "empty"


def test_decode_line_detects_gas_key_case_insensitively() -> None:
    decoded = decode_line("gas:5,light:6", now=NOW)

    assert isinstance(decoded, Telemetry)
    assert decoded.sample.gas == 5
    assert decoded.sample.light == 6
    assert decoded.sample.soil == 0


def test_decode_telemetry_skips_malformed_pairs() -> None:
    sample = decode_telemetry(
        "GAS:abc,LIGHT:300,SOIL,WATER:1:2,INFRARED:1,UNKNOWN:9", now=NOW
    )

    assert sample.gas == 0
    assert sample.light == 300
    assert sample.soil == 0
    assert sample.water == 0
    assert sample.infrared == 1


def test_decode_telemetry_accepts_only_ascii_integers() -> None:
    sample = decode_telemetry("GAS:1_000,LIGHT:+5,SOIL:\u0663,WATER:-2,INFRAR:1.5", now=NOW)

    assert sample.gas == 0
    assert sample.light == 5
    assert sample.soil == 0
    assert sample.water == -2
    assert sample.infrared == 0


def test_decode_telemetry_trims_whitespace() -> None:
    sample = decode_telemetry(" GAS : 12 , LIGHT: 34 ", now=NOW)

    assert sample.gas == 12
    assert sample.light == 34


def test_telemetry_parse_is_stable_through_canonical_form() -> None:
    line = "GAS:710,LIGHT:250,SOIL:60,WATER:900,INFRAR:0,BTN1:1,BTN2:0"
    first = decode_telemetry(line, now=NOW)

    assert encode_telemetry(first) == line
    assert decode_telemetry(encode_telemetry(first), now=NOW) == first


@pytest.mark.parametrize(
    "text, expected",
    [
        ("White light ON", EchoUpdate("white_light", True)),
        ("white light off", EchoUpdate("white_light", False)),
        ("Yellow light on", EchoUpdate("yellow_light", True)),
        ("Fan speed: 3", EchoUpdate("fan_speed", 3)),
        ("Fan ON", EchoUpdate("fan", True)),
        ("Relay OFF", EchoUpdate("relay", False)),
        ("Buzzer on", EchoUpdate("buzzer", True)),
        ("Door angle: 90", EchoUpdate("door_angle", 90)),
        ("Window angle 45", EchoUpdate("window_angle", 45)),
        ("Door opened", EchoUpdate("door_angle", 180)),
        ("Window closed", EchoUpdate("window_angle", 0)),
    ],
)
def test_parse_echo(text: str, expected: EchoUpdate) -> None:
    assert parse_echo(text) == expected


def test_fan_speed_wins_over_fan_state() -> None:
    assert parse_echo("Fan speed set, fan on, 2") == EchoUpdate("fan_speed", 2)


def test_decode_line_classifies_echo_and_noise() -> None:
    assert decode_line("Buzzer OFF") == ActuatorEcho("Buzzer OFF")

    decoded = decode_line("System booting...")
    assert isinstance(decoded, Unrecognized)
    assert decoded.reason == "unknown"


def test_encode_command_appends_newline() -> None:
    assert encode_command(" BUZZER_ON ") == b"BUZZER_ON\n"


@pytest.mark.parametrize("command", ["", "   ", "A\nB", "A\rB", "FAN_\u00d6N"])
def test_encode_command_rejects_invalid_tokens(command: str) -> None:
    with pytest.raises(ValueError):
        encode_command(command)
