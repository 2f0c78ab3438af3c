import pytest

from lanrelay.errors import ValidationError
from lanrelay.streams import (
    StreamDefinition,
    StreamRuntimeState,
    StreamStatus,
    generate_stream_id,
    iso_timestamp,
    validate_changes,
    validate_definition,
)


def test_generated_ids_are_mount_safe():
    assert generate_stream_id("Studio A!", now=1.5) == "studio_a_1500"
    assert generate_stream_id(None, now=2) == "stream_2000"
    assert generate_stream_id("!!!", now=0) == "stream_0"
    assert generate_stream_id("A very long stream name indeed", now=1).startswith("a_very_long_stream_n")


def test_validate_definition_defaults():
    definition = validate_definition({"deviceId": " usb-mic ", "name": "Studio"}, now=10.0)

    assert definition.device_id == "usb-mic"
    assert definition.input_file is None
    assert definition.id == "studio_10000"
    assert definition.bitrate == 192
    assert definition.created_at == 10.0
    assert definition.source == "usb-mic"


def test_validate_definition_file_source_and_bitrate_forms():
    definition = validate_definition({"id": "loop", "inputFile": "/music/a.mp3", "bitrate": "128k"})

    assert definition.name == "Stream loop"
    assert definition.bitrate == 128
    assert definition.source == "file:/music/a.mp3"


@pytest.mark.parametrize(
    "payload",
    [
        {},
        {"deviceId": "a", "inputFile": "b"},
        {"deviceId": "  "},
        {"deviceId": 7},
        {"deviceId": "a", "id": "has space"},
        {"deviceId": "a", "id": "x" * 65},
        {"deviceId": "a", "bitrate": 16},
        {"deviceId": "a", "bitrate": True},
        {"deviceId": "a", "bitrate": "fast"},
        {"deviceId": "a", "name": "n" * 101},
        ["deviceId"],
    ],
)
def test_validate_definition_rejects(payload):
    with pytest.raises(ValidationError):
        validate_definition(payload)


def test_validate_changes():
    assert validate_changes({"bitrate": 256, "name": " New "}) == {"bitrate": 256, "name": "New"}
    assert validate_changes({"deviceId": ""}) == {"deviceId": None}
    with pytest.raises(ValidationError):
        validate_changes({"status": "running"})
    with pytest.raises(ValidationError):
        validate_changes({"name": ""})


def test_record_round_trip_keeps_activity():
    definition = StreamDefinition(id="studio", name="Studio", device_id="usb-mic", created_at=100.0).touched(200.0)

    restored = StreamDefinition.from_record(definition.to_record())

    assert restored == definition


def test_from_record_accepts_legacy_timestamps():
    restored = StreamDefinition.from_record(
        {
            "id": "old",
            "deviceId": "usb-mic",
            "config": {"bitrate": 96, "sampleRate": "bad"},
            "createdAt": 1700000000000,
            "lastActiveAt": "2024-01-01T00:00:00Z",
        }
    )

    assert restored.created_at == 1700000000.0
    assert restored.sample_rate == 44100
    assert restored.name == "old"
    assert iso_timestamp(restored.last_active_at) == "2024-01-01T00:00:00+00:00"


def test_runtime_state_tracks_activity_and_stderr():
    runtime = StreamRuntimeState()
    assert not runtime.status.active

    runtime.set_status(StreamStatus.STARTING)
    assert runtime.status.active
    assert StreamStatus.STOPPING.active
    assert not StreamStatus.ERROR.active

    runtime.stderr_tail.extend(f"line {i}" for i in range(500))
    text = runtime.stderr_text()
    assert text.endswith("line 499")
    assert "line 299" not in text
