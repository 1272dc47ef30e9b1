import json

import pytest

from alert_builder import (
    Alert,
    AlertBuilder,
    AlertSchemaError,
    notify_merge_key,
    take_sample,
)


def _alert(at, make_event):
    builder = AlertBuilder("high", "customs example 10.0.0.1 4 3", "example", timestamp=at(90))
    builder.metadata("customs_category", "example")
    builder.metadata("customs_count", 4)
    builder.metadata("ignored", None)
    builder.sample([make_event(1, source_address="10.0.0.1")], truncated=True)
    return builder.build()


def test_builder_stringifies_metadata(at, make_event) -> None:
    alert = _alert(at, make_event)

    assert alert.metadata == {"customs_category": "example", "customs_count": "4"}
    assert len(alert.alert_id) == 16
    assert alert.has_correct_fields()


def test_json_round_trip(at, make_event) -> None:
    alert = _alert(at, make_event)

    restored = Alert.from_json(alert.to_json())

    assert restored.to_dict() == alert.to_dict()
    data = json.loads(alert.to_json())
    assert data["timestamp"] == "1970-01-01T00:01:30.000Z"
    assert data["sample"] == [{"timestamp": "1970-01-01T00:00:01.000Z", "source_address": "10.0.0.1"}]
    assert data["sample_truncated"] is True


def test_invalid_alert_raises_schema_error() -> None:
    with pytest.raises(AlertSchemaError):
        AlertBuilder("urgent", "summary", "merge").build()
    with pytest.raises(AlertSchemaError):
        AlertBuilder("low", "", "merge").build()


def test_from_dict_rejects_incomplete_record() -> None:
    with pytest.raises(ValueError):
        Alert.from_dict({"id": "abc", "severity": "low", "category": "customs"})


def test_alert_ids_are_unique(at) -> None:
    first = AlertBuilder("low", "same", "merge", timestamp=at(0)).build()
    second = AlertBuilder("low", "same", "merge", timestamp=at(0)).build()

    assert first.alert_id != second.alert_id


def test_notify_merge_key_shapes() -> None:
    assert notify_merge_key("velocity") == "velocity"
    assert notify_merge_key("velocity", monitor_only=True) == "velocity_monitor_only"
    assert notify_merge_key("abuse", ("source_address",)) == "abuse"
    assert notify_merge_key("abuse", ("email", "source_address")) == "abuse_email_source_address"


def test_take_sample(make_event) -> None:
    events = [make_event(i) for i in range(3)]

    assert take_sample(events, 5) == (events, False)
    assert take_sample(events, 2) == (events[:2], True)
