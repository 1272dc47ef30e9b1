import pytest

from alert_builder import AlertBuilder
from customs_config import DEFAULT_CONFIG, EscalationPolicy, load_config, validate_config


def test_missing_config_falls_back_to_defaults(tmp_path, capsys) -> None:
    config = load_config(str(tmp_path / "absent.yaml"))

    assert config == DEFAULT_CONFIG
    assert config is not DEFAULT_CONFIG
    assert "Config not found" in capsys.readouterr().err


def test_yaml_overrides_top_level_keys(tmp_path) -> None:
    path = tmp_path / "customs.yaml"
    path.write_text(
        "monitored_resource: accounts\n"
        "detectors:\n"
        "  - name: burst\n"
        "    type: threshold\n"
        "    limit: 2\n"
    )

    config = load_config(str(path))

    assert config["monitored_resource"] == "accounts"
    assert [d["name"] for d in config["detectors"]] == ["burst"]
    assert config["watermark_delay_seconds"] == DEFAULT_CONFIG["watermark_delay_seconds"]


def test_validate_rejects_bad_detectors() -> None:
    with pytest.raises(ValueError):
        validate_config({"detectors": [{"name": "a", "type": "threshold"}, {"name": "a", "type": "threshold"}]})
    with pytest.raises(ValueError):
        validate_config({"detectors": [{"name": "a", "type": "sliding"}]})
    with pytest.raises(ValueError):
        validate_config({"detectors": [{"type": "threshold"}]})


def test_escalation_policy(at) -> None:
    policy = EscalationPolicy.from_config({"default": False, "velocity": True})

    def alert(category):
        return AlertBuilder("low", "s", "m", timestamp=at(0)).metadata("customs_category", category).build()

    assert policy.allow(alert("velocity"))
    assert not policy.allow(alert("threshold_analysis"))
    assert EscalationPolicy.from_config(None).allow(alert("anything"))


def test_validate_rejects_unknown_severity() -> None:
    with pytest.raises(ValueError, match="severity"):
        validate_config({"detectors": [{"name": "a", "type": "threshold", "severity": "warning"}]})

    validate_config({"detectors": [{"name": "a", "type": "threshold"}]})
    validate_config({"detectors": [{"name": "b", "type": "velocity", "severity": "critical"}]})
