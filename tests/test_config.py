import json

from whoisactive.config import load_config, DEFAULT_ITERATIONS


def test_defaults():
    config = load_config()
    assert config.iterations == 12
    assert config.interval_seconds == 5.0
    assert config.sleep_after_last is True
    assert config.procedure == "dbo.sp_WhoIsActive"
    assert config.procedure_flags["get_plans"] == 1


def test_file_then_environment(tmp_path, monkeypatch):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({
        "database": "sqlite:///file.db",
        "iterations": 10,
        "interval_seconds": 6,
        "procedure_flags": {"get_locks": 1},
    }))
    monkeypatch.setenv("WHOISACTIVE_ITERATIONS", "11")
    monkeypatch.setenv("WHOISACTIVE_SLEEP_AFTER_LAST", "false")

    config = load_config(str(path))

    assert config.database == "sqlite:///file.db"
    assert config.iterations == 11
    assert config.interval_seconds == 6.0
    assert config.sleep_after_last is False
    assert config.procedure_flags == {"get_locks": 1}


def test_out_of_range_values_fall_back(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"iterations": 0, "interval_seconds": -3}))
    config = load_config(str(path))
    assert config.iterations == DEFAULT_ITERATIONS
    assert config.interval_seconds == 0.0


def test_string_flag_in_file_is_parsed(tmp_path, monkeypatch):
    monkeypatch.delenv("WHOISACTIVE_SLEEP_AFTER_LAST", raising=False)
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"sleep_after_last": "false"}))
    assert load_config(str(path)).sleep_after_last is False

    path.write_text(json.dumps({"sleep_after_last": "yes"}))
    assert load_config(str(path)).sleep_after_last is True


def test_missing_file_uses_defaults(tmp_path):
    config = load_config(str(tmp_path / "nope.json"))
    assert config.iterations == DEFAULT_ITERATIONS
