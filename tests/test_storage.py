import json
from datetime import datetime, timezone

from storage.config import DeviceConfig, load_config, record_drain, resolve_server_url, save_config
from storage.device import get_device_id


def test_config_roundtrip_and_drain_stamp(tmp_path):
    path = tmp_path / "storage" / "config.json"
    assert load_config(path) == DeviceConfig()

    save_config(DeviceConfig(server_url="https://jobs.example.test/"), path)
    when = datetime(2024, 5, 2, 10, 0, tzinfo=timezone.utc)
    cfg = record_drain(path, when)

    assert cfg.server_url == "https://jobs.example.test"
    assert json.loads(path.read_text(encoding="utf-8")) == {
        "last_drain_at": "2024-05-02T10:00:00.000Z",
        "server_url": "https://jobs.example.test",
    }
    assert load_config(path).last_drain_at == when
    assert [p.name for p in path.parent.iterdir()] == ["config.json"]


def test_server_url_falls_back_to_default(tmp_path):
    path = tmp_path / "config.json"
    assert resolve_server_url("http://localhost:3000", path) == "http://localhost:3000"
    path.write_text(json.dumps({"server_url": "  "}), encoding="utf-8")
    assert resolve_server_url("http://localhost:3000", path) == "http://localhost:3000"
    save_config(DeviceConfig(server_url="https://jobs.example.test"), path)
    assert resolve_server_url("http://localhost:3000", path) == "https://jobs.example.test"


def test_broken_config_falls_back_to_defaults(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("{oops", encoding="utf-8")
    assert load_config(path) == DeviceConfig()
    path.write_text("[1, 2]", encoding="utf-8")
    assert load_config(path) == DeviceConfig()
    path.write_text(json.dumps({"last_drain_at": "yesterday"}), encoding="utf-8")
    assert load_config(path).last_drain_at is None


def test_device_id_is_stable(tmp_path):
    path = tmp_path / "device_id.txt"
    first = get_device_id(path)
    assert first == get_device_id(path)
    assert path.read_text(encoding="utf-8") == first
