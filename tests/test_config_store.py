# tests/test_config_store.py
"""Unit tests for the persisted configuration file."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import json

import pytest

from bridge.exceptions import UnknownDeviceError
from bridge.schemas.bridge_config import BridgeConfig, DeviceConfig, EngineConfig, safe_name
from bridge.services.config_store import ConfigStore, devices_dir_for


def _store(tmp_path, text=None) -> ConfigStore:
    path = tmp_path / "config.json"
    if text is not None:
        path.write_text(text, encoding="utf-8")
    return ConfigStore(str(path))


DEVICE = {"label": "Front", "device_id": "dev-1", "device_key": "k1", "host": "10.0.0.5", "password": "pw"}


class TestLoad:

    def test_missing_file_gives_defaults(self, tmp_path):
        cfg = _store(tmp_path).load()
        assert cfg.devices == []
        assert cfg.start_mode == "now"
        assert cfg.bridge_id

    def test_comments_bom_and_trailing_commas(self, tmp_path):
        text = (
            "\ufeff{\n"
            "  // where events go\n"
            '  "ingest_url": "https://ingest.example.com/", /* keep the slash */\n'
            '  "devices": [{"device_id": "dev-1", "host": "10.0.0.5",},],\n'
            "}\n"
        )
        cfg = _store(tmp_path, text).load()
        assert cfg.ingest_url == "https://ingest.example.com/"
        assert cfg.devices[0].host == "10.0.0.5"

    def test_legacy_single_device_layout(self, tmp_path):
        legacy = {
            "SUPABASE_URL": "https://ingest.example.com",
            "SUPABASE_ANON_KEY": "anon",
            "DEVICE_UUID": "dev-9",
            "DEVICE_KEY": "k9",
            "HIK_IP": "10.0.0.9",
            "HIK_PASS": "pw",
            "FLUSH_INTERVAL_MS": 2500,
            "JOB_POLL_MS": 500,
            "START_MODE": "ALL",
        }
        cfg = _store(tmp_path, json.dumps(legacy)).load()
        assert cfg.ingest_url == "https://ingest.example.com"
        assert cfg.flush_interval_seconds == 2.5
        assert cfg.job_poll_interval_seconds == 1.5
        assert cfg.start_mode == "all"
        assert len(cfg.devices) == 1
        device = cfg.devices[0]
        assert (device.device_id, device.device_key, device.host, device.username) == ("dev-9", "k9", "10.0.0.9", "admin")
        assert device.is_ready

    def test_legacy_device_list_keys(self, tmp_path):
        text = json.dumps({"DEVICES": [{"LABEL": "Gate", "DEVICE_UUID": "dev-2", "HIK_IP": "10.0.0.2"}]})
        device = _store(tmp_path, text).load().devices[0]
        assert device.label == "Gate"
        assert device.missing_fields() == ["device_key"]

    def test_broken_file_is_backed_up(self, tmp_path):
        store = _store(tmp_path, '{"devices": [')
        cfg = store.load()
        assert cfg.devices == []
        backups = [p for p in os.listdir(tmp_path) if p.startswith("config.broken.")]
        assert len(backups) == 1
        assert (tmp_path / backups[0]).read_text() == '{"devices": ['

    def test_unchanged_broken_file_is_backed_up_once(self, tmp_path, monkeypatch):
        store = _store(tmp_path, '{"devices": [')
        copies = []
        real_backup = store._backup_broken

        def counting_backup():
            copies.append(1)
            return real_backup()
        monkeypatch.setattr(store, "_backup_broken", counting_backup)
        for _ in range(5):
            assert store.load().devices == []
        assert len(copies) == 1
        assert len([p for p in os.listdir(tmp_path) if p.startswith("config.broken.")]) == 1

    def test_invalid_values_are_treated_as_broken(self, tmp_path):
        cfg = _store(tmp_path, json.dumps({"upload_concurrency": 0})).load()
        assert cfg.upload_concurrency == 3


class TestSave:

    def test_ensure_creates_file(self, tmp_path):
        store = _store(tmp_path)
        store.ensure()
        assert store.exists()
        assert json.loads((tmp_path / "config.json").read_text())["devices"] == []
        assert not (tmp_path / "config.json.tmp").exists()

    def test_ensure_rewrites_legacy_layout(self, tmp_path):
        store = _store(tmp_path, json.dumps({"DEVICE_UUID": "dev-9", "HIK_IP": "10.0.0.9"}))
        store.ensure()
        on_disk = json.loads((tmp_path / "config.json").read_text())
        assert "DEVICE_UUID" not in on_disk
        assert on_disk["devices"][0]["device_id"] == "dev-9"


class TestDeviceEntries:

    def test_update_device(self, tmp_path):
        store = _store(tmp_path, json.dumps({"devices": [DEVICE]}))
        updated = store.update_device("dev-1", model="DS-K1T671M", serial="SN1")
        assert updated.model == "DS-K1T671M"
        assert store.get_device("dev-1").serial == "SN1"
        assert store.get_device("dev-1").password == "pw"

    def test_unknown_device(self, tmp_path):
        store = _store(tmp_path, json.dumps({"devices": [DEVICE]}))
        with pytest.raises(UnknownDeviceError):
            store.update_device("nope", model="x")
        with pytest.raises(UnknownDeviceError):
            store.get_device("nope")

    def test_put_replaces_by_index_or_appends(self, tmp_path):
        store = _store(tmp_path, json.dumps({"devices": [DEVICE]}))
        store.put_device(DeviceConfig(device_id="dev-1", host="10.0.0.6"), index=0)
        store.put_device(DeviceConfig(device_id="dev-2", host="10.0.0.7"), index=9)
        assert [(d.device_id, d.host) for d in store.load().devices] == [("dev-1", "10.0.0.6"), ("dev-2", "10.0.0.7")]

    def test_remove_device(self, tmp_path):
        store = _store(tmp_path, json.dumps({"devices": [DEVICE]}))
        assert store.remove_device("dev-1") is True
        assert store.remove_device("dev-1") is False
        assert store.load().devices == []


class TestEngineConfig:

    def test_paths_live_under_devices_dir(self, tmp_path):
        store = _store(tmp_path, json.dumps({"devices": [{**DEVICE, "device_id": "dev/1"}]}))
        cfg = store.load()
        engine_cfg = EngineConfig.build(cfg, cfg.devices[0], store.devices_dir)
        assert store.devices_dir == devices_dir_for(str(tmp_path / "config.json"))
        assert engine_cfg.device_dir == os.path.join(str(tmp_path), "devices", "dev_1")
        assert engine_cfg.queue_dir.endswith(os.path.join("dev_1", "queue"))
        assert engine_cfg.cutoff_path.endswith("cutoff.json")

    def test_safe_name(self):
        assert safe_name("a b/c:d") == "a_b_c_d"
        assert len(safe_name("x" * 300)) == 120

    def test_poll_interval_has_a_floor(self):
        assert BridgeConfig(job_poll_interval_seconds=0.2).job_poll_interval_seconds == 1.5
