#!/usr/bin/env python3
"""Test suite for state.py - persisted per-device state."""

import json

import state
from color_model import DesiredState
from state import DeviceStateStore


class TestStateModule:
    """Test cases for the state module."""

    def test_init_without_file_starts_fresh(self, tmp_path):
        state.init(str(tmp_path / "missing.json"))

        assert state.get_device_ids() == []
        assert state.get_device("abc") == {"On": False, "Brightness": 100, "ColorTemperature": 300}

    def test_init_loads_existing_file(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text(json.dumps({"devices": {"abc": {"On": True, "Brightness": 10}}}), encoding="utf-8")

        state.init(str(path))

        assert state.get_device_ids() == ["abc"]
        # Missing keys fall back to defaults
        assert state.get_device("abc") == {"On": True, "Brightness": 10, "ColorTemperature": 300}

    def test_init_with_corrupt_file_starts_fresh(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text("{not json", encoding="utf-8")

        state.init(str(path))

        assert state.get_device_ids() == []

    def test_init_with_wrong_shape_starts_fresh(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text(json.dumps({"areas": {}}), encoding="utf-8")

        state.init(str(path))

        assert state.get_device_ids() == []

    def test_update_device_writes_file(self, state_file):
        state.update_device("abc", {"Brightness": 42})

        payload = json.loads(state_file.read_text(encoding="utf-8"))
        assert payload == {"devices": {"abc": {"On": False, "Brightness": 42, "ColorTemperature": 300}}}
        assert state.has_device("abc") is True

    def test_remove_device(self, state_file):
        state.update_device("abc", {"On": True})
        state.remove_device("abc")
        state.remove_device("abc")

        payload = json.loads(state_file.read_text(encoding="utf-8"))
        assert payload == {"devices": {}}
        assert state.has_device("abc") is False

    def test_no_temp_files_left_behind(self, state_file):
        state.update_device("abc", {"On": True})
        state.update_device("abc", {"On": False})

        assert [p.name for p in state_file.parent.iterdir()] == [state_file.name]

    def test_invalid_stored_values_fall_back_to_defaults(self, state_file):
        state.update_device("abc", {"Brightness": "bright"})

        assert state.load_desired_state("abc") == DesiredState()

    def test_out_of_range_stored_values_fall_back_per_field(self, state_file):
        state.update_device("abc", {"On": True, "Brightness": 250, "ColorTemperature": 0})

        assert state.load_desired_state("abc") == DesiredState(on=True, brightness=100, color_temperature=300)

        state.update_device("abc", {"Brightness": 40, "ColorTemperature": 501})

        assert state.load_desired_state("abc") == DesiredState(on=True, brightness=40, color_temperature=300)

    def test_non_boolean_stored_on_falls_back_to_off(self, state_file):
        state.update_device("abc", {"On": "yes", "Brightness": True, "ColorTemperature": 140})

        assert state.load_desired_state("abc") == DesiredState(on=False, brightness=100, color_temperature=140)


class TestDeviceStateStore:
    """Test cases for the per-device store."""

    def test_round_trip(self, state_file):
        store = DeviceStateStore("abc")
        assert store.exists() is False

        store.save(DesiredState(on=True, brightness=5, color_temperature=140))

        assert store.exists() is True
        assert store.load() == DesiredState(on=True, brightness=5, color_temperature=140)

    def test_forget(self, state_file):
        store = DeviceStateStore("abc")
        store.save(DesiredState(on=True))

        store.forget()

        assert store.exists() is False
        assert store.load() == DesiredState()
