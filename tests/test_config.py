"""Tests for firestarter/config.py: YAML loading and duration parsing."""

from __future__ import annotations

import textwrap

import pytest

from firestarter.config import (
    METHOD_RTNICPG,
    TestSpec,
    load_config,
    parse_config,
    parse_duration,
)
from firestarter.errors import ConfigError


SAMPLE = textwrap.dedent("""\
    system:
      product: "SP2C621D32TM3"
      manufacturer: "ACME"
      require_root: true
      guid_prefix: "12345678-9abc-def0-1234-56789abcdef0"
      efi_sn_name: "SerialNumber"
      efi_mac_name: "HexMac"
      driver_dir: "/opt/drivers"
    tests:
      timeout: "5m"
      parallel_groups:
        -
          - name: "CPU Test"
            command: "cpu_test"
            args: ["-vis", "-c", "cpu.json"]
            type: "standard"
            timeout: "10s"
            collapse: true
            required: true
          - name: "Fan Test"
            command: "fan_test"
      sequential_groups:
        - # nothing here yet
    flash:
      enabled: true
      operations: ["mac", "efi", "fru"]
      fields:
        - name: "System serial"
          flash: true
          id: "system-serial-number"
          regex: "^INF0[0-9]A9[0-9]{8}$"
      method: "rtnicpg"
      ven_device: ["8086-1521"]
    log:
      save_local: true
      op_name: "bench-1"
""")


class TestParseDuration:
    @pytest.mark.parametrize("text,seconds", [
        ("5m", 300.0),
        ("10s", 10.0),
        ("1m30s", 90.0),
        ("250ms", 0.25),
        ("1h", 3600.0),
        (45, 45.0),
        ("12", 12.0),
    ])
    def test_valid(self, text, seconds):
        assert parse_duration(text) == pytest.approx(seconds)

    def test_unset(self):
        assert parse_duration(None) is None
        assert parse_duration("") is None

    @pytest.mark.parametrize("text", ["5 minutes", "m5", "10s junk", True])
    def test_invalid(self, text):
        with pytest.raises(ConfigError):
            parse_duration(text)


class TestLoadConfig:
    def test_full_document(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(SAMPLE)
        cfg = load_config(path)

        assert cfg.path == str(path)
        assert cfg.system.product == "SP2C621D32TM3"
        assert cfg.system.require_root is True
        assert cfg.tests.timeout == 300.0
        assert len(cfg.tests.parallel_groups) == 1
        cpu, fan = cfg.tests.parallel_groups[0]
        assert cpu == TestSpec("CPU Test", "cpu_test", ("-vis", "-c", "cpu.json"), 10.0, True, True)
        assert cpu.argv == ["cpu_test", "-vis", "-c", "cpu.json"]
        assert fan.timeout is None
        assert fan.required is False
        assert cfg.tests.sequential_groups == []

        assert cfg.flash.method == METHOD_RTNICPG
        assert cfg.flash.operations == ["mac", "efi", "fru"]
        assert cfg.flash.benign_exit_codes == (2,)
        assert cfg.flash.fields[0].matches("INF01A912345678")
        assert not cfg.flash.fields[0].matches("INF01A412345678")
        assert cfg.log.save_local is True
        assert cfg.log.log_dir == "logs"

    def test_test_spec_is_immutable(self):
        spec = TestSpec("a", "true")
        with pytest.raises(AttributeError):
            spec.name = "b"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="cannot read"):
            load_config(tmp_path / "nope.yaml")

    def test_bad_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("system: [unclosed\n")
        with pytest.raises(ConfigError, match="invalid YAML"):
            load_config(path)


class TestValidation:
    def test_empty_document_gives_defaults(self):
        cfg = parse_config(None)
        assert cfg.flash.enabled is False
        assert cfg.tests.parallel_groups == []

    def test_test_without_command(self):
        with pytest.raises(ConfigError, match="'name' and 'command'"):
            parse_config({"tests": {"parallel_groups": [[{"name": "x"}]]}})

    def test_unknown_method(self):
        with pytest.raises(ConfigError, match="unknown flash method"):
            parse_config({"flash": {"method": "magic"}})

    def test_bad_regex(self):
        with pytest.raises(ConfigError, match="invalid regex"):
            parse_config({"flash": {"fields": [{"id": "x", "regex": "("}]}})

    def test_benign_codes_configurable(self):
        cfg = parse_config({"flash": {"benign_exit_codes": [2, 7]}})
        assert cfg.flash.benign_exit_codes == (2, 7)

    def test_section_must_be_mapping(self):
        with pytest.raises(ConfigError):
            parse_config({"system": ["nope"]})
