"""
Unit tests for configuration loading.
"""
import pytest

from iomt_dongle.config import (
    ConfigurationLoader,
    DongleOptions,
    option_float,
    option_int,
    parse_properties,
)
from iomt_dongle.errors import ConfigurationInvalidError, ConfigurationMissingError


class TestParseProperties:
    """Test cases for the key=value parser."""

    def test_basic_pairs(self):
        values = parse_properties("device_port=/dev/ttyUSB0\nqos = 1\n")
        assert values == {"device_port": "/dev/ttyUSB0", "qos": "1"}

    def test_comments_and_blank_lines(self):
        text = "# comment\n! also a comment\n\ndevice_port=COM3\n"
        assert parse_properties(text) == {"device_port": "COM3"}

    def test_value_keeps_later_separators(self):
        values = parse_properties("broker=ssl://host:8883\n")
        assert values["broker"] == "ssl://host:8883"

    def test_colon_separator(self):
        assert parse_properties("device_type: Masimo Rad-8") == {"device_type": "Masimo Rad-8"}

    def test_line_continuation(self):
        text = "brokers=tcp://a:1883,\\\n    tcp://b:1883\n"
        assert parse_properties(text) == {"brokers": "tcp://a:1883,tcp://b:1883"}

    def test_key_without_value(self):
        assert parse_properties("password") == {"password": ""}

    def test_whitespace_separator(self):
        assert parse_properties("device_port /dev/ttyUSB0\n") == {"device_port": "/dev/ttyUSB0"}

    def test_whitespace_around_separator(self):
        assert parse_properties("qos \t= 1\ndevice_type :Rad-8\n") == {"qos": "1", "device_type": "Rad-8"}

    def test_escaped_separators_in_value(self):
        values = parse_properties("broker=ssl\\://host\\:8883\n")
        assert values["broker"] == "ssl://host:8883"

    def test_escaped_separators_in_key(self):
        assert parse_properties("a\\=b\\:c\\ d=1") == {"a=b:c d": "1"}

    def test_escaped_backslash(self):
        values = parse_properties("ca_cert_file=C:\\\\certs\\\\ca.pem\n")
        assert values["ca_cert_file"] == "C:\\certs\\ca.pem"

    def test_escaped_backslash_does_not_continue_line(self):
        text = "ca_dir=C:\\\\certs\\\\\ndevice_port=COM3\n"
        assert parse_properties(text) == {"ca_dir": "C:\\certs\\", "device_port": "COM3"}

    def test_unicode_escape(self):
        assert parse_properties("device_type=SpO\\u2082 monitor") == {"device_type": "SpO\u2082 monitor"}

    def test_control_escapes(self):
        assert parse_properties("banner=a\\tb\\nc") == {"banner": "a\tb\nc"}

    def test_malformed_unicode_escape(self):
        with pytest.raises(ConfigurationInvalidError):
            parse_properties("device_type=\\u12G4")

    def test_comment_marker_inside_continuation_is_content(self):
        text = "brokers=tcp://a:1883,\\\n  #tcp://b:1883\n"
        assert parse_properties(text) == {"brokers": "tcp://a:1883,#tcp://b:1883"}

    def test_indented_comment(self):
        assert parse_properties("   # device_port=COM1\ndevice_port=COM3") == {"device_port": "COM3"}

    def test_crlf_line_endings(self):
        assert parse_properties("device_port=COM3\r\nqos=0\r\n") == {"device_port": "COM3", "qos": "0"}


class TestConfigurationLoader:
    """Test cases for ConfigurationLoader."""

    def test_returns_exactly_the_file_keys(self, tmp_path, write_config):
        """Loaded options contain the keys of the file and nothing else."""
        write_config(
            "device_port=/dev/ttyUSB0\n"
            "broker=ssl://host:8883\n"
            "qos=1\n"
            "ca_cert_file=/etc/ca.crt\n"
        )
        options = ConfigurationLoader(search_dir=tmp_path).load()

        assert isinstance(options, DongleOptions)
        assert set(options) == {"device_port", "broker", "qos", "ca_cert_file"}
        assert options.device_port == "/dev/ttyUSB0"
        assert options["ca_cert_file"] == "/etc/ca.crt"

    def test_values_are_not_coerced(self, tmp_path, write_config):
        write_config("device_port=/dev/ttyS0\nqos=not-a-number\nretry_interval=abc\n")
        options = ConfigurationLoader(search_dir=tmp_path).load()
        assert options["qos"] == "not-a-number"
        assert options["retry_interval"] == "abc"

    def test_missing_device_port_is_invalid(self, tmp_path, write_config):
        write_config("broker=tcp://localhost:1883\n")
        with pytest.raises(ConfigurationInvalidError):
            ConfigurationLoader(search_dir=tmp_path).load()

    def test_blank_device_port_is_invalid(self, tmp_path, write_config):
        write_config("device_port=\n")
        with pytest.raises(ConfigurationInvalidError):
            ConfigurationLoader(search_dir=tmp_path).load()

    def test_working_directory_wins_over_bundled_default(self, tmp_path, write_config):
        path = write_config("device_port=/dev/custom\n")
        loader = ConfigurationLoader(search_dir=tmp_path)
        assert loader.locate() == path
        assert loader.load().device_port == "/dev/custom"

    def test_falls_back_to_bundled_default(self, tmp_path):
        options = ConfigurationLoader(search_dir=tmp_path).load()
        assert options.device_port == "/dev/ttyUSB0"
        assert options["device_type"] == "Masimo Rad-8"
        assert options.source == "default dongle.properties"

    def test_missing_everywhere(self, tmp_path):
        loader = ConfigurationLoader(filename="absent.properties", search_dir=tmp_path)
        with pytest.raises(ConfigurationMissingError):
            loader.load()

    def test_missing_explicit_path(self, tmp_path):
        loader = ConfigurationLoader(explicit_path=tmp_path / "nope.properties")
        with pytest.raises(ConfigurationMissingError):
            loader.locate()

    def test_explicit_path(self, write_config):
        path = write_config("device_port=/dev/ttyACM0\n", name="bedside-3.properties")
        options = ConfigurationLoader(explicit_path=path).load()
        assert options.device_port == "/dev/ttyACM0"

    def test_yaml_configuration(self, write_config):
        path = write_config(
            "device_port: /dev/ttyUSB1\nqos: 2\nconnection_timeout: 7.5\nusername:\n",
            name="dongle.yaml",
        )
        options = ConfigurationLoader(explicit_path=path).load()
        assert dict(options) == {
            "device_port": "/dev/ttyUSB1",
            "qos": "2",
            "connection_timeout": "7.5",
            "username": "",
        }

    def test_nested_yaml_is_invalid(self, write_config):
        path = write_config("device_port: /dev/ttyUSB1\nbrokers:\n  - tcp://a\n", name="dongle.yml")
        with pytest.raises(ConfigurationInvalidError):
            ConfigurationLoader(explicit_path=path).load()


class TestDongleOptions:
    """Test cases for the immutable option map."""

    def test_is_read_only(self):
        options = DongleOptions({"device_port": "/dev/ttyUSB0"})
        with pytest.raises(TypeError):
            options["device_port"] = "/dev/other"

    def test_copy_is_detached_from_source(self):
        source = {"device_port": "/dev/ttyUSB0"}
        options = DongleOptions(source)
        source["device_port"] = "/dev/changed"
        assert options.device_port == "/dev/ttyUSB0"

    def test_numeric_helpers(self):
        options = DongleOptions({"qos": "2", "connection_timeout": "1.5", "blank": " "})
        assert option_int(options, "qos", 1) == 2
        assert option_float(options, "connection_timeout", 30.0) == 1.5
        assert option_int(options, "blank", 7) == 7
        assert option_float(options, "missing", 3.0) == 3.0

    def test_bad_number(self):
        with pytest.raises(ConfigurationInvalidError):
            option_int({"qos": "high"}, "qos", 1)
