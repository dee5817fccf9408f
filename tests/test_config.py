import pytest

from opsmonitor.config import AppConfig, load_config, parse_config

YAML_TEXT = """
Server:
  mode: release
  port: 9001
  enablePprof: true
  AlarmConfig:
    groupWait: 10
    groupInterval: 120
    recoverWait: 1
MySQL:
  host: localhost
  port: 3306
  user: user
  pass: password
  dbName: watchalert
Redis:
  host: localhost
  port: 6379
  pass: password
Jwt:
  expire: 3600
Jaeger:
  url: http://localhost:16686
"""


def test_load_config_reads_all_sections(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(YAML_TEXT)
    cfg = load_config(path)
    assert cfg.server.mode == "release"
    assert cfg.server.port == "9001"
    assert cfg.server.enable_pprof is True
    assert cfg.server.alarm_config.group_wait == 10
    assert cfg.server.alarm_config.group_interval == 120
    assert cfg.mysql.password == "password"
    assert cfg.mysql.db_name == "watchalert"
    assert cfg.redis.port == "6379"
    assert cfg.jwt.expire == 3600
    assert cfg.jaeger.url == "http://localhost:16686"


def test_keys_are_case_insensitive():
    cfg = parse_config({"server": {"PORT": "80", "alarmconfig": {"GROUPWAIT": 3}}})
    assert cfg.server.port == "80"
    assert cfg.server.alarm_config.group_wait == 3


def test_empty_mapping_gives_defaults():
    assert parse_config({}) == AppConfig()


def test_missing_file_raises(tmp_path):
    with pytest.raises(ValueError):
        load_config(tmp_path / "absent.yaml")


def test_bad_integer_raises():
    with pytest.raises(ValueError):
        parse_config({"Jwt": {"expire": "soon"}})