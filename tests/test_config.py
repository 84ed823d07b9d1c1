import pytest

from loadrunner.config import (
    ConfigError,
    RunConfig,
    apply_overrides,
    build_config,
    load_config,
    parse_duration,
)

GATEWAY_YAML = """
vus: 50
iterations: 50
connection_reuse: false
base_url: http://localhost:8080
headers:
  Authorization: ${TOKEN}
scenario:
  - name: gateway
    url: /api/v9/gateway
  - name: guild
    method: get
    url: /api/v9/guilds/203039963636301824
    headers:
      X-Trace: run-${RUN_ID:-local}
  - name: guild-channels
    url: /api/v9/guilds/203039963636301824/channels
    expect_status: [200, 204]
"""


def _minimal(**extra):
    data = {"vus": 1, "iterations": 1, "scenario": [{"url": "http://h/"}]}
    data.update(extra)
    return data


def test_load_config_from_yaml(tmp_path):
    path = tmp_path / "gateway.yaml"
    path.write_text(GATEWAY_YAML, encoding="utf-8")

    config = load_config(path, env={"TOKEN": "Bot secret"})

    assert config.virtual_user_count == 50
    assert config.total_iterations == 50
    assert config.duration_s is None
    assert config.connection_reuse is False
    assert [step.name for step in config.scenario] == ["gateway", "guild", "guild-channels"]
    gateway, guild, channels = config.scenario
    assert gateway.method == "GET"
    assert gateway.url == "http://localhost:8080/api/v9/gateway"
    assert gateway.headers == {"Authorization": "Bot secret"}
    assert guild.method == "GET"
    assert guild.headers == {"Authorization": "Bot secret", "X-Trace": "run-local"}
    assert channels.expect_status == (200, 204)


def test_load_config_accepts_json(tmp_path):
    path = tmp_path / "run.json"
    path.write_text('{"vus": 2, "duration": "1m", "scenario": [{"url": "http://h/"}]}', encoding="utf-8")
    config = load_config(path, env={})
    assert config.virtual_user_count == 2
    assert config.duration_s == 60.0
    assert config.total_iterations is None


def test_unset_environment_variable_is_config_error(tmp_path):
    path = tmp_path / "gateway.yaml"
    path.write_text(GATEWAY_YAML, encoding="utf-8")
    with pytest.raises(ConfigError, match="TOKEN"):
        load_config(path, env={})


def test_missing_file_and_bad_yaml(tmp_path):
    with pytest.raises(ConfigError, match="cannot read"):
        load_config(tmp_path / "missing.yaml", env={})
    bad = tmp_path / "bad.yaml"
    bad.write_text("vus: [1, 2\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="invalid YAML"):
        load_config(bad, env={})


@pytest.mark.parametrize(
    "data, message",
    [
        ([1, 2], "mapping"),
        (_minimal(vus=0), "vus"),
        (_minimal(vus="ten"), "vus"),
        (_minimal(iterations=0), "iterations"),
        ({"vus": 1, "scenario": [{"url": "http://h/"}]}, "either iterations or duration"),
        (_minimal(scenario=[]), "at least one step"),
        (_minimal(scenario=[{"method": "GET"}]), "url is required"),
        (_minimal(scenario=[{"url": "http://h/", "method": "FETCH"}]), "not a supported HTTP method"),
        (_minimal(scenario=[{"url": "http://h/", "retries": 2}]), "unknown keys"),
        (_minimal(threads=4), "unknown config keys"),
        (_minimal(on_network_error="ignore"), "on_network_error"),
        (_minimal(max_fail_rate=1.5), "max_fail_rate"),
        (_minimal(check={"status_min": 400, "status_max": 200}), "status_min"),
        (_minimal(connection_reuse="no"), "connection_reuse"),
        (_minimal(headers=["Authorization"]), "headers must be a mapping"),
        (_minimal(scenario=[{"url": "/api/v9/gateway"}]), r"not an absolute http\(s\) URL"),
        (_minimal(scenario=[{"url": "ftp://h/file"}]), r"not an absolute http\(s\) URL"),
        (_minimal(base_url="localhost:8080", scenario=[{"url": "/x"}]), r"not an absolute http\(s\) URL"),
        (_minimal(headers={"Authorization": None}), "headers.Authorization has no value"),
        (_minimal(headers={"X-Note": "caf\u00e9 \u20ac"}), "cannot be sent in a header"),
    ],
)
def test_malformed_configs_raise_config_error(data, message):
    with pytest.raises(ConfigError, match=message):
        build_config(data, env={})


def test_custom_check_bounds():
    config = build_config(_minimal(check={"status_min": 200, "status_max": 300}), env={})
    assert config.check(204)
    assert not config.check(302)


@pytest.mark.parametrize(
    "value, expected",
    [(30, 30.0), (1.5, 1.5), ("500ms", 0.5), ("30s", 30.0), ("2m", 120.0), ("1h", 3600.0), ("45", 45.0)],
)
def test_parse_duration(value, expected):
    assert parse_duration(value) == pytest.approx(expected)


@pytest.mark.parametrize("value", ["", "ten seconds", "5d", 0, -1, True, None])
def test_parse_duration_rejects_garbage(value):
    with pytest.raises(ConfigError):
        parse_duration(value)


def test_apply_overrides_replaces_fields():
    config = build_config(_minimal(), env={})
    updated = apply_overrides(config, vus=8, iterations=100, duration="10s", max_fail_rate=0.05)
    assert updated.virtual_user_count == 8
    assert updated.total_iterations == 100
    assert updated.duration_s == 10.0
    assert updated.max_fail_rate == 0.05
    assert config.virtual_user_count == 1
    assert apply_overrides(config) is config


def test_apply_overrides_validates():
    config = build_config(_minimal(), env={})
    with pytest.raises(ConfigError):
        apply_overrides(config, vus=0)


def test_run_config_validates_on_construction():
    with pytest.raises(ConfigError):
        RunConfig(virtual_user_count=1, total_iterations=1, scenario=())


def test_non_latin1_header_from_environment_is_rejected():
    data = _minimal(headers={"Authorization": "${TOKEN}"})
    with pytest.raises(ConfigError, match="headers.Authorization"):
        build_config(data, env={"TOKEN": "Bot €"})


def test_latin1_header_values_are_accepted():
    config = build_config(_minimal(headers={"X-Note": "café"}), env={})
    assert config.scenario[0].headers == {"X-Note": "café"}


def test_empty_header_in_yaml_is_rejected(tmp_path):
    path = tmp_path / "run.yaml"
    path.write_text(
        "iterations: 1\nheaders:\n  Authorization:\nscenario:\n  - url: http://h/\n",
        encoding="utf-8",
    )
    with pytest.raises(ConfigError, match="has no value"):
        load_config(path, env={})


def test_relative_url_resolves_against_base_url():
    config = build_config(_minimal(base_url="https://api.example", scenario=[{"url": "/v9/gateway"}]), env={})
    assert config.scenario[0].url == "https://api.example/v9/gateway"
