"""Tests for compose file parsing."""

import pytest

from previewdock.compose import find_compose_file, load_compose, parse_port, project_name
from previewdock.errors import ConfigurationError
from previewdock.tunnel.client import ServicePort


@pytest.mark.parametrize(
    "entry,expected",
    [
        (3000, [(3000, None)]),
        ("3000", [(3000, None)]),
        ("8080:80", [(80, 8080)]),
        ("127.0.0.1:8080:80", [(80, 8080)]),
        ("127.0.0.1::80", [(80, None)]),
        ("8080:80/tcp", [(80, 8080)]),
        ("53:53/udp", []),
        ("3000-3001:4000-4001", [(4000, 3000), (4001, 3001)]),
        ("9000:4000-4001", [(4000, None), (4001, None)]),
        ({"target": 80, "published": "8080"}, [(80, 8080)]),
        ({"target": 80}, [(80, None)]),
        ({"target": 53, "protocol": "udp"}, []),
    ],
)
def test_parse_port(entry, expected):
    assert parse_port(entry) == expected


def test_parse_port_range_mismatch():
    with pytest.raises(ConfigurationError):
        parse_port("3000-3002:4000-4001")


def test_load_compose(compose_file):
    project = load_compose(compose_file)
    assert project.name == "proj"
    assert project.services == [ServicePort("web", 80, 8080), ServicePort("api", 3000)]
    assert project.services[0].target_port == 8080
    assert project.services[1].target_port == 3000


def test_project_name_falls_back_to_directory(tmp_path, monkeypatch):
    monkeypatch.delenv("COMPOSE_PROJECT_NAME", raising=False)
    directory = tmp_path / "My.Shop"
    directory.mkdir()
    assert project_name({}, str(directory / "compose.yaml")) == "myshop"


def test_project_name_from_environment(monkeypatch):
    monkeypatch.setenv("COMPOSE_PROJECT_NAME", "from-env")
    assert project_name({}, "/x/compose.yaml") == "from-env"


def test_environment_name_beats_top_level_name(monkeypatch, tmp_path):
    path = tmp_path / "compose.yaml"
    path.write_text("name: explicit\nservices:\n  web:\n    image: nginx\n")
    monkeypatch.delenv("COMPOSE_PROJECT_NAME", raising=False)
    assert load_compose(str(path)).name == "explicit"

    monkeypatch.setenv("COMPOSE_PROJECT_NAME", "From-Env")
    assert project_name({"name": "explicit"}, str(path)) == "from-env"
    assert load_compose(str(path)).name == "from-env"


def test_find_compose_file(tmp_path):
    assert find_compose_file(str(tmp_path)) is None
    (tmp_path / "docker-compose.yml").write_text("services: {}\n")
    assert find_compose_file(str(tmp_path)) == str(tmp_path / "docker-compose.yml")
    (tmp_path / "compose.yaml").write_text("services: {}\n")
    assert find_compose_file(str(tmp_path)) == str(tmp_path / "compose.yaml")


def test_missing_compose_file(tmp_path):
    with pytest.raises(ConfigurationError, match="not found"):
        load_compose(str(tmp_path / "compose.yaml"))


def test_invalid_port(tmp_path):
    path = tmp_path / "compose.yaml"
    path.write_text("services:\n  web:\n    ports:\n      - 'http:80'\n")
    with pytest.raises(ConfigurationError, match="Invalid port"):
        load_compose(str(path))


def test_services_without_ports(tmp_path):
    path = tmp_path / "compose.yaml"
    path.write_text("name: quiet\nservices:\n  worker:\n    image: busybox\n")
    assert load_compose(str(path)).services == []
