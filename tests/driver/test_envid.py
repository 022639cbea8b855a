"""Tests for environment id normalization and derivation."""

from unittest import mock

import pytest

from previewdock.driver.envid import MAX_ENV_ID_LENGTH, ProjectContext, derive_env_id, detect_git_branch, normalize_env_id


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("proj-abc123", "proj-abc123"),
        ("My Project", "my-project"),
        ("feat/login__v2", "feat-login-v2"),
        ("--edge--", "edge"),
        ("42-things", "e-42-things"),
    ],
)
def test_normalize(raw, expected):
    assert normalize_env_id(raw) == expected


def test_normalize_rejects_empty_result():
    with pytest.raises(ValueError):
        normalize_env_id("///")


def test_long_values_stay_bounded_and_distinct():
    a = normalize_env_id("project-" + "a" * 80 + "-one")
    b = normalize_env_id("project-" + "a" * 80 + "-two")
    assert len(a) <= MAX_ENV_ID_LENGTH
    assert len(b) <= MAX_ENV_ID_LENGTH
    assert a != b


def test_derive_is_deterministic():
    context = ProjectContext(project_name="shop", branch="main")
    assert derive_env_id(context) == derive_env_id(context) == "shop-main"


def test_derive_without_branch():
    assert derive_env_id(ProjectContext(project_name="shop")) == "shop"


def test_derive_without_project_yields_nothing():
    assert derive_env_id(ProjectContext(branch="main")) is None


def test_detect_git_branch_outside_repo(tmp_path):
    assert detect_git_branch(str(tmp_path)) is None


def test_detect_git_branch_detached_head():
    result = mock.Mock(returncode=0, stdout="HEAD\n")
    with mock.patch("previewdock.driver.envid.subprocess.run", return_value=result):
        assert detect_git_branch() is None


def test_detect_git_branch_without_git():
    with mock.patch("previewdock.driver.envid.subprocess.run", side_effect=FileNotFoundError):
        assert detect_git_branch() is None


def test_detect_git_branch():
    result = mock.Mock(returncode=0, stdout="feature/x\n")
    with mock.patch("previewdock.driver.envid.subprocess.run", return_value=result):
        assert detect_git_branch() == "feature/x"
