"""Tests for stagecraft.config module."""

from pathlib import Path

import pytest

from stagecraft.config import BuildConfig
from stagecraft.exceptions import ManifestError


def test_defaults():
    config = BuildConfig()
    assert config.images_dir == Path("images")
    assert config.use_cache
    assert config.fetch_retries == 3
    assert config.repositories == []


def test_load_file_rebases_relative_paths(tmp_path):
    path = tmp_path / "stagecraft.yaml"
    path.write_text(
        "images_dir: store\n"
        "output_dir: /abs/out\n"
        "repositories: [repo/index.yaml]\n"
        "fetch_retries: 5\n"
        "allow_unpinned: true\n"
    )

    config = BuildConfig.load(path, environ={})
    assert config.images_dir == tmp_path / "store"
    assert config.output_dir == Path("/abs/out")
    assert config.repositories == [tmp_path / "repo" / "index.yaml"]
    assert config.fetch_retries == 5
    assert config.allow_unpinned


def test_missing_file_uses_defaults(tmp_path):
    config = BuildConfig.load(tmp_path / "stagecraft.yaml", environ={})
    assert config == BuildConfig()


def test_environment_overrides_file(tmp_path):
    path = tmp_path / "stagecraft.yaml"
    path.write_text("fetch_timeout: 10\nuse_cache: true\n")

    config = BuildConfig.load(path, environ={
        "STAGECRAFT_FETCH_TIMEOUT": "2.5",
        "STAGECRAFT_USE_CACHE": "no",
        "STAGECRAFT_REPOSITORIES": "/a.yaml:/b.yaml",
        "STAGECRAFT_UNRELATED_THING": "x",
        "HOME": "/root",
    })
    assert config.fetch_timeout == 2.5
    assert not config.use_cache
    assert config.repositories == [Path("/a.yaml"), Path("/b.yaml")]


def test_update_ignores_none():
    config = BuildConfig().update(output_dir=None, max_workers="4", register=True)
    assert config.output_dir == Path("out")
    assert config.max_workers == 4
    assert config.register


def test_update_unknown_option():
    with pytest.raises(ManifestError, match="unknown config option 'colour'"):
        BuildConfig().update(colour="blue")


def test_invalid_value(tmp_path):
    path = tmp_path / "stagecraft.yaml"
    path.write_text("fetch_retries: lots\n")
    with pytest.raises(ManifestError, match="invalid value for 'fetch_retries'"):
        BuildConfig.load(path, environ={})


def test_config_must_be_mapping(tmp_path):
    path = tmp_path / "stagecraft.yaml"
    path.write_text("- a\n- b\n")
    with pytest.raises(ManifestError, match="must be a mapping"):
        BuildConfig.load(path, environ={})
