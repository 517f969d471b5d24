"""Tests for the local image store."""

import pytest
import yaml

from stagecraft.exceptions import ImageResolveError
from stagecraft.run.hash import EMPTY_TREE_DIGEST
from stagecraft.run.images import ImageStore, parse_image_ref

DIGEST = "sha256:" + "0" * 64


@pytest.mark.parametrize("ref, expected", [
    ("debian", ("debian", None)),
    (f"debian@{DIGEST}", ("debian", DIGEST)),
])
def test_parse_image_ref(ref, expected):
    assert parse_image_ref(ref) == expected


@pytest.mark.parametrize("ref", ["debian@sha256:abc", "@" + DIGEST, "debian@md5:" + "0" * 32])
def test_parse_image_ref_malformed(ref):
    with pytest.raises(ImageResolveError, match="malformed reference"):
        parse_image_ref(ref)


def test_resolve_scratch(image_store):
    image = image_store.resolve("scratch")
    assert image.is_scratch
    assert image.digest == EMPTY_TREE_DIGEST


def test_store_and_resolve(image_store, make_image):
    ref = make_image("base", {"etc/os-release": "ID=base\n"})
    name, digest = parse_image_ref(ref)

    image = image_store.resolve(ref)
    assert image.name == "base"
    assert image.digest == digest
    assert (image.rootfs / "etc" / "os-release").read_text() == "ID=base\n"

    assert image_store.resolve("base").digest == digest


def test_resolve_unknown_image(image_store):
    with pytest.raises(ImageResolveError, match="no image 'ghost'") as exc_info:
        image_store.resolve(f"ghost@{DIGEST}")
    assert exc_info.value.exit_code == 3


def test_resolve_digest_mismatch(image_store, make_image):
    make_image("base", {"etc/os-release": "ID=base\n"})
    with pytest.raises(ImageResolveError, match="digest mismatch"):
        image_store.resolve(f"base@{DIGEST}")


def test_tampered_rootfs_fails_pinned_resolve(image_store, make_image):
    ref = make_image("base", {"etc/os-release": "ID=base\n"})
    (image_store.image_dir("base") / "rootfs" / "etc" / "os-release").write_text("ID=evil\n")

    with pytest.raises(ImageResolveError, match="digest mismatch"):
        image_store.resolve(ref)


def test_store_replaces_previous_image(image_store, make_image):
    first = make_image("app", {"version": "1"})
    second = make_image("app", {"version": "2"})

    assert first != second
    assert image_store.resolve(second).rootfs.joinpath("version").read_text() == "2"
    with pytest.raises(ImageResolveError):
        image_store.resolve(first)


def test_store_writes_metadata(image_store, tmp_path, write_tree):
    src = tmp_path / "tree"
    write_tree(src, {"a": "1"})
    ref = image_store.store_image("app", src, created_from="build.yaml", metadata={"stages": {"final": "sha256:x"}})

    with open(image_store.image_dir("app") / "image.yaml") as f:
        meta = yaml.safe_load(f)
    assert meta == {
        "name": "app",
        "digest": ref.digest,
        "size": 1,
        "created_from": "build.yaml",
        "stages": {"final": "sha256:x"},
    }


def test_list(image_store, make_image):
    assert image_store.list() == []
    make_image("zeta", {"z": "1"})
    make_image("alpha", {"a": "1"})
    (image_store.root / ".alpha.tmp").mkdir()

    assert [m["name"] for m in image_store.list()] == ["alpha", "zeta"]
