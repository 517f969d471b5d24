"""Tests for package sets, repository indexes, downloads and installs."""

from pathlib import Path

import pytest
import requests
import yaml

from stagecraft.cache import PackageCache
from stagecraft.exceptions import (
    DownloadError,
    PackageError,
    PackageInstallErrors,
    UnresolvedPackage,
)
from stagecraft.run.packages import (
    PACKAGE_MANIFEST,
    Fetcher,
    PackageIndex,
    PackageInstaller,
    PackageSet,
    PackageSpec,
    read_package_manifest,
)

SHA = "ab" * 32


class TestPackageSpec:
    @pytest.mark.parametrize("entry, expected", [
        ("gcc", PackageSpec("gcc")),
        ("make=4.3", PackageSpec("make", "4.3")),
        ({"name": "jq", "version": 1.6}, PackageSpec("jq", "1.6")),
        (
            {"url": "https://example.com/dl/tool-2.0.tar.gz", "sha256": SHA.upper()},
            PackageSpec("tool-2.0", url="https://example.com/dl/tool-2.0.tar.gz", sha256=SHA),
        ),
    ])
    def test_parse(self, entry, expected):
        assert PackageSpec.parse(entry) == expected

    @pytest.mark.parametrize("entry", ["", "make=", 42, {"url": "x", "sha256": "nothex"}, {"name": "a", "tag": "b"}])
    def test_parse_invalid(self, entry):
        with pytest.raises(ValueError):
            PackageSpec.parse(entry)

    def test_pinned(self):
        assert not PackageSpec("gcc").pinned
        assert PackageSpec("gcc", "12").pinned
        assert PackageSpec("tool", url="https://x", sha256=SHA).pinned


class TestPackageSet:
    def test_order_insensitive(self):
        assert PackageSet.from_entries(["b", "a=1", "c"]) == PackageSet.from_entries(["c", "b", "a=1"])
        assert [s.name for s in PackageSet.from_entries(["b", "a", "c"])] == ["a", "b", "c"]

    def test_duplicates_collapse(self):
        packages = PackageSet.from_entries(["gcc", "gcc", "make=4.3", "make=4.3"])
        assert len(packages) == 2

    def test_pinned_wins_over_unpinned(self):
        (spec,) = PackageSet.from_entries(["make", "make=4.3"])
        assert spec.version == "4.3"

    def test_conflicting_pins(self):
        with pytest.raises(ValueError, match="conflicting entries for package 'make'"):
            PackageSet.from_entries(["make=4.2", "make=4.3"])


class TestPackageIndex:
    def test_lookup_highest_version(self, make_index):
        index = PackageIndex([make_index({"libfoo": {"1.9": {"a": "1"}, "1.10": {"a": "2"}}})])

        package = index.lookup("libfoo")
        assert package.version == "1.10"
        assert package.url.startswith("file://")
        assert package.url.endswith("/pool/libfoo-1.10.tar.gz")
        assert package.source == "index:index.yaml"

    def test_lookup_pinned_version(self, make_index):
        index = PackageIndex([make_index({"libfoo": {"1.9": {"a": "1"}, "1.10": {"a": "2"}}})])
        assert index.lookup("libfoo", "1.9").version == "1.9"

    def test_lookup_missing(self, make_index):
        index = PackageIndex([make_index({"libfoo": {"1.0": {"a": "1"}}})])
        with pytest.raises(UnresolvedPackage, match="'libbar'"):
            index.lookup("libbar")
        with pytest.raises(UnresolvedPackage, match="'libfoo=2.0'"):
            index.lookup("libfoo", "2.0")

    def test_first_repository_wins(self, make_index):
        first = make_index({"libfoo": {"1.0": {"a": "1"}}}, filename="first.yaml")
        second = make_index({"libfoo": {"2.0": {"a": "2"}}}, filename="second.yaml")
        index = PackageIndex([first, second])
        assert index.lookup("libfoo").version == "1.0"

    def test_missing_repository(self, tmp_path):
        with pytest.raises(PackageError, match="repository index not found"):
            PackageIndex([tmp_path / "nope.yaml"])

    def test_malformed_repository(self, tmp_path):
        path = tmp_path / "index.yaml"
        path.write_text("- not a mapping\n")
        with pytest.raises(PackageError, match="'packages' mapping"):
            PackageIndex([path])

    @pytest.mark.parametrize("versions, match", [
        ({"1.0": {"sha256": SHA}}, "libfoo 1.0: entry needs 'url'"),
        ({"1.0": "pool/libfoo-1.0.tar.gz"}, "libfoo 1.0: entry needs 'url'"),
        (["1.0"], "libfoo: versions must be a mapping"),
    ])
    def test_malformed_entry(self, tmp_path, versions, match):
        path = tmp_path / "index.yaml"
        path.write_text(yaml.safe_dump({"packages": {"libfoo": versions}}))
        with pytest.raises(PackageError, match=match):
            PackageIndex([path])

    def test_entry_without_sha256_needs_allow_unpinned(self, tmp_path):
        path = tmp_path / "index.yaml"
        path.write_text(yaml.safe_dump({"packages": {"libfoo": {"1.0": {"url": "pool/libfoo-1.0.tar.gz"}}}}))
        with pytest.raises(PackageError, match="libfoo 1.0: entry needs 'sha256'"):
            PackageIndex([path])

        package = PackageIndex([path], allow_unpinned=True).lookup("libfoo")
        assert package.sha256 is None
        assert package.url.endswith("/pool/libfoo-1.0.tar.gz")


class FakeResponse:
    def __init__(self, status_code=200, body=b""):
        self.status_code = status_code
        self.body = body

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def iter_content(self, chunk_size=1):
        yield self.body


class FakeSession:
    """Returns (or raises) queued outcomes, one per request."""

    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    def get(self, url, stream=False, timeout=None):
        self.calls.append(url)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class TestFetcher:
    def test_local_file(self, tmp_path):
        src = tmp_path / "pkg.tar"
        src.write_bytes(b"data")
        dest = tmp_path / "dest"

        Fetcher().fetch(src.as_uri(), dest)
        assert dest.read_bytes() == b"data"

    def test_local_file_missing(self, tmp_path):
        with pytest.raises(DownloadError, match="no such file"):
            Fetcher().fetch((tmp_path / "nope").as_uri(), tmp_path / "dest")

    def test_unsupported_scheme(self, tmp_path):
        with pytest.raises(DownloadError, match="unsupported scheme 'ftp'"):
            Fetcher().fetch("ftp://example.com/pkg.tar", tmp_path / "dest")

    def test_http_download(self, tmp_path):
        session = FakeSession([FakeResponse(200, b"archive")])
        dest = tmp_path / "dest"

        Fetcher(session=session).fetch("https://example.com/pkg.tar", dest)
        assert dest.read_bytes() == b"archive"

    def test_transient_errors_are_retried(self, tmp_path):
        session = FakeSession([
            requests.ConnectionError("reset"),
            FakeResponse(503),
            FakeResponse(200, b"ok"),
        ])
        dest = tmp_path / "dest"

        Fetcher(retries=3, backoff=0, session=session).fetch("https://example.com/pkg.tar", dest)
        assert len(session.calls) == 3
        assert dest.read_bytes() == b"ok"

    def test_retries_exhausted(self, tmp_path):
        session = FakeSession([requests.Timeout("slow")] * 3)
        with pytest.raises(DownloadError) as exc_info:
            Fetcher(retries=2, backoff=0, session=session).fetch("https://example.com/pkg.tar", tmp_path / "dest")
        assert exc_info.value.transient
        assert len(session.calls) == 3

    def test_client_error_is_not_retried(self, tmp_path):
        session = FakeSession([FakeResponse(404), FakeResponse(200, b"ok")])
        with pytest.raises(DownloadError, match="HTTP 404"):
            Fetcher(retries=3, backoff=0, session=session).fetch("https://example.com/pkg.tar", tmp_path / "dest")
        assert len(session.calls) == 1


@pytest.fixture
def installer(tmp_path, make_index):
    def make(packages, depends=None) -> PackageInstaller:
        index = PackageIndex([make_index(packages, depends)])
        return PackageInstaller(index=index, cache=PackageCache(tmp_path / "cache"), max_workers=4)

    return make


class TestPackageInstaller:
    def test_install_unpacks_and_records(self, tmp_path, installer):
        inst = installer({
            "hello": {"1.0": {"usr/bin/hello": "#!/bin/sh\necho hello\n"}},
            "libgreet": {"2.1": {"usr/lib/libgreet.so": "elf"}},
        })
        root = tmp_path / "root"
        root.mkdir()

        entries = inst.install(PackageSet.from_entries(["libgreet", "hello"]), root)

        assert [e["name"] for e in entries] == ["hello", "libgreet"]
        assert (root / "usr" / "bin" / "hello").read_text() == "#!/bin/sh\necho hello\n"
        assert (root / "usr" / "lib" / "libgreet.so").read_text() == "elf"
        assert read_package_manifest(root) == entries

    def test_install_follows_depends(self, tmp_path, installer):
        inst = installer(
            {"app": {"1.0": {"opt/app": "a"}}, "libc": {"2.36": {"lib/libc.so": "c"}}},
            depends={"app": ["libc"]},
        )
        root = tmp_path / "root"
        root.mkdir()

        inst.install(PackageSet.from_entries(["app"]), root)
        assert (root / "lib" / "libc.so").exists()
        assert [p["name"] for p in read_package_manifest(root)] == ["app", "libc"]

    def test_manifest_is_independent_of_request_order(self, tmp_path, installer):
        inst = installer({
            "a": {"1.0": {"a": "1"}},
            "b": {"1.0": {"b": "1"}},
            "c": {"1.0": {"c": "1"}},
        })
        manifest_bytes = []
        for order in (["a", "b", "c"], ["c", "a", "b"]):
            root = tmp_path / "-".join(order)
            root.mkdir()
            inst.install(PackageSet.from_entries(order), root)
            manifest_bytes.append((root / PACKAGE_MANIFEST.lstrip("/")).read_bytes())

        assert manifest_bytes[0] == manifest_bytes[1]

    def test_separate_installs_merge(self, tmp_path, installer):
        inst = installer({"a": {"1.0": {"a": "1"}}, "b": {"1.0": {"b": "1"}}})
        root = tmp_path / "root"
        root.mkdir()

        inst.install(PackageSet.from_entries(["b"]), root)
        inst.install(PackageSet.from_entries(["a"]), root)
        assert [p["name"] for p in read_package_manifest(root)] == ["a", "b"]

    def test_unresolved_package(self, tmp_path, installer):
        inst = installer({"a": {"1.0": {"a": "1"}}})
        root = tmp_path / "root"
        root.mkdir()

        with pytest.raises(UnresolvedPackage, match="'missing'"):
            inst.install(PackageSet.from_entries(["a", "missing"]), root)
        assert list(root.iterdir()) == []

    def test_several_unresolved_packages(self, installer):
        inst = installer({"a": {"1.0": {"a": "1"}}})
        with pytest.raises(PackageInstallErrors) as exc_info:
            inst.resolve(PackageSet.from_entries(["x", "y"]))
        assert len(exc_info.value.errors) == 2
        assert exc_info.value.exit_code == 6

    def test_url_package_sha_mismatch(self, tmp_path, make_package):
        path, _ = make_package("tool", {"opt/tool": "t"})
        inst = PackageInstaller(index=PackageIndex(), cache=PackageCache(tmp_path / "cache"))
        root = tmp_path / "root"
        root.mkdir()

        packages = PackageSet.from_entries([{"url": path.as_uri(), "sha256": SHA}])
        with pytest.raises(DownloadError, match="sha256 mismatch"):
            inst.install(packages, root)
        assert not (root / "opt").exists()

    def test_url_package_is_cached(self, tmp_path, make_package):
        path, sha = make_package("tool", {"opt/tool": "t"})
        cache = PackageCache(tmp_path / "cache")
        inst = PackageInstaller(index=PackageIndex(), cache=cache)
        root = tmp_path / "root"
        root.mkdir()

        inst.install(PackageSet.from_entries([{"url": path.as_uri(), "sha256": sha}]), root)

        assert cache.get(sha) is not None
        (entry,) = read_package_manifest(root)
        assert entry == {"name": "tool-1.0", "version": None, "sha256": sha, "source": "url"}

    def test_archive_escaping_root_is_rejected(self, tmp_path, make_package):
        path, sha = make_package("evil", {"../../etc/passwd": "root::0:0"})
        inst = PackageInstaller(index=PackageIndex(), cache=PackageCache(tmp_path / "cache"))
        root = tmp_path / "root"
        root.mkdir()

        with pytest.raises(DownloadError, match="escapes root"):
            inst.install(PackageSet.from_entries([{"url": path.as_uri(), "sha256": sha}]), root)


def test_package_manifest_format(tmp_path, installer):
    inst = installer({"hello": {"1.0": {"usr/bin/hello": "x"}}})
    root = tmp_path / "root"
    root.mkdir()
    inst.install(PackageSet.from_entries(["hello"]), root)

    data = yaml.safe_load(Path(root, PACKAGE_MANIFEST.lstrip("/")).read_text())
    (entry,) = data["packages"]
    assert set(entry) == {"name", "version", "sha256", "source"}
    assert entry["version"] == "1.0"
