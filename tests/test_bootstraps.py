import hashlib
import io
import itertools
import zipfile

import pytest

import apt_repo
import bootstraps
from apt_repo import PackageRecord
from bootstraps import (CreateBootstrapVisitor, build_list_document,
                        relative_install_path)
from deb_file import visit_files
from tests.debs import PREFIX, directory, make_deb, regular, symlink

FOO_DEB = make_deb(
    fields={"Package": "foo", "Architecture": "aarch64", "Version": "1.0"},
    data_entries=[directory(PREFIX + "bin/"), regular(PREFIX + "bin/foo", b"hi")],
)


def assemble(tmp_path, packages, name="out.zip"):
    """Run the visitor over (package name, deb bytes) pairs; return the zip path and visitor."""
    zip_path = tmp_path / name
    with zipfile.ZipFile(zip_path, 'w') as zip_writer:
        visitor = CreateBootstrapVisitor(zip_writer)
        for package_name, deb in packages:
            visitor.begin_package()
            visit_files(io.BytesIO(deb), visitor)
            visitor.finish_package(package_name)
        bootstraps.write_zip_file(zip_writer, "var/lib/dpkg/status", visitor.status_document())
        bootstraps.write_zip_file(zip_writer, "SYMLINKS.txt", visitor.symlinks_document())
    return zip_path, visitor


def test_relative_install_path():
    assert relative_install_path(PREFIX + "bin/foo") == "bin/foo"
    assert relative_install_path("data/data/com.termux/files/usr/lib/libc++.so") == "lib/libc++.so"


@pytest.mark.parametrize("path", ["./data/data/com.termux/", "./etc/passwd", PREFIX])
def test_relative_install_path_outside_prefix(path):
    with pytest.raises(RuntimeError, match="install prefix"):
        relative_install_path(path)


def test_list_document_includes_parent_directories():
    assert build_list_document(["bin/foo"]) == "/bin/foo\n/bin\n"


def test_list_document_deduplicates():
    document = build_list_document(["share/doc/foo/README", "share/doc/foo/LICENSE", "bin/foo", "bin/foo"])
    assert document.splitlines() == [
        "/share/doc/foo/README",
        "/share/doc/foo/LICENSE",
        "/bin/foo",
        "/share",
        "/share/doc",
        "/share/doc/foo",
        "/bin",
    ]


def test_list_document_independent_of_order():
    paths = ["lib/a/b/c.so", "lib/a/d", "bin/x", "lib/a"]
    expected = {"/lib/a/b/c.so", "/lib/a/d", "/bin/x", "/lib/a", "/lib", "/lib/a/b", "/bin"}
    for permutation in itertools.permutations(paths):
        lines = build_list_document(list(permutation)).splitlines()
        assert len(lines) == len(set(lines))
        assert set(lines) == expected


def test_single_package_scenario(tmp_path):
    zip_path, _ = assemble(tmp_path, [("foo", FOO_DEB)])

    with zipfile.ZipFile(zip_path) as zf:
        status = zf.read("var/lib/dpkg/status").decode('utf-8')
        assert status == (
            "Package: foo\n"
            "Architecture: aarch64\n"
            "Version: 1.0\n"
            "Status: install ok installed\n"
            "\n"
        )
        assert zf.read("bin/foo") == b"hi"

        list_lines = zf.read("var/lib/dpkg/info/foo.list").decode('utf-8').splitlines()
        assert sorted(list_lines) == ["/bin", "/bin/foo"]

        md5sums = zf.read("var/lib/dpkg/info/foo.md5sums").decode('utf-8')
        assert md5sums == f"{hashlib.md5(b'hi').hexdigest()}  bin/foo\n"


def test_symlinks_are_recorded_not_stored(tmp_path):
    deb = make_deb(data_entries=[
        regular(PREFIX + "usr/bin/foo", b"#!/bin/sh\n"),
        symlink(PREFIX + "usr/bin/bar", "foo"),
    ])
    zip_path, _ = assemble(tmp_path, [("foo", deb)])

    with zipfile.ZipFile(zip_path) as zf:
        assert zf.read("SYMLINKS.txt").decode('utf-8') == "foo←usr/bin/bar\n"
        assert "usr/bin/bar" not in zf.namelist()
        assert "/usr/bin/bar" in zf.read("var/lib/dpkg/info/foo.list").decode('utf-8').splitlines()


def test_reserved_fields_are_not_in_status(tmp_path):
    deb = make_deb(fields={
        "Package": "foo", "Version": "1.0", "Filename": "foo.deb", "MD5Sum": "x",
        "SHA1": "y", "SHA256": "z", "Size": "10", "Depends": "bar",
    })
    _, visitor = assemble(tmp_path, [("foo", deb)])
    assert visitor.status_document().decode('utf-8') == (
        "Package: foo\nVersion: 1.0\nDepends: bar\nStatus: install ok installed\n\n"
    )


def test_package_without_regular_files(tmp_path):
    deb = make_deb(fields={"Package": "meta", "Version": "1"})
    zip_path, _ = assemble(tmp_path, [("meta", deb)])

    with zipfile.ZipFile(zip_path) as zf:
        names = zf.namelist()
        assert "var/lib/dpkg/info/meta.list" not in names
        assert "var/lib/dpkg/info/meta.md5sums" not in names
        assert zf.read("var/lib/dpkg/status").startswith(b"Package: meta\n")


def test_conffiles_passthrough(tmp_path):
    conffiles = b"/data/data/com.termux/files/usr/etc/foo.conf\n"
    deb = make_deb(conffiles=conffiles, data_entries=[regular(PREFIX + "etc/foo.conf", b"a=1\n")])
    zip_path, _ = assemble(tmp_path, [("foo", deb)])

    with zipfile.ZipFile(zip_path) as zf:
        assert zf.read("var/lib/dpkg/info/foo.conffiles") == conffiles


def test_per_package_state_is_reset(tmp_path):
    bar_deb = make_deb(fields={"Package": "bar", "Version": "2"},
                       data_entries=[regular(PREFIX + "lib/libbar.so", b"bar")])
    zip_path, _ = assemble(tmp_path, [("foo", FOO_DEB), ("bar", bar_deb)])

    with zipfile.ZipFile(zip_path) as zf:
        assert zf.read("var/lib/dpkg/info/bar.list").decode('utf-8').splitlines() == ["/lib/libbar.so", "/lib"]
        assert "bin/foo" not in zf.read("var/lib/dpkg/info/bar.md5sums").decode('utf-8')
        status = zf.read("var/lib/dpkg/status").decode('utf-8')
        assert status.index("Package: foo") < status.index("Package: bar")
        assert status.count("Status: install ok installed\n") == 2


def test_assembly_is_idempotent(tmp_path):
    deb = make_deb(data_entries=[
        regular(PREFIX + "bin/foo", b"hi"),
        symlink(PREFIX + "bin/bar", "foo"),
    ])
    first, _ = assemble(tmp_path, [("foo", deb)], "first.zip")
    second, _ = assemble(tmp_path, [("foo", deb)], "second.zip")

    documents = ["var/lib/dpkg/status", "var/lib/dpkg/info/foo.list",
                 "var/lib/dpkg/info/foo.md5sums", "SYMLINKS.txt"]
    with zipfile.ZipFile(first) as a, zipfile.ZipFile(second) as b:
        for name in documents:
            assert a.read(name) == b.read(name)


@pytest.fixture
def fake_repo(monkeypatch):
    """Serve packages from memory instead of the network. Returns {arch: {name: deb bytes}}."""
    debs = {
        "all": {"ca-certificates": make_deb(
            fields={"Package": "ca-certificates", "Architecture": "all", "Version": "1"},
            data_entries=[regular(PREFIX + "etc/tls/cert.pem", b"cert")])},
        "arm": {"foo": FOO_DEB},
        "aarch64": {"foo": FOO_DEB},
    }

    def fake_fetch_index(arch, repo_url=apt_repo.DEFAULT_REPO_URL, session=None):
        return {
            name: PackageRecord({"Package": name, "Filename": f"{arch}/{name}.deb"}, repo_url)
            for name in debs.get(arch, {})
        }

    def fake_download_package(record, session=None):
        arch = record.fields["Filename"].split("/")[0]
        return io.BytesIO(debs[arch][record.name])

    monkeypatch.setattr(apt_repo, "fetch_index", fake_fetch_index)
    monkeypatch.setattr(apt_repo, "download_package", fake_download_package)
    return debs


def test_create_bootstrap_layout(tmp_path, fake_repo):
    all_index = apt_repo.fetch_index("all")
    zip_path = str(tmp_path / "bootstrap-arm.zip")
    bootstraps.create_bootstrap(zip_path, "arm", all_index, packages=("foo", "ca-certificates"))

    with zipfile.ZipFile(zip_path) as zf:
        names = zf.namelist()
        assert names[:len(bootstraps.BOOTSTRAP_DIRECTORIES)] == list(bootstraps.BOOTSTRAP_DIRECTORIES)
        assert zf.read("var/lib/dpkg/available") == b""
        assert zf.read("etc/tls/cert.pem") == b"cert"
        assert "var/lib/dpkg/info/ca-certificates.md5sums" in names
        assert names[-2:] == ["var/lib/dpkg/status", "SYMLINKS.txt"]


def test_create_bootstrap_missing_package(tmp_path, fake_repo):
    with pytest.raises(RuntimeError, match="Cannot find package 'bash'"):
        bootstraps.create_bootstrap(str(tmp_path / "b.zip"), "arm", {}, packages=("bash",))


def test_create_all_architectures(tmp_path, fake_repo):
    written = bootstraps.create(str(tmp_path), arches=("arm", "aarch64"), packages=("foo", "ca-certificates"))

    assert written == [str(tmp_path / "bootstrap-arm.zip"), str(tmp_path / "bootstrap-aarch64.zip")]
    for path in written:
        with zipfile.ZipFile(path) as zf:
            assert zf.read("bin/foo") == b"hi"


def test_create_fails_when_one_architecture_fails(tmp_path, fake_repo):
    # There is no "foo" for i686.
    with pytest.raises(RuntimeError, match="'i686'"):
        bootstraps.create(str(tmp_path), arches=("arm", "i686"), packages=("foo",))


def test_create_requires_output_directory(tmp_path):
    with pytest.raises(RuntimeError, match="does not exist"):
        bootstraps.create(str(tmp_path / "missing"))


def test_non_utf8_link_target_fails_during_decode(tmp_path):
    deb = make_deb(data_entries=[symlink(PREFIX + "bin/bar", "foo\udcff")])
    with zipfile.ZipFile(tmp_path / "out.zip", 'w') as zip_writer:
        visitor = CreateBootstrapVisitor(zip_writer)
        with pytest.raises(RuntimeError, match="not valid UTF-8"):
            visit_files(io.BytesIO(deb), visitor)
        assert visitor.symlinks == []
