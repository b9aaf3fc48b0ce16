"""
Tests for release asset selection and safe archive extraction.
"""

import io
import tarfile

import pytest

from vpskit.github import (
    ReleaseError,
    asset_pattern,
    extract_tarball,
    find_binary,
    select_asset,
)

ASSETS = {
    "assets": [
        {"name": "dnscrypt-proxy-linux_arm-2.1.5.tar.gz", "browser_download_url": "u-arm"},
        {"name": "dnscrypt-proxy-linux_arm64-2.1.5.tar.gz", "browser_download_url": "u-arm64"},
        {"name": "dnscrypt-proxy-linux_i386-2.1.5.tar.gz", "browser_download_url": "u-i386"},
        {"name": "dnscrypt-proxy-linux_x86_64-2.1.5.tar.gz.minisig", "browser_download_url": "sig"},
        {"name": "dnscrypt-proxy-linux_x86_64-2.1.5.tar.gz", "browser_download_url": "u-x86_64"},
        {"name": "dnscrypt-proxy-win64-2.1.5.zip", "browser_download_url": "u-win"},
    ]
}


class TestSelectAsset:
    @pytest.mark.parametrize(
        "arch, url",
        [
            ("x86_64", "u-x86_64"),
            ("amd64", "u-x86_64"),
            ("aarch64", "u-arm64"),
            ("armv7l", "u-arm"),
            ("i686", "u-i386"),
        ],
    )
    def test_architectures(self, arch, url):
        assert select_asset(ASSETS, asset_pattern(arch)) == url

    def test_unknown_architecture(self):
        assert asset_pattern("riscv64") is None

    def test_no_assets(self):
        assert select_asset({}, asset_pattern("x86_64")) is None


class TestExtract:
    def _archive(self, tmp_path, name, data=b"x", mode=0o755):
        archive = tmp_path / "release.tar.gz"
        with tarfile.open(archive, "w:gz") as tar:
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = mode
            tar.addfile(info, io.BytesIO(data))
        return archive

    def test_extracts_and_finds_binary(self, tmp_path):
        dest = tmp_path / "out"
        dest.mkdir()
        extract_tarball(self._archive(tmp_path, "linux-arm64/dnscrypt-proxy"), dest)
        assert find_binary(dest, "dnscrypt-proxy") == dest / "linux-arm64" / "dnscrypt-proxy"

    def test_rejects_path_traversal(self, tmp_path):
        dest = tmp_path / "out"
        dest.mkdir()
        with pytest.raises(ReleaseError) as exc:
            extract_tarball(self._archive(tmp_path, "../evil"), dest)
        assert exc.value.exit_code == 4
        assert not (tmp_path / "evil").exists()

    def test_rejects_symlink_escape(self, tmp_path):
        outside = tmp_path / "outside"
        outside.mkdir()
        dest = tmp_path / "out"
        dest.mkdir()
        archive = tmp_path / "release.tar.gz"
        with tarfile.open(archive, "w:gz") as tar:
            link = tarfile.TarInfo("link")
            link.type = tarfile.SYMTYPE
            link.linkname = str(outside)
            tar.addfile(link)
            evil = tarfile.TarInfo("link/evil")
            evil.size = 1
            tar.addfile(evil, io.BytesIO(b"x"))

        with pytest.raises(ReleaseError) as exc:
            extract_tarball(archive, dest)
        assert exc.value.exit_code == 4
        assert not (outside / "evil").exists()
        assert not (dest / "link").exists()

    def test_relative_symlink_escape(self, tmp_path):
        dest = tmp_path / "out"
        dest.mkdir()
        archive = tmp_path / "release.tar.gz"
        with tarfile.open(archive, "w:gz") as tar:
            link = tarfile.TarInfo("bin/up")
            link.type = tarfile.SYMTYPE
            link.linkname = "../../.."
            tar.addfile(link)

        with pytest.raises(ReleaseError):
            extract_tarball(archive, dest)

    def test_internal_symlink_allowed(self, tmp_path):
        dest = tmp_path / "out"
        dest.mkdir()
        archive = tmp_path / "release.tar.gz"
        with tarfile.open(archive, "w:gz") as tar:
            binary = tarfile.TarInfo("bin/dnscrypt-proxy")
            binary.size = 3
            binary.mode = 0o755
            tar.addfile(binary, io.BytesIO(b"bin"))
            link = tarfile.TarInfo("bin/proxy")
            link.type = tarfile.SYMTYPE
            link.linkname = "dnscrypt-proxy"
            tar.addfile(link)

        extract_tarball(archive, dest)
        assert (dest / "bin" / "proxy").is_symlink()

    def test_corrupt_archive(self, tmp_path):
        archive = tmp_path / "release.tar.gz"
        archive.write_bytes(b"<html>truncated</html>")
        with pytest.raises(ReleaseError) as exc:
            extract_tarball(archive, tmp_path)
        assert exc.value.exit_code == 4

    def test_prefers_executable(self, tmp_path):
        (tmp_path / "a").mkdir()
        (tmp_path / "b").mkdir()
        plain = tmp_path / "a" / "tool"
        plain.write_text("")
        plain.chmod(0o644)
        exe = tmp_path / "b" / "tool"
        exe.write_text("")
        exe.chmod(0o755)
        assert find_binary(tmp_path, "tool") == exe

    def test_missing(self, tmp_path):
        assert find_binary(tmp_path, "tool") is None
