"""In-place encrypt_file / decrypt_file and the staged-replace rollback rules."""

from __future__ import annotations

import errno
import os
import shutil
import stat
import subprocess
from pathlib import Path

import pytest

import cellar
from cellar import (
    CipherFailureError,
    IOFailureError,
    InputNotFoundError,
    MalformedContainerError,
    decrypt_file,
    encrypt_file,
    temporary_path,
)


def _leftovers(directory: Path) -> list:
    return sorted(p.name for p in directory.iterdir())


def test_temporary_path_is_sibling_with_suffix(tmp_path: Path):
    target = tmp_path / "data.txt"
    assert temporary_path(target) == tmp_path / "data.txt.tmp"
    assert temporary_path(str(target)) == tmp_path / "data.txt.tmp"


def test_abc_scenario(tmp_path: Path):
    target = tmp_path / "abc.txt"
    target.write_bytes(b"abc")

    encrypt_file("secret", target)
    container = target.read_bytes()
    assert container.startswith(b"Salted__")
    assert len(container) >= 32
    assert _leftovers(tmp_path) == ["abc.txt"]

    decrypt_file("secret", target)
    assert target.read_bytes() == b"abc"
    assert _leftovers(tmp_path) == ["abc.txt"]


def test_abc_scenario_wrong_passphrase(tmp_path: Path):
    # Fixed-salt container for "abc"/"secret" (openssl enc -S 0102030405060708);
    # with a random salt "wrong" fails the padding check only ~255 times in 256.
    known = b"Salted__" + bytes.fromhex("0102030405060708") + bytes.fromhex("023a50c72c6f3c78209be73675812e4f")
    target = tmp_path / "abc.txt"
    target.write_bytes(known)

    with pytest.raises(CipherFailureError):
        decrypt_file("wrong", target)
    assert target.read_bytes() == known
    assert _leftovers(tmp_path) == ["abc.txt"]

    decrypt_file("secret", target)
    assert target.read_bytes() == b"abc"


@pytest.mark.parametrize("content", [b"", b"x", b"0123456789abcdef", b"\x00\xff" * 4096])
def test_file_roundtrip(tmp_path: Path, content: bytes):
    target = tmp_path / "payload.bin"
    target.write_bytes(content)

    encrypt_file(b"passphrase", target)
    assert target.read_bytes() != content
    decrypt_file(b"passphrase", target)

    assert target.read_bytes() == content
    assert _leftovers(tmp_path) == ["payload.bin"]


def test_wrong_passphrase_leaves_container_untouched(tmp_path: Path):
    target = tmp_path / "notes.txt"
    target.write_bytes(b"dear diary")
    encrypt_file("right", target)
    before = target.read_bytes()

    try:
        decrypt_file("wrong", target)
    except CipherFailureError:
        assert target.read_bytes() == before
    else:
        # Unauthenticated CBC: the padding check passed by chance.
        assert target.read_bytes() != b"dear diary"
    assert not temporary_path(target).exists()


def test_missing_file(tmp_path: Path):
    with pytest.raises(InputNotFoundError):
        encrypt_file("secret", tmp_path / "nope.txt")
    with pytest.raises(InputNotFoundError):
        decrypt_file("secret", tmp_path / "nope.txt")
    assert _leftovers(tmp_path) == []


def test_directory_is_not_a_file(tmp_path: Path):
    with pytest.raises(InputNotFoundError):
        encrypt_file("secret", tmp_path)


@pytest.mark.skipif(os.name != "posix", reason="symlinks need POSIX")
def test_symlink_target_refused(tmp_path: Path):
    real = tmp_path / "real.txt"
    real.write_bytes(b"content")
    link = tmp_path / "link.txt"
    link.symlink_to(real)

    with pytest.raises(InputNotFoundError):
        encrypt_file("secret", link)
    assert link.is_symlink()
    assert real.read_bytes() == b"content"


def test_malformed_container_left_untouched(tmp_path: Path):
    target = tmp_path / "plain.txt"
    target.write_bytes(b"hello, not encrypted")

    with pytest.raises(MalformedContainerError):
        decrypt_file("secret", target)
    assert target.read_bytes() == b"hello, not encrypted"
    assert _leftovers(tmp_path) == ["plain.txt"]


class _FullDisk:
    def __init__(self, f):
        self._f = f

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self._f.close()
        return False

    def write(self, data):
        raise OSError(errno.ENOSPC, "No space left on device")

    def __getattr__(self, name):
        return getattr(self._f, name)


def test_write_failure_rolls_back(tmp_path: Path, monkeypatch):
    target = tmp_path / "data.txt"
    target.write_bytes(b"original bytes")

    real_create = cellar._create_tmp_file

    def failing_create(path):
        tmp, f = real_create(path)
        return tmp, _FullDisk(f)

    monkeypatch.setattr(cellar, "_create_tmp_file", failing_create)

    with pytest.raises(IOFailureError) as exc:
        encrypt_file("secret", target)
    assert isinstance(exc.value.__cause__, OSError)
    assert target.read_bytes() == b"original bytes"
    assert _leftovers(tmp_path) == ["data.txt"]


def test_rename_failure_rolls_back(tmp_path: Path, monkeypatch):
    target = tmp_path / "data.txt"
    target.write_bytes(b"original bytes")

    def failing_replace(src, dst):
        raise OSError(errno.EXDEV, "Invalid cross-device link")

    monkeypatch.setattr(cellar.os, "replace", failing_replace)

    with pytest.raises(IOFailureError):
        encrypt_file("secret", target)
    monkeypatch.undo()

    assert target.read_bytes() == b"original bytes"
    assert _leftovers(tmp_path) == ["data.txt"]


def test_interrupt_during_write_removes_temporary(tmp_path: Path, monkeypatch):
    target = tmp_path / "data.txt"
    target.write_bytes(b"original bytes")

    def interrupted(f):
        raise KeyboardInterrupt

    monkeypatch.setattr(cellar, "_fsync_fileobj_best_effort", interrupted)

    with pytest.raises(KeyboardInterrupt):
        encrypt_file("secret", target)
    assert target.read_bytes() == b"original bytes"
    assert _leftovers(tmp_path) == ["data.txt"]


def test_stale_temporary_is_reported_and_kept(tmp_path: Path):
    target = tmp_path / "data.txt"
    target.write_bytes(b"original bytes")
    stale = temporary_path(target)
    stale.write_bytes(b"half-written leftovers")

    with pytest.raises(IOFailureError):
        encrypt_file("secret", target)
    assert target.read_bytes() == b"original bytes"
    assert stale.read_bytes() == b"half-written leftovers"

    stale.unlink()
    encrypt_file("secret", target)
    assert target.read_bytes().startswith(b"Salted__")


@pytest.mark.skipif(os.name != "posix", reason="permission bits need POSIX")
def test_file_mode_is_preserved(tmp_path: Path):
    target = tmp_path / "data.txt"
    target.write_bytes(b"content")
    target.chmod(0o640)

    encrypt_file("secret", target)
    assert stat.S_IMODE(target.stat().st_mode) == 0o640
    decrypt_file("secret", target)
    assert stat.S_IMODE(target.stat().st_mode) == 0o640


@pytest.mark.skipif(shutil.which("openssl") is None, reason="openssl not installed")
def test_openssl_can_decrypt_our_container(tmp_path: Path):
    target = tmp_path / "data.txt"
    target.write_bytes(b"interoperable content\n")
    encrypt_file("s3cret pass", target)

    env = dict(os.environ, CELLAR_TEST_PASS="s3cret pass")
    out = subprocess.run(
        ["openssl", "enc", "-d", "-aes-256-cbc", "-pbkdf2", "-in", str(target), "-pass", "env:CELLAR_TEST_PASS"],
        capture_output=True,
        env=env,
        check=True,
    )
    assert out.stdout == b"interoperable content\n"


@pytest.mark.skipif(shutil.which("openssl") is None, reason="openssl not installed")
def test_we_can_decrypt_openssl_container(tmp_path: Path):
    src = tmp_path / "src.txt"
    src.write_bytes(b"made by openssl")
    target = tmp_path / "enc.bin"

    env = dict(os.environ, CELLAR_TEST_PASS="s3cret pass")
    subprocess.run(
        [
            "openssl", "enc", "-aes-256-cbc", "-salt", "-pbkdf2",
            "-in", str(src), "-out", str(target), "-pass", "env:CELLAR_TEST_PASS",
        ],
        env=env,
        check=True,
    )
    decrypt_file("s3cret pass", target)
    assert target.read_bytes() == b"made by openssl"
