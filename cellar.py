#!/usr/bin/env python3
# cellar.py
#
# Password-based in-place file encryption, interchangeable with
#   openssl enc -aes-256-cbc -salt -pbkdf2
# plus a SHA-512-crypt digest of the passphrase for audit display.
#
# Container format ("Salted__" v1, as written by OpenSSL):
#   [8]   magic b"Salted__"
#   [8]   salt
#   [...] AES-256-CBC(PKCS#7(plaintext)), key/iv = PBKDF2-HMAC-SHA256(passphrase, salt, 10000)
#
# There is no MAC. A wrong passphrase and a corrupted file fail the same way
# (bad padding), and a wrong passphrase passes the padding check by chance
# roughly once in 256 attempts.
#
# Dependencies: stdlib + cryptography + passlib

from __future__ import annotations

import argparse
import logging
import os
import stat
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Optional, Sequence, Tuple, Union

from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from passlib.hash import sha512_crypt

logger = logging.getLogger(__name__)


# =========================
# Constants / Limits
# =========================

MAGIC = b"Salted__"
SALT_LEN = 8
HEADER_LEN = len(MAGIC) + SALT_LEN

KEY_LEN = 32  # AES-256
IV_LEN = 16
BLOCK_SIZE = 16

# openssl enc -pbkdf2 defaults: -iter 10000, -md sha256
PBKDF2_ITERATIONS = 10_000
PBKDF2_HASH = hashes.SHA256

DIGEST_SCHEME_ID = "6"  # SHA-512-crypt
DIGEST_ROUNDS = 5000

TMP_SUFFIX = ".tmp"

Passphrase = Union[str, bytes]


# =========================
# Errors
# =========================

class CellarError(Exception):
    pass


class InputNotFoundError(CellarError):
    pass


class InvalidInputError(CellarError):
    pass


class MalformedContainerError(CellarError):
    pass


class CipherFailureError(CellarError):
    pass


class IOFailureError(CellarError):
    pass


# =========================
# Helpers
# =========================

def eprint(*args: object) -> None:
    print(*args, file=sys.stderr)


def _encode_passphrase(passphrase: Passphrase) -> bytes:
    if isinstance(passphrase, str):
        return passphrase.encode("utf-8")
    if isinstance(passphrase, (bytes, bytearray)):
        return bytes(passphrase)
    raise InvalidInputError("Passphrase must be str or bytes.")


def _fsync_fileobj_best_effort(f: BinaryIO) -> None:
    try:
        f.flush()
    except Exception:
        return
    try:
        os.fsync(f.fileno())
    except Exception:
        pass


def _fsync_dir_best_effort(dir_path: Path) -> None:
    if os.name != "posix":
        return
    try:
        fd = os.open(str(dir_path), os.O_RDONLY)
    except Exception:
        return
    try:
        os.fsync(fd)
    except Exception:
        pass
    finally:
        try:
            os.close(fd)
        except Exception:
            pass


def _unlink_best_effort(p: Path) -> None:
    try:
        p.unlink()
    except FileNotFoundError:
        pass
    except Exception:
        logger.debug("Could not remove temporary file %s", p)


def _copy_mode_best_effort(src: Path, dst: Path) -> None:
    try:
        os.chmod(dst, stat.S_IMODE(src.stat().st_mode))
    except Exception:
        pass


def temporary_path(path: Union[str, Path]) -> Path:
    """Sibling path the transformed content is staged in before the swap."""
    path = Path(path)
    return path.with_name(path.name + TMP_SUFFIX)


def _create_tmp_file(path: Path) -> Tuple[Path, BinaryIO]:
    tmp_path = temporary_path(path)
    flags = os.O_WRONLY | os.O_CREAT | os.O_EXCL
    if os.name == "posix":
        flags |= getattr(os, "O_NOFOLLOW", 0)
    try:
        fd = os.open(str(tmp_path), flags, 0o600)
    except FileExistsError as ex:
        raise IOFailureError(
            f"Temporary file already exists: {tmp_path}\n"
            f"It is left over from an interrupted run (or another run is in progress); "
            f"remove it and retry."
        ) from ex
    except OSError as ex:
        raise IOFailureError(f"Failed to create temporary file {tmp_path}: {ex}") from ex

    try:
        f = os.fdopen(fd, "wb", closefd=True)
    except Exception:
        try:
            os.close(fd)
        except Exception:
            pass
        _unlink_best_effort(tmp_path)
        raise
    return tmp_path, f


def _atomic_replace_file(tmp_path: Path, final_path: Path) -> None:
    os.replace(tmp_path, final_path)
    _fsync_dir_best_effort(final_path.parent)


def _read_target(path: Path) -> bytes:
    try:
        if path.is_symlink():
            raise InputNotFoundError(f"Refusing to transform a symlink in place: {path}")
        if not path.is_file():
            raise InputNotFoundError(f"Input file not found: {path}")
    except OSError as ex:
        raise InputNotFoundError(f"Failed to stat input file: {path} ({ex})") from ex

    try:
        return path.read_bytes()
    except OSError as ex:
        raise InputNotFoundError(f"Failed to read input file: {path} ({ex})") from ex


def _replace_contents(path: Path, data: bytes) -> None:
    tmp_path, tmp_f = _create_tmp_file(path)
    logger.debug("Writing %d bytes to %s", len(data), tmp_path)
    try:
        with tmp_f:
            tmp_f.write(data)
            _fsync_fileobj_best_effort(tmp_f)
        _copy_mode_best_effort(path, tmp_path)
        _atomic_replace_file(tmp_path, path)
    except OSError as ex:
        _unlink_best_effort(tmp_path)
        logger.debug("Rolled back %s: %s", path, ex)
        raise IOFailureError(f"Failed to replace {path}: {ex}") from ex
    except BaseException:
        _unlink_best_effort(tmp_path)
        logger.debug("Rolled back %s", path)
        raise
    logger.debug("Committed %s", path)


# =========================
# KDF
# =========================

def derive_key_iv(
    passphrase: Passphrase,
    salt: bytes,
    *,
    iterations: int = PBKDF2_ITERATIONS,
) -> Tuple[bytes, bytes]:
    """
    PBKDF2 over (passphrase, salt), split into (key, iv) the way
    `openssl enc -pbkdf2` does: one 48-byte derivation, key first.

    An empty passphrase is accepted; rejecting weak passphrases is up to the caller.
    """
    if not isinstance(salt, (bytes, bytearray)) or len(salt) != SALT_LEN:
        raise InvalidInputError(f"Salt must be exactly {SALT_LEN} bytes.")
    if iterations < 1:
        raise InvalidInputError("PBKDF2 iterations must be positive.")

    kdf = PBKDF2HMAC(
        algorithm=PBKDF2_HASH(),
        length=KEY_LEN + IV_LEN,
        salt=bytes(salt),
        iterations=iterations,
    )
    material = kdf.derive(_encode_passphrase(passphrase))
    return material[:KEY_LEN], material[KEY_LEN:]


# =========================
# Container encode/decode
# =========================

def build_container(salt: bytes, ciphertext: bytes) -> bytes:
    if len(salt) != SALT_LEN:
        raise InvalidInputError(f"Salt must be exactly {SALT_LEN} bytes.")
    return MAGIC + bytes(salt) + bytes(ciphertext)


def parse_container(data: bytes) -> Tuple[bytes, bytes]:
    """Split a container into (salt, ciphertext), validating the header."""
    if len(data) < HEADER_LEN:
        raise MalformedContainerError(
            f"Not an encrypted file: {len(data)} bytes is shorter than the {HEADER_LEN}-byte header."
        )
    if data[: len(MAGIC)] != MAGIC:
        raise MalformedContainerError("Not an encrypted file (bad magic).")

    salt = bytes(data[len(MAGIC):HEADER_LEN])
    ciphertext = bytes(data[HEADER_LEN:])
    if not ciphertext or len(ciphertext) % BLOCK_SIZE != 0:
        raise MalformedContainerError(
            f"Invalid ciphertext length {len(ciphertext)} (must be a positive multiple of {BLOCK_SIZE})."
        )
    return salt, ciphertext


# =========================
# Encrypt / Decrypt (in memory)
# =========================

def _aes_cbc(key: bytes, iv: bytes) -> Cipher:
    return Cipher(algorithms.AES(key), modes.CBC(iv))


def encrypt_bytes(
    passphrase: Passphrase,
    plaintext: bytes,
    *,
    salt: Optional[bytes] = None,
    iterations: int = PBKDF2_ITERATIONS,
) -> bytes:
    if salt is None:
        salt = os.urandom(SALT_LEN)
    key, iv = derive_key_iv(passphrase, salt, iterations=iterations)

    padder = padding.PKCS7(BLOCK_SIZE * 8).padder()
    padded = padder.update(bytes(plaintext)) + padder.finalize()

    encryptor = _aes_cbc(key, iv).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()
    return build_container(salt, ciphertext)


def decrypt_bytes(
    passphrase: Passphrase,
    container: bytes,
    *,
    iterations: int = PBKDF2_ITERATIONS,
) -> bytes:
    salt, ciphertext = parse_container(container)
    key, iv = derive_key_iv(passphrase, salt, iterations=iterations)

    decryptor = _aes_cbc(key, iv).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()

    unpadder = padding.PKCS7(BLOCK_SIZE * 8).unpadder()
    try:
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError as ex:
        raise CipherFailureError(
            "Decryption failed. Check your password or the file's integrity."
        ) from ex


# =========================
# Encrypt / Decrypt (in place)
# =========================

def encrypt_file(
    passphrase: Passphrase,
    path: Union[str, Path],
    *,
    iterations: int = PBKDF2_ITERATIONS,
) -> None:
    """
    Replace the file at `path` with its encrypted container.

    The container is staged at `temporary_path(path)` and renamed over the
    original only once fully written. On any failure the staged file is
    removed and the original is left untouched. A file staged by a run that
    was killed mid-write is not cleaned up automatically and is safe to
    delete by hand. No locking is done: two concurrent calls on the same path
    are unsupported.
    """
    path = Path(path)
    plaintext = _read_target(path)
    logger.debug("Encrypting %s (%d bytes)", path, len(plaintext))
    container = encrypt_bytes(passphrase, plaintext, iterations=iterations)
    _replace_contents(path, container)


def decrypt_file(
    passphrase: Passphrase,
    path: Union[str, Path],
    *,
    iterations: int = PBKDF2_ITERATIONS,
) -> None:
    """
    Replace the container at `path` with the plaintext it holds.

    Raises MalformedContainerError if the file has no valid header and
    CipherFailureError for a wrong passphrase or a damaged file (the two are
    indistinguishable). Same staging and rollback rules as encrypt_file.
    """
    path = Path(path)
    container = _read_target(path)
    logger.debug("Decrypting %s (%d bytes)", path, len(container))
    plaintext = decrypt_bytes(passphrase, container, iterations=iterations)
    _replace_contents(path, plaintext)


# =========================
# Passphrase digest
# =========================

@dataclass(frozen=True)
class DigestRecord:
    scheme: str
    rounds: int
    salt: str
    checksum: str

    def to_string(self) -> str:
        return f"${self.scheme}$rounds={self.rounds}${self.salt}${self.checksum}"

    def __str__(self) -> str:
        return self.to_string()


def parse_digest(record: str) -> DigestRecord:
    try:
        parsed = sha512_crypt.from_string(record)
    except (TypeError, ValueError) as ex:
        raise InvalidInputError(f"Malformed digest record: {ex}") from ex
    if not parsed.checksum:
        raise InvalidInputError("Malformed digest record: missing checksum.")
    return DigestRecord(
        scheme=DIGEST_SCHEME_ID,
        rounds=parsed.rounds,
        salt=parsed.salt,
        checksum=parsed.checksum,
    )


def _check_rounds(rounds: int) -> None:
    if not (sha512_crypt.min_rounds <= rounds <= sha512_crypt.max_rounds):
        raise InvalidInputError(
            f"Digest rounds must be in [{sha512_crypt.min_rounds} .. {sha512_crypt.max_rounds}], got {rounds}"
        )


def _sha512_crypt_hash(handler, passphrase: Passphrase) -> str:
    secret = _encode_passphrase(passphrase)
    try:
        raw = handler.hash(secret)
    except (TypeError, ValueError) as ex:
        raise InvalidInputError(f"Passphrase cannot be hashed: {ex}") from ex
    return parse_digest(raw).to_string()


def _hash_with_salt(passphrase: Passphrase, salt: str, rounds: int) -> str:
    _check_rounds(rounds)
    try:
        handler = sha512_crypt.using(salt=salt, rounds=rounds)
    except (TypeError, ValueError) as ex:
        raise InvalidInputError(f"Invalid digest salt: {ex}") from ex
    return _sha512_crypt_hash(handler, passphrase)


def hash_passphrase(passphrase: Passphrase, *, rounds: int = DIGEST_ROUNDS) -> str:
    """
    SHA-512-crypt digest of `passphrase` under a fresh random salt.

    Always returns the explicit `$6$rounds=N$salt$checksum` form, so the
    record carries everything needed to verify it later.

    The passphrase must be non-empty, contain no NUL character and be at
    most 4096 bytes once UTF-8 encoded (passlib's limits for this scheme);
    anything else raises InvalidInputError.
    """
    if not _encode_passphrase(passphrase):
        raise InvalidInputError("Empty passphrase cannot be hashed.")
    _check_rounds(rounds)
    return _sha512_crypt_hash(sha512_crypt.using(rounds=rounds), passphrase)


def verify_passphrase(passphrase: Passphrase, record: Union[str, DigestRecord]) -> bool:
    if isinstance(record, DigestRecord):
        record = record.to_string()
    try:
        return bool(sha512_crypt.verify(_encode_passphrase(passphrase), record))
    except (CellarError, TypeError, ValueError) as ex:
        logger.debug("Digest verification failed on malformed input: %s", ex)
        return False


# =========================
# Mode dispatch
# =========================

MODES = ("encrypt", "decrypt")


def run_mode(mode: str, passphrase: Passphrase, path: Union[str, Path]) -> Optional[str]:
    """
    Run one operation on `path`. "encrypt" hashes the passphrase first and
    returns the digest record; nothing is encrypted if hashing fails.
    "decrypt" returns None.
    """
    if mode == "encrypt":
        record = hash_passphrase(passphrase)
        encrypt_file(passphrase, path)
        return record
    if mode == "decrypt":
        decrypt_file(passphrase, path)
        return None
    raise InvalidInputError(f"Unsupported mode: {mode!r} (expected one of {', '.join(MODES)})")


# =========================
# CLI
# =========================

def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="cellar",
        description="Hash a password and encrypt or decrypt a file in-place (AES-256-CBC, PBKDF2).",
        epilog=(
            "Example (Encrypt):\n"
            "  cellar -e -p \"mysecret\" -i data.txt\n"
            "\n"
            "Example (Decrypt):\n"
            "  cellar -d -p \"mysecret\" -i data.txt"
        ),
        formatter_class=argparse.RawTextHelpFormatter,
        add_help=False,
    )

    g = p.add_mutually_exclusive_group(required=True)
    g.add_argument("-e", dest="mode", action="store_const", const="encrypt",
                   help="Encrypt mode: hashes the password and encrypts the file.")
    g.add_argument("-d", dest="mode", action="store_const", const="decrypt",
                   help="Decrypt mode: decrypts the file.")

    p.add_argument("-p", dest="password", required=True, help="The password for the operation.")
    p.add_argument("-i", dest="infile", required=True, help="The file to encrypt/decrypt in-place.")
    p.add_argument("--verbose", action="store_true", help="Log each step to stderr.")
    p.add_argument("-?", "-h", "--help", action="help", help="Display this help message.")

    return p


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if args.password == "":
        parser.error("Missing required mode or arguments (empty password).")

    path = Path(args.infile)

    if args.mode == "encrypt":
        print("--- Generating Hash and Encrypting File ---")
    else:
        print("--- Decrypting File ---")

    record = run_mode(args.mode, args.password, path)

    if record is not None:
        print(f"Password Hash: {record}")
        print("")
    print(f"[SUCCESS]: File '{path}' {args.mode}ed in-place.")
    return 0


def run(argv: Optional[Sequence[str]] = None) -> int:
    try:
        return main(argv)
    except CellarError as ex:
        eprint(f"Error: {ex}")
        return 2
    except KeyboardInterrupt:
        eprint("Interrupted.")
        return 130


if __name__ == "__main__":
    raise SystemExit(run())
