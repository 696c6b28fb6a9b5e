"""Node identities: Ed25519 signing keys, peer public keys and per-peer symmetric keys."""

from __future__ import annotations

import base64
import binascii
import getpass
import hashlib
import hmac
import json
import os
import re
import threading
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Callable, Optional, Protocol, Union

from cryptography.exceptions import InvalidSignature, InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from mpcium import logger

_AGE_VERSION = b"age-encryption.org/v1"
_SCRYPT_LABEL = b"age-encryption.org/v1/scrypt"
_AGE_CHUNK = 64 * 1024
_AGE_TAG = 16
_AGE_LINE = 64
_MAX_WORK_FACTOR = 22
_DECRYPT_PROMPT = "Enter passphrase to decrypt private key: "


class IdentityError(Exception):
    """An identity could not be loaded, or a signature or key lookup failed."""


@dataclass
class NodeIdentity:
    node_name: str
    node_id: str
    public_key: str
    created_at: str


class _Signable(Protocol):
    signature: Optional[bytes]

    def marshal_for_signing(self) -> bytes: ...


class _TssMessage(_Signable, Protocol):
    """A TSS round message; ``from_party_key`` is the sending party's key."""

    from_party_key: Union[bytes, int]


class _EcdhMessage(_Signable, Protocol):
    """An ECDH key-exchange message; ``from_node`` is the sender's node ID."""

    from_node: str


class _InitiatorMessage(Protocol):
    def raw(self) -> bytes: ...

    def sig(self) -> bytes: ...


# --- age (scrypt recipient) decryption ------------------------------------


def _b64_raw(data: bytes) -> bytes:
    if b"=" in data:
        raise IdentityError("malformed age header: padded base64")
    try:
        return base64.b64decode(data + b"=" * (-len(data) % 4), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise IdentityError(f"malformed age header: {exc}") from exc


def _parse_age_header(data: bytes) -> tuple[list[tuple[list[bytes], bytes]], bytes, bytes, int]:
    pos = 0

    def next_line() -> bytes:
        nonlocal pos
        end = data.find(b"\n", pos)
        if end < 0:
            raise IdentityError("malformed age header: unexpected end of header")
        line = data[pos:end]
        pos = end + 1
        return line

    if next_line() != _AGE_VERSION:
        raise IdentityError("unknown age format version")

    stanzas: list[tuple[list[bytes], bytes]] = []
    while True:
        line_start = pos
        line = next_line()
        if line.startswith(b"---"):
            if not line.startswith(b"--- "):
                raise IdentityError("malformed age header: bad footer")
            mac = _b64_raw(line[4:])
            return stanzas, data[: line_start + 3], mac, pos
        if not line.startswith(b"-> "):
            raise IdentityError("malformed age header: bad stanza")
        args = line[3:].split(b" ")
        if not args or any(not arg for arg in args):
            raise IdentityError("malformed age header: empty stanza argument")
        body_lines = []
        while True:
            body_line = next_line()
            if len(body_line) > _AGE_LINE:
                raise IdentityError("malformed age header: body line too long")
            body_lines.append(body_line)
            if len(body_line) < _AGE_LINE:
                break
        stanzas.append((args, _b64_raw(b"".join(body_lines))))


def _hkdf(ikm: bytes, salt: bytes | None, info: bytes) -> bytes:
    return HKDF(algorithm=hashes.SHA256(), length=32, salt=salt, info=info).derive(ikm)


def _unwrap_file_key(stanzas: list[tuple[list[bytes], bytes]], passphrase: str) -> bytes:
    if not any(args[0] == b"scrypt" for args, _ in stanzas):
        raise IdentityError("no identity matched any of the recipients")
    if len(stanzas) != 1:
        raise IdentityError("an scrypt recipient must be the only one")
    args, body = stanzas[0]
    if len(args) != 3:
        raise IdentityError("invalid scrypt recipient block")
    salt = _b64_raw(args[1])
    if len(salt) != 16:
        raise IdentityError("invalid scrypt recipient block")
    if not re.fullmatch(rb"[1-9][0-9]*", args[2]):
        raise IdentityError("invalid scrypt work factor")
    log_n = int(args[2])
    if log_n > _MAX_WORK_FACTOR:
        raise IdentityError(f"scrypt work factor too large: {log_n}")
    if len(body) != 16 + _AGE_TAG:
        raise IdentityError("invalid scrypt recipient block")

    wrap_key = Scrypt(salt=_SCRYPT_LABEL + salt, length=32, n=2**log_n, r=8, p=1).derive(
        passphrase.encode("utf-8")
    )
    try:
        return ChaCha20Poly1305(wrap_key).decrypt(b"\x00" * 12, body, None)
    except InvalidTag:
        raise IdentityError("incorrect passphrase") from None


def decrypt_age_scrypt(data: bytes, passphrase: str) -> bytes:
    """Decrypt an age v1 file that was encrypted to a passphrase."""
    data = bytes(data)
    stanzas, header, mac, pos = _parse_age_header(data)
    file_key = _unwrap_file_key(stanzas, passphrase)

    expected = hmac.new(_hkdf(file_key, None, b"header"), header, hashlib.sha256).digest()
    if not hmac.compare_digest(expected, mac):
        raise IdentityError("bad header MAC")

    nonce = data[pos : pos + 16]
    if len(nonce) != 16:
        raise IdentityError("failed to read nonce")
    payload = data[pos + 16 :]
    if len(payload) < _AGE_TAG:
        raise IdentityError("truncated age payload")

    aead = ChaCha20Poly1305(_hkdf(file_key, nonce, b"payload"))
    size = _AGE_CHUNK + _AGE_TAG
    chunks = [payload[start : start + size] for start in range(0, len(payload), size)]
    last = len(chunks) - 1
    plaintext = []
    for counter, chunk in enumerate(chunks):
        final = counter == last
        if len(chunk) < _AGE_TAG:
            raise IdentityError("truncated age payload")
        if final and counter > 0 and len(chunk) == _AGE_TAG:
            raise IdentityError("last chunk is empty")
        chunk_nonce = counter.to_bytes(11, "big") + (b"\x01" if final else b"\x00")
        try:
            plaintext.append(aead.decrypt(chunk_nonce, chunk, None))
        except InvalidTag:
            raise IdentityError("failed to decrypt and authenticate payload chunk") from None
    return b"".join(plaintext)


# --- key loading -------------------------------------------------------------


def _safe_path(base: str | os.PathLike[str], name: str) -> Path:
    base_path = Path(base).resolve()
    candidate = (base_path / name).resolve()
    if candidate == base_path or not candidate.is_relative_to(base_path):
        raise IdentityError(f"path {name!r} escapes {base_path}")
    return candidate


def _prompt_passphrase() -> str:
    return getpass.getpass(_DECRYPT_PROMPT)


def load_private_key(
    identity_dir: str | os.PathLike[str],
    node_name: str,
    decrypt: bool,
    read_passphrase: Callable[[], str] | None = None,
) -> str:
    """Return the node's hex private key, from the age-encrypted file if ``decrypt``."""
    try:
        encrypted_path = _safe_path(identity_dir, f"{node_name}_private.key.age")
    except IdentityError as exc:
        raise IdentityError(f"invalid encrypted key path for node {node_name}: {exc}") from exc
    try:
        plain_path = _safe_path(identity_dir, f"{node_name}_private.key")
    except IdentityError as exc:
        raise IdentityError(f"invalid unencrypted key path for node {node_name}: {exc}") from exc

    if decrypt:
        if not encrypted_path.exists():
            raise IdentityError(f"no encrypted private key found for node {node_name}")
        logger.infof("Using age-encrypted private key for %s", node_name)
        try:
            encrypted = encrypted_path.read_bytes()
        except OSError as exc:
            raise IdentityError(f"failed to open encrypted key file: {exc}") from exc
        try:
            passphrase = (read_passphrase or _prompt_passphrase)()
        except (OSError, EOFError) as exc:
            raise IdentityError(f"failed to read passphrase: {exc}") from exc
        try:
            decrypted = decrypt_age_scrypt(encrypted, passphrase)
        except IdentityError as exc:
            raise IdentityError(f"failed to decrypt private key: {exc}") from exc
        return decrypted.decode("utf-8", errors="replace")

    if not plain_path.exists():
        raise IdentityError(f"no unencrypted private key found for node {node_name}")
    logger.infof("Using unencrypted private key for %s", node_name)
    try:
        return plain_path.read_bytes().decode("utf-8", errors="replace")
    except OSError as exc:
        raise IdentityError(f"failed to read private key file: {exc}") from exc


def party_id_to_node_id(party_key: bytes | int) -> str:
    """Node ID carried in a party key: the text before the first ':'."""
    if isinstance(party_key, int):
        raw = party_key.to_bytes((party_key.bit_length() + 7) // 8, "big")
    else:
        raw = bytes(party_key).lstrip(b"\x00")
    return raw.decode("utf-8", errors="replace").split(":", 1)[0]


def _unhex(text: str) -> bytes:
    return binascii.unhexlify(text)


def _parse_identity(data: bytes) -> NodeIdentity:
    raw = json.loads(data)
    if not isinstance(raw, dict):
        raise ValueError("identity must be a JSON object")
    values = {}
    for field_ in fields(NodeIdentity):
        value = raw.get(field_.name, "")
        if not isinstance(value, str):
            raise ValueError(f"field {field_.name} must be a string")
        values[field_.name] = value
    return NodeIdentity(**values)


def _verify(public_key: bytes, data: bytes, signature: bytes) -> bool:
    try:
        Ed25519PublicKey.from_public_bytes(bytes(public_key)).verify(bytes(signature), data)
    except (InvalidSignature, ValueError):
        return False
    return True


class FileStore:
    """Identity store backed by files in an identity directory."""

    def __init__(
        self,
        identity_dir: str | os.PathLike[str],
        node_name: str,
        decrypt: bool,
        initiator_pubkey_hex: str,
        peers_path: str | os.PathLike[str] = "peers.json",
        read_passphrase: Callable[[], str] | None = None,
    ) -> None:
        try:
            Path(identity_dir).mkdir(parents=True, exist_ok=True, mode=0o750)
        except OSError as exc:
            raise IdentityError(f"failed to create identity directory: {exc}") from exc

        private_key_hex = load_private_key(identity_dir, node_name, decrypt, read_passphrase)
        try:
            private_raw = _unhex(private_key_hex)
        except (binascii.Error, ValueError) as exc:
            raise IdentityError(f"invalid private key format: {exc}") from exc
        if len(private_raw) not in (32, 64):
            raise IdentityError("invalid private key format: bad key length")

        if not initiator_pubkey_hex:
            raise IdentityError("event_initiator_pubkey not found in config")
        try:
            initiator_pub_key = _unhex(initiator_pubkey_hex)
        except (binascii.Error, ValueError) as exc:
            raise IdentityError(f"invalid initiator public key format: {exc}") from exc
        logger.infof("Loaded initiator public key for node %s", initiator_pubkey_hex)

        try:
            peers_data = Path(peers_path).read_bytes()
        except OSError as exc:
            raise IdentityError(f"failed to read peers.json: {exc}") from exc
        try:
            peers = json.loads(peers_data)
        except ValueError as exc:
            raise IdentityError(f"failed to parse peers.json: {exc}") from exc
        if not isinstance(peers, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in peers.items()
        ):
            raise IdentityError("failed to parse peers.json: expected an object of strings")

        self.identity_dir = Path(identity_dir)
        self.current_node_name = node_name
        self._lock = threading.RLock()
        self._private_key = Ed25519PrivateKey.from_private_bytes(private_raw[:32])
        self._initiator_pub_key = initiator_pub_key
        self._public_keys: dict[str, bytes] = {}
        self._symmetric_keys: dict[str, bytes] = {}

        for peer_name, peer_id in peers.items():
            try:
                path = _safe_path(identity_dir, f"{peer_name}_identity.json")
            except IdentityError as exc:
                raise IdentityError(
                    f"invalid identity file path for node {peer_name}: {exc}"
                ) from exc
            try:
                data = path.read_bytes()
            except OSError as exc:
                raise IdentityError(
                    f"missing identity file for node {peer_name} ({peer_id}): {exc}"
                ) from exc
            try:
                identity = _parse_identity(data)
            except ValueError as exc:
                raise IdentityError(
                    f"failed to parse identity file for node {peer_name}: {exc}"
                ) from exc
            if identity.node_id != peer_id:
                raise IdentityError(
                    f"node ID mismatch for {peer_name}: {peer_id} in peers.json "
                    f"vs {identity.node_id} in identity file"
                )
            try:
                key = _unhex(identity.public_key)
            except (binascii.Error, ValueError) as exc:
                raise IdentityError(
                    f"invalid public key format for node {peer_name}: {exc}"
                ) from exc
            self._public_keys[identity.node_id] = key

    def set_symmetric_key(self, peer_id: str, key: bytes) -> None:
        with self._lock:
            self._symmetric_keys[peer_id] = bytes(key)

    def get_symmetric_key(self, peer_id: str) -> bytes:
        with self._lock:
            try:
                return self._symmetric_keys[peer_id]
            except KeyError:
                raise IdentityError(f"SymmetricKey key not found for node ID: {peer_id}") from None

    def check_symmetric_key_complete(self, desired: int) -> bool:
        with self._lock:
            return len(self._symmetric_keys) == desired

    def get_public_key(self, node_id: str) -> bytes:
        with self._lock:
            try:
                return self._public_keys[node_id]
            except KeyError:
                raise IdentityError(f"public key not found for node ID: {node_id}") from None

    @staticmethod
    def _marshal(msg: _Signable, purpose: str) -> bytes:
        try:
            return bytes(msg.marshal_for_signing())
        except (TypeError, ValueError) as exc:
            raise IdentityError(f"failed to marshal message for {purpose}: {exc}") from exc

    def _sender_key(self, node_id: str) -> bytes:
        try:
            return self.get_public_key(node_id)
        except IdentityError as exc:
            raise IdentityError(f"failed to get sender's public key: {exc}") from exc

    def sign_message(self, msg: _TssMessage) -> bytes:
        return self._private_key.sign(self._marshal(msg, "signing"))

    def verify_message(self, msg: _TssMessage) -> None:
        """Check a TSS message's signature against its sender's public key."""
        if msg.signature is None:
            raise IdentityError("message has no signature")
        public_key = self._sender_key(party_id_to_node_id(msg.from_party_key))
        data = self._marshal(msg, "verification")
        if not _verify(public_key, data, msg.signature):
            raise IdentityError("invalid signature")

    def sign_ecdh_message(self, msg: _EcdhMessage) -> bytes:
        return self._private_key.sign(self._marshal(msg, "signing"))

    def verify_signature(self, msg: _EcdhMessage) -> None:
        """Check an ECDH message's signature against its sender's public key."""
        if msg.signature is None:
            raise IdentityError("ECDH message has no signature")
        public_key = self._sender_key(msg.from_node)
        data = self._marshal(msg, "verification")
        if not _verify(public_key, data, msg.signature):
            raise IdentityError("invalid signature")

    def verify_initiator_message(self, msg: _InitiatorMessage) -> None:
        """Check that ``msg`` was signed by the known event initiator."""
        try:
            data = bytes(msg.raw())
        except (TypeError, ValueError) as exc:
            raise IdentityError(f"failed to get raw message data: {exc}") from exc
        signature = msg.sig()
        if not signature:
            raise IdentityError("signature is empty")
        if not _verify(self._initiator_pub_key, data, signature):
            raise IdentityError("invalid signature from initiator")