import base64
import hashlib
import hmac
import json
import os
from dataclasses import dataclass
from types import SimpleNamespace
from typing import Optional

import pytest
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from mpcium.identity import (
    FileStore,
    IdentityError,
    decrypt_age_scrypt,
    load_private_key,
    party_id_to_node_id,
)

NODES = ("node0", "node1")


def _seed(key):
    return key.private_bytes(
        serialization.Encoding.Raw,
        serialization.PrivateFormat.Raw,
        serialization.NoEncryption(),
    )


def _public(key):
    return key.public_key().public_bytes(
        serialization.Encoding.Raw, serialization.PublicFormat.Raw
    )


def _raw64(data):
    return base64.b64encode(data).rstrip(b"=")


def _hkdf(ikm, salt, info):
    return HKDF(algorithm=hashes.SHA256(), length=32, salt=salt, info=info).derive(ikm)


def _age_encrypt(plaintext, passphrase, log_n=10):
    file_key = os.urandom(16)
    salt = os.urandom(16)
    wrap_key = Scrypt(
        salt=b"age-encryption.org/v1/scrypt" + salt, length=32, n=2**log_n, r=8, p=1
    ).derive(passphrase.encode())
    body = ChaCha20Poly1305(wrap_key).encrypt(b"\x00" * 12, file_key, None)
    header = (
        b"age-encryption.org/v1\n-> scrypt "
        + _raw64(salt)
        + b" "
        + str(log_n).encode()
        + b"\n"
        + _raw64(body)
        + b"\n---"
    )
    mac = hmac.new(_hkdf(file_key, None, b"header"), header, hashlib.sha256).digest()
    nonce = os.urandom(16)
    aead = ChaCha20Poly1305(_hkdf(file_key, nonce, b"payload"))
    chunks = [plaintext[i : i + 65536] for i in range(0, len(plaintext), 65536)] or [b""]
    sealed = b"".join(
        aead.encrypt(
            index.to_bytes(11, "big") + (b"\x01" if index == len(chunks) - 1 else b"\x00"),
            chunk,
            None,
        )
        for index, chunk in enumerate(chunks)
    )
    return header + b" " + _raw64(mac) + b"\n" + nonce + sealed


@dataclass
class FakeTssMessage:
    payload: bytes
    from_party_key: bytes
    signature: Optional[bytes] = None

    def marshal_for_signing(self):
        return self.payload + b"|" + self.from_party_key


@dataclass
class FakeEcdhMessage:
    payload: bytes
    from_node: str
    signature: Optional[bytes] = None

    def marshal_for_signing(self):
        return self.from_node.encode() + b"|" + self.payload


@dataclass
class FakeInitiatorMessage:
    body: bytes
    signature: bytes

    def raw(self):
        return self.body

    def sig(self):
        return self.signature


class BrokenInitiatorMessage:
    def raw(self):
        raise ValueError("cannot serialise")

    def sig(self):
        return b"x"


@pytest.fixture
def cluster(tmp_path):
    identity_dir = tmp_path / "identity"
    identity_dir.mkdir()
    keys = {name: Ed25519PrivateKey.generate() for name in NODES}
    peers = {name: f"{name}-id" for name in NODES}
    for name, key in keys.items():
        identity = {
            "node_name": name,
            "node_id": peers[name],
            "public_key": _public(key).hex(),
            "created_at": "2024-01-01T00:00:00Z",
        }
        (identity_dir / f"{name}_identity.json").write_text(json.dumps(identity))
        (identity_dir / f"{name}_private.key").write_text((_seed(key) + _public(key)).hex())
    peers_path = tmp_path / "peers.json"
    peers_path.write_text(json.dumps(peers))
    initiator = Ed25519PrivateKey.generate()
    return SimpleNamespace(
        identity_dir=identity_dir,
        peers_path=peers_path,
        peers=peers,
        keys=keys,
        initiator=initiator,
        initiator_hex=_public(initiator).hex(),
    )


def _store(cluster, node="node0"):
    return FileStore(cluster.identity_dir, node, False, cluster.initiator_hex, cluster.peers_path)


def test_public_keys_loaded_for_every_peer(cluster):
    store = _store(cluster)
    for name in NODES:
        assert store.get_public_key(cluster.peers[name]) == _public(cluster.keys[name])


def test_unknown_public_key_raises(cluster):
    store = _store(cluster)
    with pytest.raises(IdentityError, match="public key not found for node ID: nobody"):
        store.get_public_key("nobody")


def test_tss_sign_and_verify_round_trip(cluster):
    store = _store(cluster)
    msg = FakeTssMessage(b"round-1", b"node0-id:party")
    msg.signature = store.sign_message(msg)
    assert len(msg.signature) == 64
    store.verify_message(msg)
    msg.payload = b"round-2"
    with pytest.raises(IdentityError, match="invalid signature"):
        store.verify_message(msg)


def test_tss_message_verified_by_other_node(cluster):
    signer = _store(cluster, "node0")
    verifier = _store(cluster, "node1")
    msg = FakeTssMessage(b"payload", b"node0-id:k")
    msg.signature = signer.sign_message(msg)
    verifier.verify_message(msg)
    msg.from_party_key = b"node1-id:k"
    with pytest.raises(IdentityError, match="invalid signature"):
        verifier.verify_message(msg)


def test_tss_message_without_signature(cluster):
    store = _store(cluster)
    with pytest.raises(IdentityError, match="message has no signature"):
        store.verify_message(FakeTssMessage(b"x", b"node0-id"))


def test_tss_message_from_unknown_sender(cluster):
    store = _store(cluster)
    msg = FakeTssMessage(b"x", b"stranger:1", signature=b"\x00" * 64)
    with pytest.raises(IdentityError, match="failed to get sender's public key"):
        store.verify_message(msg)


def test_ecdh_sign_and_verify_round_trip(cluster):
    store = _store(cluster)
    msg = FakeEcdhMessage(b"public-point", "node0-id")
    msg.signature = store.sign_ecdh_message(msg)
    store.verify_signature(msg)
    msg.signature = bytes(64)
    with pytest.raises(IdentityError, match="invalid signature"):
        store.verify_signature(msg)


def test_ecdh_message_signed_by_peer_key(cluster):
    store = _store(cluster)
    msg = FakeEcdhMessage(b"point", "node1-id")
    msg.signature = cluster.keys["node1"].sign(msg.marshal_for_signing())
    store.verify_signature(msg)
    with pytest.raises(IdentityError, match="ECDH message has no signature"):
        store.verify_signature(FakeEcdhMessage(b"point", "node1-id"))


def test_initiator_message_verification(cluster):
    store = _store(cluster)
    body = b'{"wallet_id":"w1"}'
    store.verify_initiator_message(FakeInitiatorMessage(body, cluster.initiator.sign(body)))
    forged = cluster.keys["node0"].sign(body)
    with pytest.raises(IdentityError, match="invalid signature from initiator"):
        store.verify_initiator_message(FakeInitiatorMessage(body, forged))


def test_initiator_message_with_empty_signature(cluster):
    store = _store(cluster)
    with pytest.raises(IdentityError, match="signature is empty"):
        store.verify_initiator_message(FakeInitiatorMessage(b"body", b""))


def test_initiator_message_raw_failure(cluster):
    store = _store(cluster)
    with pytest.raises(IdentityError, match="failed to get raw message data"):
        store.verify_initiator_message(BrokenInitiatorMessage())


def test_symmetric_keys(cluster):
    store = _store(cluster)
    first, second = os.urandom(32), os.urandom(32)
    assert store.check_symmetric_key_complete(0)
    store.set_symmetric_key("node1-id", first)
    assert store.get_symmetric_key("node1-id") == first
    store.set_symmetric_key("node1-id", second)
    assert store.get_symmetric_key("node1-id") == second
    assert store.check_symmetric_key_complete(1)
    assert not store.check_symmetric_key_complete(2)
    with pytest.raises(IdentityError, match="SymmetricKey key not found"):
        store.get_symmetric_key("node2-id")


def test_party_id_to_node_id():
    assert party_id_to_node_id(b"node0-id:keygen") == "node0-id"
    assert party_id_to_node_id(b"\x00\x00node0-id:x") == "node0-id"
    assert party_id_to_node_id(int.from_bytes(b"node1-id:sign", "big")) == "node1-id"
    assert party_id_to_node_id(b"plain") == "plain"


def test_node_id_mismatch(cluster):
    cluster.peers_path.write_text(json.dumps({"node0": "node0-id", "node1": "other-id"}))
    with pytest.raises(IdentityError, match="node ID mismatch for node1"):
        _store(cluster)


def test_missing_identity_file(cluster):
    cluster.peers_path.write_text(json.dumps({"node0": "node0-id", "node9": "node9-id"}))
    with pytest.raises(IdentityError, match="missing identity file for node node9"):
        _store(cluster)


def test_identity_path_cannot_escape_directory(cluster):
    cluster.peers_path.write_text(json.dumps({"../evil": "evil-id"}))
    with pytest.raises(IdentityError, match="invalid identity file path for node ../evil"):
        _store(cluster)


def test_missing_peers_file(cluster, tmp_path):
    with pytest.raises(IdentityError, match="failed to read peers.json"):
        FileStore(cluster.identity_dir, "node0", False, cluster.initiator_hex, tmp_path / "none.json")


def test_malformed_peers_file(cluster):
    cluster.peers_path.write_text("not json")
    with pytest.raises(IdentityError, match="failed to parse peers.json"):
        _store(cluster)


def test_initiator_key_required(cluster):
    with pytest.raises(IdentityError, match="event_initiator_pubkey not found"):
        FileStore(cluster.identity_dir, "node0", False, "", cluster.peers_path)


def test_invalid_initiator_key(cluster):
    with pytest.raises(IdentityError, match="invalid initiator public key format"):
        FileStore(cluster.identity_dir, "node0", False, "zz", cluster.peers_path)


def test_missing_unencrypted_private_key(cluster):
    with pytest.raises(IdentityError, match="no unencrypted private key found for node ghost"):
        FileStore(cluster.identity_dir, "ghost", False, cluster.initiator_hex, cluster.peers_path)


def test_invalid_private_key_format(cluster):
    (cluster.identity_dir / "node0_private.key").write_text("not-hex")
    with pytest.raises(IdentityError, match="invalid private key format"):
        _store(cluster)


def test_load_private_key_unencrypted(cluster):
    key = cluster.keys["node1"]
    loaded = load_private_key(cluster.identity_dir, "node1", False, None)
    assert loaded == (_seed(key) + _public(key)).hex()


def test_missing_encrypted_private_key(cluster):
    with pytest.raises(IdentityError, match="no encrypted private key found for node node0"):
        load_private_key(cluster.identity_dir, "node0", True, lambda: "unused")


def test_store_with_encrypted_private_key(cluster):
    passphrase = "password"
    key = cluster.keys["node0"]
    hex_key = (_seed(key) + _public(key)).hex().encode()
    (cluster.identity_dir / "node0_private.key.age").write_bytes(_age_encrypt(hex_key, passphrase))
    (cluster.identity_dir / "node0_private.key").unlink()

    store = FileStore(
        cluster.identity_dir,
        "node0",
        True,
        cluster.initiator_hex,
        cluster.peers_path,
        lambda: passphrase,
    )
    msg = FakeTssMessage(b"data", b"node0-id:p")
    msg.signature = store.sign_message(msg)
    store.verify_message(msg)
    assert cluster.keys["node0"].public_key().verify(msg.signature, msg.marshal_for_signing()) is None


def test_encrypted_private_key_wrong_passphrase(cluster):
    passphrase = "password"
    (cluster.identity_dir / "node0_private.key.age").write_bytes(_age_encrypt(b"abcd", passphrase))
    with pytest.raises(IdentityError, match="failed to decrypt private key"):
        load_private_key(cluster.identity_dir, "node0", True, lambda: "secret")


def test_age_round_trip_small():
    passphrase = "password"
    assert decrypt_age_scrypt(_age_encrypt(b"hello", passphrase), passphrase) == b"hello"


def test_age_round_trip_empty():
    passphrase = "password"
    assert decrypt_age_scrypt(_age_encrypt(b"", passphrase), passphrase) == b""


def test_age_round_trip_multiple_chunks():
    passphrase = "password"
    plaintext = os.urandom(150_000)
    assert decrypt_age_scrypt(_age_encrypt(plaintext, passphrase), passphrase) == plaintext


def test_age_wrong_passphrase():
    passphrase = "password"
    sealed = _age_encrypt(b"hello", passphrase)
    with pytest.raises(IdentityError, match="incorrect passphrase"):
        decrypt_age_scrypt(sealed, "secret")


def test_age_tampered_payload():
    passphrase = "password"
    sealed = bytearray(_age_encrypt(b"hello world", passphrase))
    sealed[-1] ^= 0x01
    with pytest.raises(IdentityError, match="failed to decrypt and authenticate"):
        decrypt_age_scrypt(bytes(sealed), passphrase)


def test_age_bad_version_line():
    passphrase = "password"
    sealed = _age_encrypt(b"hello", passphrase).replace(b"/v1\n", b"/v2\n", 1)
    with pytest.raises(IdentityError, match="unknown age format version"):
        decrypt_age_scrypt(sealed, passphrase)


def test_age_truncated_header():
    with pytest.raises(IdentityError, match="unexpected end of header"):
        decrypt_age_scrypt(b"age-encryption.org/v1\n-> scrypt", "password")