# mpcium

Building blocks for a node in a threshold-signature (MPC) cluster.

- `mpcium.logger`: levelled logging with key/value context. Output is
  human-readable lines on stderr, or JSON lines on stdout when the
  environment is `"production"`. `set_output()` sends JSON lines to any
  stream.
- `mpcium.db`: `Database`, a directory-backed key-value store. Its data file
  can be encrypted with AES-GCM. Every write gets a new commit version.
  `backup(since)` dumps the entries changed since a version, and `load()`
  applies such a dump.
- `mpcium.backup`: `BackupExecutor` writes encrypted incremental backup
  files. It tracks the last backup in `latest.version` and restores every
  backup, oldest first, into a new `Database`.
- `mpcium.kvstore`: `BadgerKVStore` and `new_badger_kv_store()` combine an
  encrypted `Database` with a `BackupExecutor`.
- `mpcium.identity`: `FileStore` loads a node's Ed25519 private key, which may
  be plain hex or an age passphrase-encrypted file. It also loads the peers'
  public keys and the event initiator's public key. It signs and verifies
  TSS and ECDH messages, verifies initiator messages and keeps one symmetric
  key per peer.
- `mpcium.pubsub`, `mpcium.point2point`, `mpcium.jetstream_broker`,
  `mpcium.message_queue`: publish/subscribe, request/reply with retries,
  durable stream consumers and work queues. Each runs on a NATS-like
  connection or a JetStream-like context that you supply.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Example: an encrypted store with backups

```python
import os

from mpcium.kvstore import BadgerConfig, new_badger_kv_store

db_key = os.urandom(32)
backup_key = os.urandom(32)

store = new_badger_kv_store(BadgerConfig(
    node_id="node0",
    encryption_key=db_key,
    backup_encryption_key=backup_key,
    backup_dir="./backups",
    db_path="./db",
))
store.put("wallet:1", b"share")
print(store.backup())   # ./backups/backup-node0-<timestamp>-1.enc
print(store.backup())   # None: nothing changed since the last backup
print(store.get("wallet:1"))
store.close()
```

Both keys are required. If either is missing, `new_badger_kv_store` raises
`EncryptionKeyNotProvidedError` or `BackupEncryptionKeyNotProvidedError`. If
a key is absent, `get` raises `mpcium.db.KeyNotFoundError`. If the store has
no backup executor, `backup` raises `mpcium.backup.BackupError`.

Each backup file has four parts, in this order:

1. The marker `MPCIUM_BACKUP`.
2. A 4-byte big-endian length.
3. JSON metadata: `algo`, `nonce_b64`, `created_at`, `since`, `next_since` and
   `encryption_key_id`.
4. The AES-256-GCM ciphertext.

To restore, use the executor that knows the backup key:

```python
store.backup_executor.restore_all_backups_encrypted("./restored", db_key)
```

This applies every `backup-*.enc` in name order.

## Example: logging

```python
from mpcium import logger

logger.init("dev", debug=True)
logger.info("node started", "node", "node0")
logger.error("keygen failed", ValueError("timeout"), "wallet", "w1")
```

Key/value arguments must come in pairs. With an odd number, `logger.error`
raises `ValueError`, and `debug`, `info` and `warn` log a warning about the
misuse instead. `fatal` logs and exits the process. `panic` logs and raises
`PanicError`.

## Identities

`FileStore(identity_dir, node_name, decrypt, initiator_pubkey_hex,
peers_path="peers.json", read_passphrase=None)` reads these files:

- `<node_name>_private.key`: a hex Ed25519 key. When `decrypt` is true it
  reads `<node_name>_private.key.age` instead and asks for the passphrase,
  either through `read_passphrase` or at the terminal.
- `peers.json`: an object that maps peer names to node IDs.
- `<peer>_identity.json`, one per peer: the peer's `node_id` and its hex
  `public_key`.

Messages are duck-typed:

- TSS messages provide `marshal_for_signing()`, `signature` and
  `from_party_key`.
- ECDH messages provide `marshal_for_signing()`, `signature` and `from_node`.
- Initiator messages provide `raw()` and `sig()`.

Failures raise `IdentityError`.

## What this package does not do

- It has no command-line program and no node process.
- It does not run the threshold key-generation or signing protocols.
- It includes no NATS client. The messaging classes call methods such as
  `publish`, `subscribe`, `request`, `create_or_update_stream` and
  `create_or_update_consumer` on objects you pass in.
- It stores symmetric keys per peer but does not encrypt messages with them.
- It has no key-info storage in an external key/value service.