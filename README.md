# mpcium

Building blocks for nodes in a multi-party computation cluster.

- `mpcium.database.Database`: an on-disk key/value database kept as a record log. Each
  record is sealed with AES-GCM when you give it a key. Every write gets a new, rising
  version number. Because of that, `dump(since)` can produce incremental snapshots and
  `load(data)` can replay them.
- `mpcium.kvstore.EncryptedKVStore`: a `KVStore` built on an encrypted `Database`. It
  also makes encrypted incremental backups.
- `mpcium.backup.BackupExecutor`: writes AES-256-GCM backup files that hold only what
  changed since the previous backup. It can also restore all of them into a new
  database.
- Messaging on top of a connection object that you supply:
  - `mpcium.pubsub` for publish/subscribe.
  - `mpcium.p2p` for request/reply with retries.
  - `mpcium.broker` for a durable stream broker.
  - `mpcium.message_queue` for work queues with ack, nak and term handling.
- `mpcium.logger`: leveled logging with key/value fields. It writes JSON lines or
  console lines.

## Installation

```
pip install .
```

For development with tests:

```
pip install ".[test]"
pytest
```

## Storing data

```python
import os
from mpcium.kvstore import EncryptedKVStore, StoreConfig

db_encryption_key = os.urandom(32)       # AES keys must be 16, 24 or 32 bytes
backup_encryption_key = os.urandom(32)

config = StoreConfig(
    node_id="node0",
    encryption_key=db_encryption_key,
    backup_encryption_key=backup_encryption_key,
    backup_dir="./backups",
    db_path="./db/node0",
)

with EncryptedKVStore(config) as store:
    store.put("ecdsa:wallet-1_v1", b"share bytes")
    print(store.get("ecdsa:wallet-1_v1"))
    print(store.keys())          # sorted list of live keys
    store.delete("ecdsa:wallet-1_v1")
    store.backup()               # path of the new backup file, or None
```

- If either key is empty, the constructor raises `EncryptionKeyNotProvidedError` or
  `BackupEncryptionKeyNotProvidedError`. Both are subclasses of `ValueError`.
- `get` raises `KeyError` for a key that is absent.
- `close()` compacts the record log on disk.

## Backups

A call to `backup()` on the store, or to `BackupExecutor.execute()`, does the following:

1. It dumps every entry changed since the watermark stored in `latest.version`.
2. It encrypts the dump.
3. It writes the result to `backup-<node>-<YYYY-MM-DD_HH-MM-SS>-<version>.enc`.
4. It updates `latest.version`.

If nothing has changed, no file is written and the call returns `None`. The backup
directory defaults to `./backups` and is created if it is missing.

A backup file has three parts, in this order:

1. The magic bytes `MPCIUM_BACKUP`.
2. A big-endian 32-bit length, followed by JSON metadata of that length (`BackupMeta`):
   - `algo`, `nonce_b64` and `created_at`;
   - the `since` and `next_since` watermarks;
   - `encryption_key_id`, which is the first 16 hex digits of the SHA-256 of the backup
     key.
3. The ciphertext.

To read a file's metadata without decrypting it, use
`mpcium.backup.read_backup_metadata(path)`.

To rebuild a database, replay all the backups in file-name order:

```python
from mpcium.backup import BackupExecutor

executor = BackupExecutor("node0", None, backup_encryption_key, "./backups")
executor.restore_all_backups_encrypted("./restored", db_encryption_key)
```

Any of the following raises `BackupError`:

- a bad magic header;
- truncated or invalid metadata;
- a wrong backup key;
- calling `execute()` on an executor without a database.

The helpers `encrypt_aes_gcm(plaintext, key)` and `decrypt_aes_gcm(ciphertext, key,
nonce)` are also available.

## Messaging

The messaging classes do not open network connections themselves. You give them
objects that do the transport.

**Connection.** `mpcium.pubsub.Connection` is an abstract class. An implementation
provides `publish`, `publish_msg`, `subscribe`, `request`, `flush`, `close` and
`is_closed`.

**Publish/subscribe.** `PubSub(conn)` offers `publish`, `publish_with_reply` and
`subscribe`.

**Request/reply.** `DirectMessaging(conn)` covers point-to-point messages:

- `listen(topic, handler)` subscribes and answers each request with `b"OK"`. It also
  registers the handler for `send_to_self`.
- `send_to_other(topic, data)` sends a request with a 3-second timeout. It tries up to
  3 times, 50 ms apart.
- `send_to_other_with_retry(topic, data, RetryConfig(...))` takes its retry policy from
  the given `RetryConfig`.
- `send_to_self(topic, data)` calls the local handlers directly. It raises
  `LookupError` if none are registered.
- `retry(operation, ...)` is the retry helper that these methods use.

**Stream broker.** `JetStreamBroker(js, conn, stream_name, subjects, BrokerConfig())`
works with a stream object `js`. That object must provide `create_or_update_stream`,
`stream_info`, `create_or_update_consumer` and `publish`. The consumers it returns must
provide `consume` and `fetch`.

- On construction, the broker creates or updates the stream.
- `publish_message` sends a payload to a subject of the stream.
- `create_subscription` creates a durable consumer and returns a `BrokerSubscription`.
  Call its `unsubscribe()` to stop delivery.
- `fetch_messages` pulls a batch and returns how many messages it handled.
- `get_stream_info` returns the stream information that the `js` object reports.
- Consumer names pass through `sanitize_consumer_name` first.
- Failures raise `BrokerError` or one of its subclasses: `ConnectionClosedError`,
  `StreamCreationError` or `ConsumerCreationError`.

**Work queues.** `MessageQueueManager(queue_name, subjects, js)` creates a work-queue
stream. `new_message_queue(name)` then returns a `MessageQueue` that reads
`<queue>.<name>.*`.

- `enqueue(topic, data, EnqueueOptions(idempotent_key=...))` publishes with a
  `Nats-Msg-Id` header.
- `dequeue(topic, handler)` starts consuming. What happens to each message depends on
  the handler:
  - if it returns, the message is acknowledged;
  - if it raises `PermanentError`, the message is terminated;
  - if it raises anything else, the message is negatively acknowledged so that it is
    delivered again.
- `close()` stops consuming.

## Logging

```python
from mpcium import logger

logger.init("dev", debug=True)      # console lines on stderr; "production" gives JSON on stdout
logger.info("node started", "node", "node0")
try:
    raise RuntimeError("signing failed")
except RuntimeError as exc:
    logger.error("failed to sign", exc, "wallet", "wallet-1")
```

Nothing is written until you call `init` or `set_output(stream)`. `set_output` sends
JSON lines to the given stream. `get_level()` returns `"debug"` or `"info"`.

Arguments after the message are read as alternating keys and values:

- If `debug`, `info` or `warn` get an odd number of them, they log a warning instead.
- If `error` gets an odd number of them, it raises `ValueError`.

Two functions log and then raise:

- `fatal` raises `SystemExit(1)`.
- `panic` raises `RuntimeError`.

## What this package does not do

- It has no client for a message server. You supply the `Connection` and stream
  objects.
- It does not run a node.
- It has no command-line programs.
- It does not implement key generation or signing protocols. It provides the storage,
  backup, messaging and logging pieces that such a node is built from.