"""
Deterministic rollout bucketing.

Algorithm v1 (do not change for existing releases, devices would move
between buckets mid-rollout):

    key    = f"{device_id}:{release_id}" encoded as UTF-8
    hash   = FNV-1a 32-bit over key
    bucket = hash % 100

A device is inside a rollout when ``bucket < rollout_percentage``. The
percentage never enters the hash, so raising it only ever adds devices.
Keying on the release id gives each release an independent sample.
"""

FNV_OFFSET_BASIS_32 = 2166136261
FNV_PRIME_32 = 16777619
BUCKET_COUNT = 100
ALGORITHM_VERSION = 1


def fnv1a_32(data: bytes) -> int:
    value = FNV_OFFSET_BASIS_32
    for byte in data:
        value ^= byte
        value = (value * FNV_PRIME_32) & 0xFFFFFFFF
    return value


def bucket(device_id, release_id) -> int:
    """Bucket in [0, 100) for the (device, release) pair."""
    key = f"{device_id}:{release_id}".encode('utf-8')
    return fnv1a_32(key) % BUCKET_COUNT


def is_included(device_id, release_id, percentage) -> bool:
    return bucket(device_id, release_id) < percentage
