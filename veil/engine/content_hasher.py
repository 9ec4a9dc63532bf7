"""
VEIL - Content Hasher

Deterministic SHA-256 digests (lowercase hex) for raw content and for
composite payloads. Composite canonical form: each part is serialized with
json.dumps(sort_keys=True, separators=(",", ":"), ensure_ascii=False), the
serializations are concatenated in argument order and hashed as UTF-8.
"""

import hashlib
import json
from typing import Any, Union


def hash_content(data: Union[bytes, str]) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def canonical_json(part: Any) -> str:
    return json.dumps(part, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def hash_composite(*parts: Any) -> str:
    return hash_content("".join(canonical_json(p) for p in parts))


def hash_coordinates(lat: float, lng: float) -> str:
    return hash_content(f"{lat}_{lng}")


def hash_timestamp(ts: float) -> str:
    return hash_content(str(int(ts)))
