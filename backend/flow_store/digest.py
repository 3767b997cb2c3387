from __future__ import annotations

import hashlib
import hmac
import json
from dataclasses import dataclass
from typing import Any


def canonical_json(payload: Any) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


@dataclass(frozen=True)
class PayloadDigester:
    """One-way digest of transition payloads.

    With a salt the digest is an HMAC so short PHI values cannot be brute-forced
    from the audit log.
    """

    algorithm: str = "sha256"
    salt: str | None = None

    def __post_init__(self) -> None:
        if self.algorithm not in hashlib.algorithms_available:
            raise ValueError(f"Unsupported digest algorithm: {self.algorithm}")
        if self.algorithm.startswith("shake_"):
            raise ValueError("Variable-length digests are not supported for audit payloads.")

    def digest(self, payload: dict[str, Any]) -> str:
        encoded = canonical_json(payload).encode("utf-8")
        if self.salt:
            return hmac.new(self.salt.encode("utf-8"), encoded, self.algorithm).hexdigest()
        return hashlib.new(self.algorithm, encoded).hexdigest()

    def chain_hash(self, *parts: str) -> str:
        return hashlib.new(self.algorithm, "|".join(parts).encode("utf-8")).hexdigest()
