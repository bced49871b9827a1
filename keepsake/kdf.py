from __future__ import annotations

import hashlib
from dataclasses import dataclass

from argon2.low_level import Type as _ArgonType, hash_secret_raw as _argon_hash

from .constants import KEY_SIZE


# Fixed Argon2id parameters. The backup header only records salt and IV, so a
# reader must derive with exactly the parameters the writer used.
ARGON_TIME_COST = 3
ARGON_MEMORY_COST_KIB = 64 * 1024  # 64 MiB
ARGON_PARALLELISM = 4

LEGACY_DIGEST_ROUNDS = 250_000


def normalize_passphrase(passphrase: str) -> bytes:
    """Passphrases are displayed in groups; spacing is not part of the secret."""
    return passphrase.replace(" ", "").encode("utf-8")


@dataclass(frozen=True)
class Argon2Kdf:
    time_cost: int = ARGON_TIME_COST
    memory_cost_kib: int = ARGON_MEMORY_COST_KIB
    parallelism: int = ARGON_PARALLELISM

    def derive(self, passphrase: str, salt: bytes) -> bytes:
        return _argon_hash(
            normalize_passphrase(passphrase),
            salt,
            time_cost=self.time_cost,
            memory_cost=self.memory_cost_kib,
            parallelism=self.parallelism,
            hash_len=KEY_SIZE,
            type=_ArgonType.ID,
        )


@dataclass(frozen=True)
class IteratedDigestKdf:
    """Legacy derivation: SHA-512 chained over the passphrase, salted on the first round."""

    rounds: int = LEGACY_DIGEST_ROUNDS

    def derive(self, passphrase: str, salt: bytes) -> bytes:
        data = normalize_passphrase(passphrase)
        digest = hashlib.sha512(salt)
        result = data
        for _ in range(self.rounds):
            digest.update(result)
            digest.update(data)
            result = digest.digest()
            digest = hashlib.sha512()
        return result[:KEY_SIZE]


DEFAULT_KDF = Argon2Kdf()
