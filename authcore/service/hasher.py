from __future__ import annotations

from argon2 import PasswordHasher, Type
from argon2.exceptions import HashingError, InvalidHash, VerificationError, VerifyMismatchError

from authcore.logging import get_logger
from authcore.service.errors import InternalError

logger = get_logger(__name__)


class SecretHasher:
    """argon2id hashing for passwords.

    Digests are self-describing (algorithm, parameters and salt are encoded
    in the string), so changing the cost settings only affects new digests;
    ``needs_rehash`` reports which stored digests are behind.
    """

    def __init__(
        self, *, time_cost: int = 3, memory_cost: int = 65536, parallelism: int = 4
    ) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        # Verified against when there is no real digest so the slow path still runs
        self._dummy_digest = self._hasher.hash("authcore-dummy-password")

    def hash(self, plaintext: str) -> str:
        try:
            return self._hasher.hash(plaintext)
        except HashingError as exc:
            logger.error("password_hash_failed", error=str(exc))
            raise InternalError("unable to hash secret") from exc

    def verify(self, digest: str, plaintext: str) -> bool:
        try:
            return self._hasher.verify(digest, plaintext)
        except VerifyMismatchError:
            return False
        except InvalidHash:
            logger.warning("password_digest_malformed")
            self.burn(plaintext)
            return False
        except VerificationError:
            return False

    def needs_rehash(self, digest: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(digest)
        except InvalidHash:
            return True

    def burn(self, plaintext: str) -> None:
        """Spend one verification's worth of time and discard the result."""
        try:
            self._hasher.verify(self._dummy_digest, plaintext)
        except VerificationError:
            pass
