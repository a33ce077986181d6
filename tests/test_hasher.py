"""Unit tests for argon2id password hashing."""

import pytest

from authcore.service.hasher import SecretHasher


@pytest.fixture
def hasher():
    return SecretHasher(time_cost=1, memory_cost=8, parallelism=1)


class TestSecretHasher:
    def test_hash_is_argon2id_and_not_plaintext(self, hasher):
        """Digests are self-describing argon2id strings."""
        digest = hasher.hash("Secret-Pass1")
        assert digest.startswith("$argon2id$")
        assert "Secret-Pass1" not in digest

    def test_same_password_hashes_differently(self, hasher):
        """Each digest carries its own salt."""
        assert hasher.hash("Secret-Pass1") != hasher.hash("Secret-Pass1")

    def test_verify_matches_only_the_original(self, hasher):
        digest = hasher.hash("Secret-Pass1")
        assert hasher.verify(digest, "Secret-Pass1") is True
        assert hasher.verify(digest, "Secret-Pass2") is False

    def test_verify_malformed_digest_returns_false(self, hasher):
        """A corrupt stored digest is a mismatch, not a crash."""
        assert hasher.verify("not-a-digest", "Secret-Pass1") is False

    def test_needs_rehash_after_cost_change(self, hasher):
        digest = hasher.hash("Secret-Pass1")
        assert hasher.needs_rehash(digest) is False

        stronger = SecretHasher(time_cost=2, memory_cost=16, parallelism=1)
        assert stronger.needs_rehash(digest) is True
        # Old digests still verify under the new parameters
        assert stronger.verify(digest, "Secret-Pass1") is True

    def test_needs_rehash_for_malformed_digest(self, hasher):
        assert hasher.needs_rehash("garbage") is True

    def test_burn_never_raises(self, hasher):
        hasher.burn("anything")
        hasher.burn("")
