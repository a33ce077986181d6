import threading
from datetime import timedelta

import pytest

from authcore.storage.errors import ConstraintViolation, RecordNotFound, StoreTimeout
from authcore.storage.memory import MemoryStore
from authcore.storage.models import (
    Credential,
    OneTimeToken,
    RefreshSession,
    Role,
    RoleGrant,
    TokenPurpose,
    User,
    generate_secret,
)


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


def _user(store, email="gail@example.com", username="gail"):
    return store.create_user(User.new(email, username, "Gail"))


class TestUniqueness:
    def test_email_and_username_are_case_insensitive(self, store):
        _user(store)
        with pytest.raises(ConstraintViolation) as exc:
            _user(store, email="GAIL@example.com", username="other")
        assert exc.value.detail["field"] == "email"
        with pytest.raises(ConstraintViolation) as exc:
            _user(store, email="other@example.com", username="GAIL")
        assert exc.value.detail["field"] == "username"

    def test_one_active_grant_per_role(self, store):
        user = _user(store)
        first = store.create_role_grant(RoleGrant.new(user.id, Role.USER))
        with pytest.raises(ConstraintViolation):
            store.create_role_grant(RoleGrant.new(user.id, Role.USER))

        store.deactivate_role_grant(first.id)
        store.create_role_grant(RoleGrant.new(user.id, Role.USER))
        assert len(store.list_role_grants(user.id)) == 1
        assert len(store.list_role_grants(user.id, active_only=False)) == 2

    def test_records_need_an_existing_user(self, store):
        with pytest.raises(ConstraintViolation):
            store.create_credential(Credential.new("missing", "hash"))


class TestConditionalUpdates:
    def test_revoke_twice_reports_not_found(self, store):
        user = _user(store)
        session = store.create_refresh_session(
            RefreshSession.new(user.id, generate_secret(), timedelta(days=1))
        )
        store.revoke_refresh_session(session.id)
        with pytest.raises(RecordNotFound):
            store.revoke_refresh_session(session.id)

    def test_mark_used_twice_reports_not_found(self, store):
        user = _user(store)
        token = store.create_one_time_token(
            OneTimeToken.new(
                user.id, TokenPurpose.EMAIL_VERIFICATION, generate_secret(), timedelta(hours=1)
            )
        )
        store.mark_one_time_token_used(token.id)
        with pytest.raises(RecordNotFound):
            store.mark_one_time_token_used(token.id)

    def test_update_missing_user(self, store):
        with pytest.raises(RecordNotFound):
            store.update_user("missing", verified=True)


class TestAtomic:
    def test_rollback_on_error(self, store):
        with pytest.raises(ConstraintViolation):
            with store.atomic():
                user = _user(store)
                store.create_credential(Credential.new(user.id, "hash"))
                store.create_credential(Credential.new(user.id, "hash"))
        assert store.users == {}
        assert store.credentials == {}

    def test_nested_block_rolls_back_alone(self, store):
        with store.atomic():
            outer = _user(store)
            with pytest.raises(ConstraintViolation):
                with store.atomic():
                    _user(store, email="hank@example.com", username="hank")
                    _user(store, email="hank@example.com", username="hank2")
        assert list(store.users) == [outer.id]

    def test_lock_timeout(self, tmp_path):
        """A caller that cannot get the lock in time sees StoreTimeout."""
        store = MemoryStore(fs_root=str(tmp_path), lock_timeout=0.05)
        entered = threading.Event()
        release = threading.Event()

        def hold():
            with store.atomic():
                entered.set()
                release.wait(5)

        worker = threading.Thread(target=hold)
        worker.start()
        try:
            assert entered.wait(5)
            with pytest.raises(StoreTimeout):
                store.get_user("anything")
        finally:
            release.set()
            worker.join()


class TestPersistence:
    def test_state_survives_reload(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        user = _user(store)
        store.create_credential(Credential.new(user.id, "digest"))
        store.create_role_grant(RoleGrant.new(user.id, Role.MODERATOR))
        session = store.create_refresh_session(
            RefreshSession.new(user.id, generate_secret(), timedelta(days=1))
        )
        store.revoke_refresh_session(session.id)
        token = store.create_one_time_token(
            OneTimeToken.new(
                user.id, TokenPurpose.PASSWORD_RESET, generate_secret(), timedelta(hours=1)
            )
        )

        reloaded = MemoryStore(fs_root=str(tmp_path))
        assert reloaded.get_user(user.id) == user
        assert reloaded.get_credential(user.id).password_hash == "digest"
        assert [g.role for g in reloaded.list_role_grants(user.id)] == [Role.MODERATOR]
        assert reloaded.get_refresh_session_by_hash(session.secret_hash).revoked is True
        reloaded_token = reloaded.get_one_time_token_by_hash(
            TokenPurpose.PASSWORD_RESET, token.secret_hash
        )
        assert reloaded_token == token

    def test_rolled_back_block_is_not_persisted(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        with pytest.raises(ConstraintViolation):
            with store.atomic():
                _user(store)
                _user(store)
        assert MemoryStore(fs_root=str(tmp_path)).users == {}

    def test_failed_persist_rolls_back(self, tmp_path, monkeypatch):
        store = MemoryStore(fs_root=str(tmp_path))
        kept = _user(store)

        def fail():
            raise RuntimeError("failed to persist in-memory state: disk full")

        monkeypatch.setattr(store, "_persist_state", fail)
        with pytest.raises(RuntimeError):
            _user(store, email="ivy@example.com", username="ivy")
        with pytest.raises(RuntimeError):
            with store.atomic():
                store.create_credential(Credential.new(kept.id, "digest"))

        assert list(store.users) == [kept.id]
        assert store.get_credential(kept.id) is None
