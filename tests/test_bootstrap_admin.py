import importlib.util
from pathlib import Path

import pytest

from authcore.service.errors import ValidationError
from authcore.storage.models import Role

_SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"


@pytest.fixture
def bootstrap():
    spec = importlib.util.spec_from_file_location("bootstrap_admin", _SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module.bootstrap_admin


@pytest.fixture
def credentials(reset_runtime_state):
    return reset_runtime_state.credentials


async def test_creates_admin(bootstrap, credentials):
    result = await bootstrap(credentials, "root@example.com", "root", "Admin-Pass1")
    assert result["status"] == "created"
    assert await credentials.get_user_roles(result["user_id"]) == [Role.USER, Role.ADMIN]


async def test_promotes_then_reports_existing(bootstrap, credentials):
    user = await credentials.register("mo@example.com", "moe", "Mo", "Admin-Pass1")

    promoted = await bootstrap(credentials, "mo@example.com", "ignored", "Admin-Pass1")
    assert promoted == {"user_id": user.id, "email": "mo@example.com", "status": "promoted"}

    again = await bootstrap(credentials, "mo@example.com", "ignored", "Admin-Pass1")
    assert again["status"] == "already_admin"


async def test_dry_run_changes_nothing(bootstrap, credentials):
    result = await bootstrap(credentials, "root@example.com", "root", "Admin-Pass1", dry_run=True)
    assert result["status"] == "dry_run"
    assert credentials.store.get_user_by_email("root@example.com") is None


async def test_weak_password_rejected(bootstrap, credentials):
    with pytest.raises(ValidationError):
        await bootstrap(credentials, "root@example.com", "root", "weak")
