import importlib.util

import pytest

from linesauth.service.runtime import (
    _mask_url_password,
    get_runtime,
    reset_runtime_for_tests,
)
from linesauth.storage.memory import MemoryStore
from linesauth.storage.models import Role

from conftest import ROOT


def test_mask_url_password():
    assert (
        _mask_url_password("postgresql://lines:hunter2@db:5432/lines")
        == "postgresql://lines:***@db:5432/lines"
    )
    assert _mask_url_password("postgresql://db/lines") == "postgresql://db/lines"
    assert _mask_url_password(None) is None


def test_runtime_uses_memory_store_in_tests():
    runtime = get_runtime()
    assert isinstance(runtime.store, MemoryStore)
    assert runtime.auth.store is runtime.store
    assert get_runtime() is runtime


def test_reset_refuses_outside_test_mode(monkeypatch):
    monkeypatch.setenv("TEST_MODE", "false")
    with pytest.raises(RuntimeError):
        reset_runtime_for_tests()


def _load_bootstrap_script():
    spec = importlib.util.spec_from_file_location(
        "bootstrap_admin_script", ROOT / "scripts" / "bootstrap_admin.py"
    )
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


async def test_bootstrap_script_creates_then_promotes():
    script = _load_bootstrap_script()

    dry = await script.bootstrap_admin("ops@example.com", "Adm1n!Pass", "Ops", dry_run=True)
    assert dry["status"] == "dry_run"
    assert get_runtime().store.get_user_by_email("ops@example.com") is None

    created = await script.bootstrap_admin("ops@example.com", "Adm1n!Pass", "Ops")
    assert created["status"] == "created"
    promoted = await script.bootstrap_admin("ops@example.com", "N3w!Admin", "Ops")
    assert promoted["status"] == "promoted"
    assert promoted["user_id"] == created["user_id"]
    user = get_runtime().store.get_user(created["user_id"])
    assert user.role == Role.ADMIN.value


def test_bootstrap_script_rejects_weak_password(monkeypatch, capsys):
    script = _load_bootstrap_script()
    monkeypatch.setattr(
        "sys.argv", ["bootstrap_admin.py", "--email", "ops@example.com", "--password", "short"]
    )
    with pytest.raises(SystemExit) as excinfo:
        script.main()
    assert excinfo.value.code == 1
    assert "Password must be at least 8 characters long" in capsys.readouterr().out
    assert get_runtime().store.get_user_by_email("ops@example.com") is None


def test_bootstrap_script_normalizes_email(monkeypatch, capsys):
    script = _load_bootstrap_script()
    monkeypatch.setattr(
        "sys.argv",
        ["bootstrap_admin.py", "--email", " Ops@Example.COM ", "--password", "Adm1n!Pass", "--dry-run"],
    )
    script.main()
    assert "[DRY RUN] Would create admin user: ops@example.com" in capsys.readouterr().out
