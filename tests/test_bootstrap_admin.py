import asyncio
import importlib.util
from pathlib import Path

import pytest

from trackerauth.service.runtime import get_runtime

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"


@pytest.fixture
def bootstrap():
    spec = importlib.util.spec_from_file_location("bootstrap_admin", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_creates_admin(bootstrap, monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    code = bootstrap.main(["--email", "root@tracker.local", "--password", "Sup3r-Secret-Pass"])

    assert code == 0
    user = get_runtime().store.get_user_by_email("root@tracker.local")
    assert user.roles == ["Admin"]


def test_promotes_existing_user(bootstrap):
    runtime = get_runtime()
    result = asyncio.run(
        runtime.auth.register("ops@tracker.local", "OpsPassword1", "Ops", "Person")
    )
    assert result.success

    summary = asyncio.run(bootstrap.bootstrap_admin("ops@tracker.local", "ignored"))

    assert summary["status"] == "promoted"
    assert runtime.store.get_roles(result.user_id) == ["User", "Admin"]
    again = asyncio.run(bootstrap.bootstrap_admin("ops@tracker.local", "ignored"))
    assert again["status"] == "already_admin"


def test_dry_run_changes_nothing(bootstrap):
    summary = asyncio.run(
        bootstrap.bootstrap_admin("new@tracker.local", "Sup3r-Secret-Pass", dry_run=True)
    )
    assert summary["status"] == "dry_run"
    assert get_runtime().store.get_user_by_email("new@tracker.local") is None


@pytest.mark.parametrize("password", ["short", "alllowercaseletters"])
def test_weak_password_is_refused(bootstrap, password):
    assert bootstrap.main(["--password", password]) == 1
