import datetime

import pytest

import app as api
from memory_store import MemoryStore


@pytest.fixture
def mem(monkeypatch, tmp_path):
    mem = MemoryStore()
    monkeypatch.setattr(api, "store", mem)
    monkeypatch.setattr(api, "DATA_DIR", str(tmp_path))
    monkeypatch.setattr(api, "AUDIT_FILE", str(tmp_path / "audit.log"))
    return mem


@pytest.fixture
def client(mem):
    api.app.config["TESTING"] = True
    return api.app.test_client()


def make_admin(mem, email="root@example.com", password="correct-horse", role="super_admin", **extra):
    fields = {
        "email": email,
        "password_hash": api.ph.hash(password),
        "role": role,
        "first_name": "Ada",
        "last_name": "Root",
    }
    fields.update(extra)
    return mem.insert_admin(None, fields)


def bearer(admin):
    now = int(datetime.datetime.now(datetime.timezone.utc).timestamp())
    token = api.sign_jwt({"aid": admin["id"], "email": admin["email"], "role": admin["role"],
                          "iat": now, "exp": now + 600})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def super_admin(mem):
    return make_admin(mem)


@pytest.fixture
def headers(super_admin):
    return bearer(super_admin)


def make_tree(mem, name="Lee Family", **extra):
    owner = mem.insert_user(None, {"email": f"{name.split()[0].lower()}@example.com", "display_name": name})
    fields = {"name": name, "user_id": owner["id"], "share_link": mem.unique_share_link(None)}
    fields.update(extra)
    return mem.insert_tree(None, fields)
