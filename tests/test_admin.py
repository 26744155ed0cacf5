import pytest

from extensions import db
from models import Deck, User
from factories import create_deck


@pytest.fixture
def admin_and_member(create_user):
    admin, _ = create_user(username="admin", email="admin@example.com", is_admin=True)
    member, _ = create_user(username="member", email="member@example.com")
    return admin, member


@pytest.mark.parametrize(
    "method, path",
    [
        ("get", "/api/admin/backups"),
        ("get", "/api/admin/backups/decklotus-manual-20240101-000000.json"),
        ("delete", "/api/admin/backups/decklotus-manual-20240101-000000.json"),
        ("post", "/api/admin/backup/create"),
        ("post", "/api/admin/restore-from-file"),
        ("post", "/api/admin/backup-config"),
        ("get", "/api/admin/users"),
        ("put", "/api/admin/users/1"),
        ("delete", "/api/admin/users/1"),
        ("get", "/api/admin/audit-log"),
    ],
)
def test_admin_only_endpoints_reject_members(client, admin_and_member, auth_headers, backup_dir, method, path):
    _, member = admin_and_member
    resp = getattr(client, method)(path, json={}, headers=auth_headers(member))
    assert resp.status_code == 403
    assert resp.get_json()["code"] == "forbidden"


def test_member_backup_is_scoped_to_themselves(client, admin_and_member, auth_headers):
    admin, member = admin_and_member
    create_deck(member, name="Mine")
    create_deck(admin, name="Theirs")
    db.session.commit()

    resp = client.post("/api/admin/backup", headers=auth_headers(member))
    assert resp.status_code == 200
    assert resp.headers["Content-Disposition"].startswith('attachment; filename="decklotus-backup-')
    data = resp.get_json()["data"]
    assert [u["username"] for u in data["users"]] == ["member"]
    assert [d["name"] for d in data["decks"]] == ["Mine"]

    everything = client.post("/api/admin/backup", headers=auth_headers(admin)).get_json()["data"]
    assert {u["username"] for u in everything["users"]} == {"admin", "member"}
    only_member = client.post(f"/api/admin/backup?userId={member.id}", headers=auth_headers(admin)).get_json()
    assert [u["username"] for u in only_member["data"]["users"]] == ["member"]


def test_member_restore_cannot_escalate(client, admin_and_member, auth_headers):
    admin, member = admin_and_member
    create_deck(member, name="Mine")
    db.session.commit()
    headers = auth_headers(member)
    backup = client.post("/api/admin/backup", headers=headers).get_json()
    backup["data"]["users"][0]["is_admin"] = True

    resp = client.post("/api/admin/restore", json={"backup": backup, "overwrite": True}, headers=headers)
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["success"] is True
    assert body["results"]["users"] == 1
    assert body["results"]["decks"] == 1

    db.session.expire_all()
    assert db.session.get(User, member.id).is_admin is False
    assert client.get("/api/admin/users", headers=auth_headers(member)).status_code == 403

    foreign = {"version": "1.0", "data": {"users": [{"id": admin.id, "username": "admin"}]}}
    assert client.post("/api/admin/restore", json={"backup": foreign}, headers=headers).status_code == 400
    assert client.post("/api/admin/restore", json={"backup": "nope"}, headers=headers).status_code == 400


def test_backup_file_endpoints(client, admin_and_member, auth_headers, backup_dir):
    admin, member = admin_and_member
    create_deck(member, name="Mine")
    db.session.commit()
    headers = auth_headers(admin)

    created = client.post("/api/admin/backup/create", headers=headers)
    assert created.status_code == 200
    filename = created.get_json()["backup"]["filename"]

    listed = client.get("/api/admin/backups", headers=headers).get_json()["backups"]
    assert [b["filename"] for b in listed] == [filename]

    download = client.get(f"/api/admin/backups/{filename}", headers=headers)
    assert download.status_code == 200
    assert download.headers["Content-Disposition"] == f'attachment; filename="{filename}"'
    assert {u["username"] for u in download.get_json()["data"]["users"]} == {"admin", "member"}

    Deck.query.delete()
    db.session.commit()
    restored = client.post("/api/admin/restore-from-file", json={"filename": filename}, headers=headers)
    assert restored.status_code == 200
    assert restored.get_json()["results"]["decks"] == 1
    assert Deck.query.filter_by(user_id=member.id).count() == 1

    assert client.post("/api/admin/restore-from-file", json={}, headers=headers).status_code == 400
    assert client.delete(f"/api/admin/backups/{filename}", headers=headers).status_code == 200
    assert client.get(f"/api/admin/backups/{filename}", headers=headers).status_code == 404
    assert client.get("/api/admin/backups/..%2Fconfig.py", headers=headers).status_code in (400, 404)


def test_backup_config_endpoints(client, admin_and_member, auth_headers, backup_dir):
    admin, member = admin_and_member

    current = client.get("/api/admin/backup-config", headers=auth_headers(member))
    assert current.status_code == 200
    assert current.get_json()["frequency"] == "daily"

    updated = client.post(
        "/api/admin/backup-config",
        json={"frequency": "weekly", "retainCount": 4},
        headers=auth_headers(admin),
    )
    assert updated.status_code == 200
    assert updated.get_json()["config"] == {"enabled": True, "frequency": "weekly", "retainCount": 4}

    bad = client.post("/api/admin/backup-config", json={"frequency": "hourly"}, headers=auth_headers(admin))
    assert bad.status_code == 400
    assert bad.get_json()["field"] == "frequency"


def test_user_management(client, admin_and_member, auth_headers):
    admin, member = admin_and_member
    create_deck(member)
    db.session.commit()
    headers = auth_headers(admin)

    users = client.get("/api/admin/users", headers=headers).get_json()["users"]
    assert {u["username"]: u["deck_count"] for u in users} == {"admin": 0, "member": 1}

    demote_self = client.put(f"/api/admin/users/{admin.id}", json={"is_admin": False}, headers=headers)
    assert demote_self.status_code == 400
    assert demote_self.get_json()["error"] == "Cannot remove your own admin status"

    promoted = client.put(f"/api/admin/users/{member.id}", json={"is_admin": True}, headers=headers)
    assert promoted.status_code == 200
    assert promoted.get_json()["user"]["is_admin"] is True

    taken = client.put(f"/api/admin/users/{member.id}", json={"email": "ADMIN@example.com"}, headers=headers)
    assert taken.status_code == 409

    assert client.delete(f"/api/admin/users/{admin.id}", headers=headers).status_code == 400
    assert client.delete(f"/api/admin/users/{member.id}", headers=headers).status_code == 200
    assert client.delete(f"/api/admin/users/{member.id}", headers=headers).status_code == 404
    assert client.put("/api/admin/users/9999", json={}, headers=headers).status_code == 404


def test_audit_log_records_admin_actions(client, admin_and_member, auth_headers, backup_dir):
    admin, member = admin_and_member
    headers = auth_headers(admin)

    client.put(f"/api/admin/users/{member.id}", json={"is_admin": True, "password": "N3w-password!"}, headers=headers)
    client.post("/api/admin/backup-config", json={"retainCount": 3}, headers=headers)
    backup = client.post("/api/admin/backup", headers=headers).get_json()
    client.post("/api/admin/restore", json={"backup": backup}, headers=headers)

    events = client.get("/api/admin/audit-log", headers=headers).get_json()["events"]
    assert [e["action"] for e in events][:3] == ["backup_restored", "backup_config_updated", "user_updated"]
    restored = events[0]
    assert restored["username"] == "admin"
    assert restored["details"]["source"] == "upload"
    assert restored["details"]["overwrite"] is False
    # Passwords are never named in the audit trail.
    assert events[2]["details"] == {"target_user_id": member.id, "fields": ["is_admin"]}

    filtered = client.get("/api/admin/audit-log?action=user_updated&limit=1", headers=headers).get_json()["events"]
    assert [e["action"] for e in filtered] == ["user_updated"]
    by_admin = client.get(f"/api/admin/audit-log?userId={admin.id}", headers=headers).get_json()["events"]
    assert len(by_admin) == 3
    assert client.get(f"/api/admin/audit-log?userId={member.id}", headers=headers).get_json()["events"] == []
    bad = client.get("/api/admin/audit-log?action=dropped_tables", headers=headers)
    assert bad.status_code == 400
