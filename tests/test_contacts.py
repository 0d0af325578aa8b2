from unittest.mock import patch, MagicMock

import app as api


def submit(client, **overrides):
    body = {"firstName": "Sam", "lastName": "Ray", "email": "Sam@Example.com",
            "subject": "Cannot share tree", "message": "The share link 404s."}
    body.update(overrides)
    return client.post("/api/contact", json=body)


def test_public_contact_form_creates_pending_query(client, mem):
    resp = submit(client)
    assert resp.status_code == 201
    contact = resp.get_json()["contact"]
    assert contact["status"] == "pending"
    assert contact["email"] == "sam@example.com"


def test_contact_form_validation(client, mem):
    resp = client.post("/api/contact", json={"firstName": "Sam"})
    assert resp.status_code == 400
    assert resp.get_json()["missing"] == ["email", "subject", "message"]
    assert submit(client, email="not-an-email").status_code == 400


def test_list_and_filter_contacts(client, mem, headers):
    submit(client)
    submit(client, firstName="Alex", subject="Billing question")
    mem.contacts[next(iter(mem.contacts))]["status"] = "read"

    body = client.get("/api/admin/contacted?status=pending", headers=headers).get_json()
    assert [c["firstName"] for c in body["contacts"]] == ["Alex"]

    body = client.get("/api/admin/contacted?search=billing", headers=headers).get_json()
    assert body["pagination"]["total"] == 1


def test_update_contact_status(client, mem, headers):
    contact = submit(client).get_json()["contact"]
    resp = client.put("/api/admin/contacted", json={"contactId": contact["id"], "status": "archived"},
                      headers=headers)
    assert resp.status_code == 200
    assert mem.contacts[contact["id"]]["status"] == "archived"

    assert client.put("/api/admin/contacted", json={"contactId": contact["id"], "status": "lost"},
                      headers=headers).status_code == 400
    assert client.put("/api/admin/contacted", json={"contactId": "ghost", "status": "read"},
                      headers=headers).status_code == 404


def test_reply_sends_mail_then_marks_replied(client, mem, headers):
    contact = submit(client).get_json()["contact"]
    with patch.object(api, "send_reply_email", return_value=True) as send:
        resp = client.post("/api/admin/contacted/reply", json={"contactId": contact["id"], "message": "Fixed!"},
                           headers=headers)
    assert resp.status_code == 200
    send.assert_called_once_with("sam@example.com", "Sam Ray", "Cannot share tree", "Fixed!")
    assert mem.contacts[contact["id"]]["status"] == "replied"


def test_reply_failure_leaves_status_unchanged(client, mem, headers):
    contact = submit(client).get_json()["contact"]
    with patch.object(api, "send_reply_email", return_value=False):
        resp = client.post("/api/admin/contacted/reply", json={"contactId": contact["id"], "message": "Fixed!"},
                           headers=headers)
    assert resp.status_code == 500
    assert mem.contacts[contact["id"]]["status"] == "pending"


def test_reply_to_unknown_contact(client, mem, headers):
    with patch.object(api, "send_reply_email") as send:
        resp = client.post("/api/admin/contacted/reply", json={"contactId": "ghost", "message": "hi"},
                           headers=headers)
    assert resp.status_code == 404
    send.assert_not_called()


def test_send_reply_email_uses_resolved_subject(monkeypatch):
    monkeypatch.setattr(api, "SMTP_USERNAME", "mailer")
    monkeypatch.setattr(api, "SMTP_PASSWORD", "secret")
    server = MagicMock()
    with patch("smtplib.SMTP") as smtp:
        smtp.return_value.__enter__.return_value = server
        assert api.send_reply_email("sam@example.com", "Sam", "Cannot share tree", "Fixed!") is True

    server.starttls.assert_called_once()
    server.login.assert_called_once_with("mailer", "secret")
    msg = server.send_message.call_args[0][0]
    assert msg["Subject"] == "Resolved : Cannot share tree"
    assert msg["To"] == "sam@example.com"


def test_send_reply_email_without_smtp_config(monkeypatch):
    monkeypatch.setattr(api, "SMTP_USERNAME", "")
    with patch("smtplib.SMTP") as smtp:
        assert api.send_reply_email("sam@example.com", "Sam", "s", "m") is False
    smtp.assert_not_called()


def test_send_reply_email_reports_smtp_errors(monkeypatch):
    monkeypatch.setattr(api, "SMTP_USERNAME", "mailer")
    monkeypatch.setattr(api, "SMTP_PASSWORD", "secret")
    with patch("smtplib.SMTP", side_effect=OSError("connection refused")):
        assert api.send_reply_email("sam@example.com", "Sam", "s", "m") is False


def test_contact_fields_must_be_strings(client, mem, headers):
    assert submit(client, subject=42).status_code == 400
    assert submit(client, email=["sam@example.com"]).status_code == 400
    assert mem.contacts == {}

    contact = submit(client).get_json()["contact"]
    resp = client.put("/api/admin/contacted", json={"contactId": contact["id"], "status": ["read"]},
                      headers=headers)
    assert resp.status_code == 400
    resp = client.post("/api/admin/contacted/reply", json={"contactId": contact["id"], "message": 1},
                       headers=headers)
    assert resp.status_code == 400
