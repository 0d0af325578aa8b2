from unittest.mock import patch, MagicMock

import pytest
import requests

import identity
import media


def response(status=200, payload=None, text=""):
    resp = MagicMock()
    resp.status_code = status
    resp.content = b"{}" if payload is not None else b""
    resp.json.return_value = payload
    resp.text = text
    if status >= 400:
        resp.raise_for_status.side_effect = requests.exceptions.HTTPError(response=resp)
    return resp


@pytest.fixture
def configured_identity(monkeypatch):
    monkeypatch.setattr(identity, "IDENTITY_API_BASE", "https://idp.example/v1/projects/demo")
    monkeypatch.setattr(identity, "IDENTITY_API_TOKEN", "tok")


def test_create_account_returns_local_id(configured_identity):
    with patch("requests.post", return_value=response(payload={"localId": "uid-1"})) as post:
        assert identity.create_account("kim@example.com", "pw-123456", "Kim") == "uid-1"
    url = post.call_args[0][0]
    kwargs = post.call_args[1]
    assert url == "https://idp.example/v1/projects/demo/accounts"
    assert kwargs["json"] == {"email": "kim@example.com", "password": "pw-123456", "displayName": "Kim"}
    assert kwargs["headers"]["Authorization"] == "Bearer tok"


def test_create_account_surfaces_provider_message(configured_identity):
    with patch("requests.post", return_value=response(400, {"error": {"message": "EMAIL_EXISTS"}})):
        with pytest.raises(identity.IdentityError, match="EMAIL_EXISTS"):
            identity.create_account("kim@example.com", "pw-123456")


def test_network_errors_become_identity_errors(configured_identity):
    with patch("requests.post", side_effect=requests.exceptions.ConnectTimeout("slow")):
        with pytest.raises(identity.IdentityError):
            identity.delete_account("uid-1")


def test_delete_account_posts_local_id(configured_identity):
    with patch("requests.post", return_value=response(payload={})) as post:
        identity.delete_account("uid-1")
    assert post.call_args[0][0].endswith("/accounts:delete")
    assert post.call_args[1]["json"] == {"localId": "uid-1"}


def test_identity_not_configured(monkeypatch):
    monkeypatch.setattr(identity, "IDENTITY_API_BASE", "")
    with pytest.raises(identity.IdentityNotConfigured):
        identity.create_account("kim@example.com", "pw")


@pytest.fixture
def no_storage(monkeypatch):
    monkeypatch.setattr(media, "R2_ACCOUNT_ID", "")
    monkeypatch.setattr(media, "R2_ACCESS_KEY_ID", "")
    monkeypatch.setattr(media, "R2_SECRET_ACCESS_KEY", "")
    monkeypatch.setattr(media, "UPLOAD_URL", "")


def test_profile_image_must_be_a_small_image(no_storage):
    with pytest.raises(media.ImageRejected):
        media.store_profile_image(b"hello", "notes.txt", "text/plain")
    with pytest.raises(media.ImageRejected):
        media.store_profile_image(b"x" * (media.MAX_IMAGE_BYTES + 1), "big.png", "image/png")


def test_profile_image_without_storage(no_storage):
    with pytest.raises(media.StorageNotConfigured):
        media.store_profile_image(b"png", "a.png", "image/png")


def test_profile_image_via_upload_service(no_storage, monkeypatch):
    monkeypatch.setattr(media, "UPLOAD_URL", "https://upload.example/api/upload")
    with patch("requests.post", return_value=response(payload={"path": "/uploads/a.png"})) as post:
        # content type is guessed from the file name
        assert media.store_profile_image(b"png", "a.png") == "/uploads/a.png"
    name, data, content_type = post.call_args[1]["files"]["file"]
    assert name.endswith(".png")
    assert data == b"png"
    assert content_type == "image/png"


def test_profile_image_upload_service_failure(no_storage, monkeypatch):
    monkeypatch.setattr(media, "UPLOAD_URL", "https://upload.example/api/upload")
    with patch("requests.post", return_value=response(500, text="boom")):
        with pytest.raises(requests.exceptions.HTTPError):
            media.store_profile_image(b"png", "a.png", "image/png")


def test_profile_image_to_r2(monkeypatch):
    monkeypatch.setattr(media, "R2_ACCOUNT_ID", "acct")
    monkeypatch.setattr(media, "R2_ACCESS_KEY_ID", "key")
    monkeypatch.setattr(media, "R2_SECRET_ACCESS_KEY", "secret")
    monkeypatch.setattr(media, "PUBLIC_MEDIA_BASE", "https://media.example/")
    s3 = MagicMock()
    with patch.object(media, "s3_client", return_value=s3):
        url = media.store_profile_image(b"png", "a.PNG", "image/png")

    kwargs = s3.put_object.call_args[1]
    assert kwargs["Bucket"] == media.S3_BUCKET
    assert kwargs["Key"].startswith("members/") and kwargs["Key"].endswith(".png")
    assert kwargs["ContentType"] == "image/png"
    assert url == f"https://media.example/{kwargs['Key']}"


def test_s3_client_lists_missing_settings(monkeypatch):
    monkeypatch.setattr(media, "R2_ACCOUNT_ID", "")
    monkeypatch.setattr(media, "R2_ACCESS_KEY_ID", "key")
    monkeypatch.setattr(media, "R2_SECRET_ACCESS_KEY", "")
    with pytest.raises(media.StorageNotConfigured, match="R2_ACCOUNT_ID, R2_SECRET_ACCESS_KEY"):
        media.s3_client()


def test_verify_id_token_returns_uid(configured_identity):
    with patch("requests.post", return_value=response(payload={"users": [{"localId": "uid-7"}]})) as post:
        assert identity.verify_id_token("id-token") == "uid-7"
    assert post.call_args[0][0].endswith("/accounts:lookup")
    assert post.call_args[1]["json"] == {"idToken": "id-token"}

    with patch("requests.post", return_value=response(payload={"users": []})):
        with pytest.raises(identity.IdentityError):
            identity.verify_id_token("id-token")


def test_s3_client_points_at_r2(monkeypatch):
    from botocore.config import Config

    monkeypatch.setattr(media, "R2_ACCOUNT_ID", "acct")
    monkeypatch.setattr(media, "R2_ACCESS_KEY_ID", "key")
    monkeypatch.setattr(media, "R2_SECRET_ACCESS_KEY", "secret")
    with patch("boto3.client") as client:
        media.s3_client()
    kwargs = client.call_args[1]
    assert kwargs["endpoint_url"] == "https://acct.r2.cloudflarestorage.com"
    assert isinstance(kwargs["config"], Config)
    assert kwargs["config"].signature_version == "s3v4"
