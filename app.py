import os
import time
import json
import logging
import datetime
from typing import Optional, List, Dict, Any, Tuple
import smtplib
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart

from flask import Flask, request, jsonify, make_response
from flask_cors import CORS

from argon2 import PasswordHasher
import jwt

import store
import listing
import relations
import media
import identity

# ---------------- Setup ----------------
logging.basicConfig(level=logging.INFO)
log = logging.getLogger("familytree-admin")


def env_list(name: str) -> List[str]:
    raw = os.getenv(name, "")
    return [x.strip() for x in raw.split(",") if x.strip()]


ALLOWED_ORIGINS = env_list("ALLOWED_ORIGINS") or ["http://localhost:3000"]
PORT = int(os.getenv("PORT", "8080"))
DATA_DIR = os.getenv("DATA_DIR", "/data")
AUDIT_FILE = os.path.join(DATA_DIR, "audit.log")

app = Flask(__name__)

CORS(app,
     origins=ALLOWED_ORIGINS,
     allow_headers=["Content-Type", "Authorization"],
     methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
     supports_credentials=True
)

# Profile images are capped at 5MB; leave room for the rest of the form.
app.config["MAX_CONTENT_LENGTH"] = 16 * 1024 * 1024

# Email Configuration for contact replies
SMTP_HOST = os.getenv("SMTP_HOST", "smtp.gmail.com")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USERNAME = os.getenv("SMTP_USERNAME", "")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD", "")
SMTP_FROM_EMAIL = os.getenv("SMTP_FROM_EMAIL", "noreply@familytree.app")
SMTP_FROM_NAME = os.getenv("SMTP_FROM_NAME", "Family Tree Team")

# Auth / Session
JWT_SECRET = os.getenv("JWT_SECRET", "temp-dev-secret-change-in-production")
JWT_ALG = "HS256"
JWT_TTL_MIN = int(os.getenv("JWT_TTL_MIN", str(60 * 24)))  # 1 day
SESSION_COOKIE = "admin_token"
COOKIE_DOMAIN = os.getenv("COOKIE_DOMAIN", None)
_cookie_secure_env = os.getenv("COOKIE_SECURE")
if _cookie_secure_env is None:
    COOKIE_SECURE = None  # auto-detect based on request context
else:
    COOKIE_SECURE = _cookie_secure_env.strip().lower() not in {"false", "0", "no"}

ph = PasswordHasher()
MIN_PASSWORD_LENGTH = 8

ADMIN_ROLES = {"admin", "super_admin"}
USER_ROLES = {"user", "moderator", "admin", "super_admin"}
PROVIDERS = {"google", "facebook", "email"}
GENDERS = {"male", "female", "other"}
CONTACT_STATUSES = {"pending", "read", "replied", "archived"}
RELATIONSHIP_TYPES = {"parent", "child", "spouse", "sibling", "grandparent", "grandchild", "cousin"}
CONTENT_TYPES = {"tree", "member", "profile", "comment"}
REPORT_REASONS = {"inappropriate_content", "misinformation", "spam", "harassment", "copyright"}
MODERATION_STATUSES = {"pending", "approved", "rejected", "flagged"}

MEMBER_SORT_FIELDS = {
    "createdAt": "m.created_at",
    "updatedAt": "m.updated_at",
    "firstName": "m.first_name",
    "lastName": "m.last_name",
    "birthDate": "m.birth_date",
    "deathDate": "m.death_date",
    "gender": "m.gender",
}


def audit(event: str, **fields):
    try:
        os.makedirs(DATA_DIR, exist_ok=True)
        with open(AUDIT_FILE, "a", encoding="utf-8") as f:
            rec = {"ts": int(time.time()), "event": event, **fields}
            f.write(json.dumps(rec, default=str) + "\n")
    except Exception:
        log.exception("audit write failed")


# ---------------- Auth helpers ----------------
def sign_jwt(payload: Dict[str, Any]) -> str:
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALG)


def verify_jwt(token: str) -> Optional[Dict[str, Any]]:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    except Exception:
        return None


def _should_use_secure_cookies() -> bool:
    """Determine whether the session cookie must be marked secure."""
    if COOKIE_SECURE is not None:
        return COOKIE_SECURE

    proto = (request.headers.get("X-Forwarded-Proto") or "").split(",")[0].strip().lower()
    if proto:
        return proto == "https"

    if request.is_secure:
        return True

    host = (request.host or "").split(":")[0]
    return host not in {"localhost", "127.0.0.1"}


def _session_cookie_kwargs() -> Dict[str, Any]:
    secure = _should_use_secure_cookies()
    # SameSite=None is only accepted on Secure cookies
    samesite = "None" if secure else "Lax"
    return {
        "httponly": True,
        "secure": secure,
        "samesite": samesite,
        "domain": COOKIE_DOMAIN if COOKIE_DOMAIN else None,
        "path": "/",
    }


def set_session_cookie(resp, token: str):
    kwargs = _session_cookie_kwargs()
    resp.set_cookie(
        SESSION_COOKIE,
        token,
        max_age=JWT_TTL_MIN * 60,
        **kwargs,
    )


def clear_session_cookie(resp):
    kwargs = _session_cookie_kwargs()
    resp.set_cookie(
        SESSION_COOKIE,
        "",
        expires=0,
        **kwargs,
    )


def current_admin() -> Optional[Dict[str, Any]]:
    token = request.cookies.get(SESSION_COOKIE)

    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]

    if not token:
        return None
    payload = verify_jwt(token)
    if not payload or "aid" not in payload:
        return None
    with store.connection() as con:
        admin = store.get_admin(con, payload["aid"])
    # re-checked on every request so deactivation ends existing sessions
    if not admin or not admin["is_active"]:
        return None
    return admin


def require_admin():
    try:
        admin = current_admin()
    except Exception:
        log.exception("Failed to load admin session")
        return None, make_response(jsonify({"ok": False, "error": "Failed to verify session"}), 500)
    if not admin:
        return None, make_response(jsonify({"ok": False, "error": "Unauthorized"}), 401)
    return admin, None


def require_super_admin():
    admin, err = require_admin()
    if err:
        return None, err
    if admin["role"] != "super_admin":
        return None, make_response(jsonify({"ok": False, "error": "Forbidden"}), 403)
    return admin, None


# ---------------- Request helpers ----------------
def is_blank(value) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict)):
        return not value
    return False


def json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def str_field(data: Dict[str, Any], key: str, strip: bool = True) -> str:
    """String value of a body field. Raises ValueError when the value is not a string."""
    value = data.get(key)
    if not isinstance(value, str):
        raise ValueError(f"{key} must be a string")
    return value.strip() if strip else value


def optional_str(data: Dict[str, Any], key: str) -> Optional[str]:
    if data.get(key) is None:
        return None
    return str_field(data, key) or None


def choice_field(data: Dict[str, Any], key: str, choices, label: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or value not in choices:
        raise ValueError(f"Invalid {label}: {value}")
    return value


def bad_request(e: Exception):
    return jsonify({"ok": False, "error": str(e)}), 400


def missing_fields(data: Dict[str, Any], *names: str) -> List[str]:
    return [name for name in names if is_blank(data.get(name))]


def missing_response(missing: List[str]):
    return jsonify({
        "ok": False,
        "error": "Missing required fields: " + ", ".join(missing),
        "missing": missing,
    }), 400


def as_bool(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"true", "1", "yes", "on"}
    return bool(value)


def date_arg(name: str):
    raw = (request.args.get(name) or "").strip()
    if not raw:
        return None
    return listing.day_range(raw)


def optional_day(value):
    if is_blank(value):
        return None
    return listing.parse_day(str(value))


def iso(value):
    if isinstance(value, (datetime.date, datetime.datetime)):
        return value.isoformat()
    return value


def list_response(key: str, items: List[Dict[str, Any]], page: int, limit: int, total: int,
                  columns: List[Tuple[str, str]]):
    if request.args.get("format") == "csv":
        resp = make_response(listing.to_csv(items, columns))
        resp.headers["Content-Type"] = "text/csv; charset=utf-8"
        resp.headers["Content-Disposition"] = f'attachment; filename="{key}.csv"'
        return resp
    return jsonify({"ok": True, key: items, "pagination": listing.pagination(page, limit, total)})


# ---------------- Email ----------------
def send_reply_email(to_email: str, name: str, subject: str, message: str) -> bool:
    """Send an admin's answer to a contact-form query"""
    if not SMTP_USERNAME or not SMTP_PASSWORD:
        log.warning(f"SMTP not configured, skipping reply to {to_email}")
        return False

    try:
        mail_subject = f"Resolved : {subject}"
        greeting = f"Hi {name}," if name else "Hello,"
        paragraphs = "".join(
            f'<p style="color: #4B5563; font-size: 16px; line-height: 1.5;">{line}</p>'
            for line in message.splitlines() if line.strip()
        )

        html_body = f"""
        <html>
        <body style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
            <div style="background: #F8FAFC; padding: 20px; border-radius: 8px;">
                <h2 style="color: #1F2937; margin-top: 0;">{greeting}</h2>
                {paragraphs}
            </div>
            <p style="color: #6B7280; font-size: 12px; margin-top: 20px;">
                You are receiving this email because you contacted the {SMTP_FROM_NAME}
                about "{subject}".
            </p>
        </body>
        </html>
        """

        text_body = f"""
{greeting}

{message}

{SMTP_FROM_NAME}
        """

        msg = MIMEMultipart('alternative')
        msg['Subject'] = mail_subject
        msg['From'] = f"{SMTP_FROM_NAME} <{SMTP_FROM_EMAIL}>"
        msg['To'] = to_email

        msg.attach(MIMEText(text_body, 'plain'))
        msg.attach(MIMEText(html_body, 'html'))

        with smtplib.SMTP(SMTP_HOST, SMTP_PORT) as server:
            server.starttls()
            server.login(SMTP_USERNAME, SMTP_PASSWORD)
            server.send_message(msg)

        log.info(f"Reply email sent successfully to {to_email}")
        return True

    except Exception as e:
        log.error(f"Failed to send reply email to {to_email}: {str(e)}")
        return False


# ---------------- Payloads ----------------
def admin_to_payload(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(row["id"]),
        "email": row["email"],
        "firstName": row["first_name"],
        "lastName": row["last_name"],
        "role": row["role"],
        "isActive": row["is_active"],
        "lastLogin": iso(row.get("last_login")),
        "createdAt": iso(row.get("created_at")),
        "updatedAt": iso(row.get("updated_at")),
    }


def user_to_payload(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(row["id"]),
        "uid": row.get("uid"),
        "email": row["email"],
        "displayName": row.get("display_name"),
        "photoURL": row.get("photo_url"),
        "provider": row.get("provider"),
        "emailVerified": row.get("email_verified", False),
        "onboardingComplete": row.get("onboarding_complete", False),
        "profileComplete": row.get("profile_complete", False),
        "phoneNumber": row.get("phone_number"),
        "role": row.get("role"),
        "isActive": row.get("is_active", True),
        "profile": row.get("profile") or {},
        "address": row.get("address") or {},
        "createdAt": iso(row.get("created_at")),
        "updatedAt": iso(row.get("updated_at")),
    }


def tree_to_payload(row: Dict[str, Any]) -> Dict[str, Any]:
    owner = None
    if row.get("user_id"):
        owner = {"id": str(row["user_id"]), "name": row.get("owner_name"), "email": row.get("owner_email")}
    return {
        "id": str(row["id"]),
        "name": row["name"],
        "description": row.get("description"),
        "userId": str(row["user_id"]) if row.get("user_id") else None,
        "owner": owner,
        "isPublic": row.get("is_public", False),
        "shareLink": row.get("share_link"),
        "memberCount": row.get("member_count", 0),
        "createdAt": iso(row.get("created_at")),
        "updatedAt": iso(row.get("updated_at")),
    }


def _ref(value) -> Optional[Dict[str, Any]]:
    if not value:
        return None
    return {"id": str(value["id"]), "name": value.get("name")}


def member_to_payload(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(row["id"]),
        "firstName": row["first_name"],
        "lastName": row["last_name"],
        "gender": row["gender"],
        "birthDate": iso(row.get("birth_date")),
        "deathDate": iso(row.get("death_date")),
        "bio": row.get("bio"),
        "profileImage": row.get("profile_image_url"),
        "familyTreeId": str(row["tree_id"]),
        "tree": {"id": str(row["tree_id"]), "name": row.get("tree_name")},
        "parents": [_ref(p) for p in row.get("parents") or []],
        "children": [_ref(c) for c in row.get("children") or []],
        "spouse": _ref(row.get("spouse")),
        "createdAt": iso(row.get("created_at")),
        "updatedAt": iso(row.get("updated_at")),
    }


def relationship_to_payload(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(row["id"]),
        "member1Id": str(row["member1_id"]),
        "member2Id": str(row["member2_id"]),
        "member1Name": row.get("member1_name"),
        "member2Name": row.get("member2_name"),
        "familyTreeId": str(row["tree_id"]),
        "familyTreeName": row.get("tree_name"),
        "relationshipType": row["relationship_type"],
        "createdAt": iso(row.get("created_at")),
        "updatedAt": iso(row.get("updated_at")),
    }


def contact_to_payload(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(row["id"]),
        "firstName": row["first_name"],
        "lastName": row.get("last_name"),
        "email": row["email"],
        "subject": row["subject"],
        "message": row["message"],
        "status": row["status"],
        "createdAt": iso(row.get("created_at")),
        "updatedAt": iso(row.get("updated_at")),
    }


def moderation_to_payload(row: Dict[str, Any]) -> Dict[str, Any]:
    reported_by = None
    if row.get("reported_by"):
        reported_by = {
            "id": str(row["reported_by"]),
            "displayName": row.get("reporter_name"),
            "email": row.get("reporter_email"),
        }
    return {
        "id": str(row["id"]),
        "contentType": row["content_type"],
        "contentId": row["content_id"],
        "title": row["title"],
        "description": row.get("description"),
        "reportedBy": reported_by,
        "reportReason": row["report_reason"],
        "status": row["status"],
        "moderatorNotes": row.get("moderator_notes"),
        "moderatedBy": str(row["moderated_by"]) if row.get("moderated_by") else None,
        "createdAt": iso(row.get("created_at")),
        "updatedAt": iso(row.get("updated_at")),
    }


ADMIN_CSV = [("id", "ID"), ("email", "Email"), ("firstName", "First Name"), ("lastName", "Last Name"),
             ("role", "Role"), ("isActive", "Active"), ("lastLogin", "Last Login"), ("createdAt", "Created At")]
USER_CSV = [("id", "ID"), ("uid", "UID"), ("email", "Email"), ("displayName", "Display Name"),
            ("provider", "Provider"), ("emailVerified", "Email Verified"),
            ("onboardingComplete", "Onboarding Complete"), ("role", "Role"), ("isActive", "Active"),
            ("phoneNumber", "Phone"), ("address", "Address"), ("createdAt", "Created At")]
TREE_CSV = [("id", "ID"), ("name", "Name"), ("description", "Description"), ("owner", "Owner"),
            ("isPublic", "Public"), ("memberCount", "Members"), ("shareLink", "Share Link"),
            ("createdAt", "Created At"), ("updatedAt", "Updated At")]
MEMBER_CSV = [("id", "ID"), ("firstName", "First Name"), ("lastName", "Last Name"), ("gender", "Gender"),
              ("birthDate", "Birth Date"), ("deathDate", "Death Date"), ("familyTreeId", "Family Tree"),
              ("parents", "Parents"), ("children", "Children"), ("spouse", "Spouse"),
              ("createdAt", "Created At"), ("updatedAt", "Updated At")]
RELATIONSHIP_CSV = [("id", "ID"), ("member1Name", "Member 1"), ("member2Name", "Member 2"),
                    ("relationshipType", "Relationship"), ("familyTreeName", "Family Tree"),
                    ("createdAt", "Created At")]
CONTACT_CSV = [("id", "ID"), ("firstName", "First Name"), ("lastName", "Last Name"), ("email", "Email"),
               ("subject", "Subject"), ("message", "Message"), ("status", "Status"), ("createdAt", "Created At")]
MODERATION_CSV = [("id", "ID"), ("contentType", "Content Type"), ("contentId", "Content ID"),
                  ("title", "Title"), ("reportReason", "Reason"), ("status", "Status"),
                  ("moderatorNotes", "Notes"), ("createdAt", "Created At")]


# ---------------- Auth ----------------
@app.post("/api/admin/auth/login")
def admin_login():
    data = json_body()
    email = data.get("email")
    password = data.get("password")
    if not isinstance(email, str) or not isinstance(password, str):
        return jsonify({"ok": False, "error": "Missing email or password"}), 400
    email = email.strip().lower()
    if not email or not password:
        return jsonify({"ok": False, "error": "Missing email or password"}), 400

    try:
        with store.connection() as con:
            row = store.find_admin_by_email(con, email)
            if not row or not row["is_active"]:
                return jsonify({"ok": False, "error": "Invalid credentials"}), 401

            try:
                ph.verify(row["password_hash"], password)
            except Exception:
                return jsonify({"ok": False, "error": "Invalid credentials"}), 401

            store.record_login(con, row["id"])

        now = int(datetime.datetime.now(datetime.timezone.utc).timestamp())
        token = sign_jwt({
            "aid": str(row["id"]),
            "email": row["email"],
            "role": row["role"],
            "iat": now,
            "exp": now + JWT_TTL_MIN * 60,
        })

        resp = make_response(jsonify({"ok": True, "token": token, "admin": admin_to_payload(row)}))
        set_session_cookie(resp, token)
        audit("admin_login", admin=str(row["id"]))
        return resp
    except Exception:
        log.exception("Admin login failed")
        return jsonify({"ok": False, "error": "Login failed"}), 500


@app.get("/api/admin/auth/me")
def admin_me():
    admin, err = require_admin()
    if err:
        return err
    return jsonify({"ok": True, "admin": admin_to_payload(admin)})


@app.post("/api/admin/auth/logout")
def admin_logout():
    admin, err = require_admin()
    if err:
        return err
    resp = make_response(jsonify({"ok": True}))
    clear_session_cookie(resp)
    audit("admin_logout", admin=str(admin["id"]))
    return resp


@app.post("/api/admin/auth/verify-admin")
def verify_admin_user():
    """Check an end-user ID token belongs to a user with an admin role"""
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer ") or not auth.split(" ", 1)[1].strip():
        return jsonify({"ok": False, "error": "Missing or invalid authorization header"}), 401

    try:
        uid = identity.verify_id_token(auth.split(" ", 1)[1].strip())
    except identity.IdentityError as e:
        log.warning(f"ID token rejected: {e}")
        return jsonify({"ok": False, "error": str(e)}), 401

    try:
        with store.connection() as con:
            user = store.find_user_by_uid(con, uid)
        if not user:
            return jsonify({"ok": False, "error": "User not found"}), 404
        if user["role"] not in ("admin", "super_admin"):
            return jsonify({"ok": False, "error": "Insufficient permissions"}), 403
        return jsonify({"ok": True, "user": {
            "uid": user["uid"],
            "email": user["email"],
            "displayName": user.get("display_name"),
            "role": user["role"],
        }})
    except Exception:
        log.exception("Failed to verify admin user")
        return jsonify({"ok": False, "error": "Failed to verify user"}), 500


# ---------------- Admins ----------------
@app.get("/api/admin/admins")
def admin_list_admins():
    admin, err = require_admin()
    if err:
        return err

    page, limit, offset = listing.page_args(request.args)
    try:
        with store.connection() as con:
            rows, total = store.list_admins(
                con,
                search=request.args.get("search"),
                role=request.args.get("role") or None,
                is_active=listing.bool_arg(request.args.get("isActive")),
                limit=limit,
                offset=offset,
            )
        admins = [admin_to_payload(r) for r in rows]
        return list_response("admins", admins, page, limit, total, ADMIN_CSV)
    except Exception:
        log.exception("Failed to list admins")
        return jsonify({"ok": False, "error": "Failed to fetch admins"}), 500


@app.post("/api/admin/admins")
def admin_create_admin():
    admin, err = require_super_admin()
    if err:
        return err

    data = json_body()
    # older clients post the plain password as passwordHash
    if is_blank(data.get("password")) and not is_blank(data.get("passwordHash")):
        data["password"] = data["passwordHash"]
    missing = missing_fields(data, "email", "password", "firstName", "lastName", "role")
    if missing:
        return missing_response(missing)

    try:
        email = str_field(data, "email").lower()
        role = choice_field(data, "role", ADMIN_ROLES, "role")
        password = str_field(data, "password", strip=False)
        first_name = str_field(data, "firstName")
        last_name = str_field(data, "lastName")
    except ValueError as e:
        return bad_request(e)
    if len(password) < MIN_PASSWORD_LENGTH:
        return jsonify({"ok": False, "error": f"Password must be at least {MIN_PASSWORD_LENGTH} characters"}), 400

    try:
        with store.connection() as con:
            if store.find_admin_by_email(con, email):
                return jsonify({"ok": False, "error": "An admin with this email already exists"}), 400
            row = store.insert_admin(con, {
                "email": email,
                "password_hash": ph.hash(password),
                "role": role,
                "first_name": first_name,
                "last_name": last_name,
                "is_active": as_bool(data.get("isActive", True)),
            })
        audit("admin_created", admin=str(admin["id"]), target=str(row["id"]), role=role)
        return jsonify({"ok": True, "admin": admin_to_payload(row)}), 201
    except Exception:
        log.exception("Failed to create admin")
        return jsonify({"ok": False, "error": "Failed to create admin"}), 500


@app.put("/api/admin/admins")
def admin_update_admin():
    admin, err = require_super_admin()
    if err:
        return err

    data = json_body()
    admin_id = str(data.get("adminId") or data.get("id") or "").strip()
    if not admin_id:
        return missing_response(["adminId"])

    fields: Dict[str, Any] = {}
    try:
        if "email" in data:
            if is_blank(data["email"]):
                return jsonify({"ok": False, "error": "Email cannot be empty"}), 400
            fields["email"] = str_field(data, "email").lower()
        for key, column in (("firstName", "first_name"), ("lastName", "last_name")):
            if key in data:
                if is_blank(data[key]):
                    return jsonify({"ok": False, "error": f"{key} cannot be empty"}), 400
                fields[column] = str_field(data, key)
        if "role" in data:
            fields["role"] = choice_field(data, "role", ADMIN_ROLES, "role")
        if not is_blank(data.get("password")):
            password = str_field(data, "password", strip=False)
            if len(password) < MIN_PASSWORD_LENGTH:
                return jsonify({"ok": False, "error": f"Password must be at least {MIN_PASSWORD_LENGTH} characters"}), 400
            fields["password_hash"] = ph.hash(password)
    except ValueError as e:
        return bad_request(e)
    if "isActive" in data:
        fields["is_active"] = as_bool(data["isActive"])
        if not fields["is_active"] and admin_id == str(admin["id"]):
            return jsonify({"ok": False, "error": "You cannot deactivate your own account"}), 400
    if not fields:
        return jsonify({"ok": False, "error": "No fields to update"}), 400

    try:
        with store.connection() as con:
            if not store.get_admin(con, admin_id):
                return jsonify({"ok": False, "error": "Admin not found"}), 404
            if "email" in fields:
                other = store.find_admin_by_email(con, fields["email"])
                if other and str(other["id"]) != admin_id:
                    return jsonify({"ok": False, "error": "An admin with this email already exists"}), 400
            row = store.update_admin(con, admin_id, fields)
        audit("admin_updated", admin=str(admin["id"]), target=admin_id,
              fields=sorted(k for k in fields if k != "password_hash"))
        return jsonify({"ok": True, "admin": admin_to_payload(row)})
    except Exception:
        log.exception("Failed to update admin")
        return jsonify({"ok": False, "error": "Failed to update admin"}), 500


@app.delete("/api/admin/admins")
def admin_deactivate_admin():
    admin, err = require_super_admin()
    if err:
        return err

    admin_id = (request.args.get("adminId") or "").strip()
    if not admin_id:
        return missing_response(["adminId"])
    if admin_id == str(admin["id"]):
        return jsonify({"ok": False, "error": "You cannot deactivate your own account"}), 400

    try:
        with store.connection() as con:
            row = store.update_admin(con, admin_id, {"is_active": False})
        if not row:
            return jsonify({"ok": False, "error": "Admin not found"}), 404
        audit("admin_deactivated", admin=str(admin["id"]), target=admin_id)
        return jsonify({"ok": True, "admin": admin_to_payload(row)})
    except Exception:
        log.exception("Failed to deactivate admin")
        return jsonify({"ok": False, "error": "Failed to delete admin"}), 500


# ---------------- Users ----------------
USER_FLAGS = (
    ("isActive", "is_active"),
    ("emailVerified", "email_verified"),
    ("onboardingComplete", "onboarding_complete"),
    ("profileComplete", "profile_complete"),
)


def user_fields(data: Dict[str, Any]) -> Dict[str, Any]:
    """Map optional user keys to columns. Raises ValueError on bad values."""
    fields: Dict[str, Any] = {}
    for key, column in (("displayName", "display_name"), ("phoneNumber", "phone_number"), ("photoURL", "photo_url")):
        if key in data:
            fields[column] = optional_str(data, key)
    if "role" in data:
        fields["role"] = choice_field(data, "role", USER_ROLES, "role")
    if "provider" in data:
        fields["provider"] = choice_field(data, "provider", PROVIDERS, "provider")
    for key, column in USER_FLAGS:
        if key in data:
            fields[column] = as_bool(data[key])
    for key in ("profile", "address"):
        if key in data:
            if data[key] is not None and not isinstance(data[key], dict):
                raise ValueError(f"{key} must be an object")
            fields[key] = data[key] or {}
    return fields


@app.get("/api/admin/users")
def admin_list_users():
    admin, err = require_admin()
    if err:
        return err

    page, limit, offset = listing.page_args(request.args)
    try:
        with store.connection() as con:
            rows, total = store.list_users(
                con,
                search=request.args.get("search"),
                provider=request.args.get("provider") or None,
                email_verified=listing.bool_arg(request.args.get("emailVerified")),
                onboarding_complete=listing.bool_arg(request.args.get("onboardingComplete")),
                role=request.args.get("role") or None,
                is_active=listing.bool_arg(request.args.get("isActive")),
                limit=limit,
                offset=offset,
            )
        users = [user_to_payload(r) for r in rows]
        return list_response("users", users, page, limit, total, USER_CSV)
    except Exception:
        log.exception("Failed to list users")
        return jsonify({"ok": False, "error": "Failed to fetch users"}), 500


@app.post("/api/admin/users")
def admin_create_user():
    admin, err = require_admin()
    if err:
        return err

    data = json_body()
    missing = missing_fields(data, "email", "password")
    if missing:
        return missing_response(missing)

    try:
        email = str_field(data, "email").lower()
        password = str_field(data, "password", strip=False)
        fields = user_fields(data)
    except ValueError as e:
        return bad_request(e)
    fields.update({"email": email, "provider": "email"})

    try:
        with store.connection() as con:
            if store.find_user_by_email(con, email):
                return jsonify({"ok": False, "error": "A user with this email already exists"}), 400

        try:
            uid = identity.create_account(email, password, fields.get("display_name"))
        except identity.IdentityError as e:
            log.warning(f"Identity provider refused account for {email}: {e}")
            return jsonify({"ok": False, "error": f"Failed to create identity account: {e}"}), 502

        fields["uid"] = uid
        try:
            with store.connection() as con:
                row = store.insert_user(con, fields)
        except Exception:
            log.exception(f"Failed to store user {email}; removing identity account {uid}")
            try:
                identity.delete_account(uid)
            except identity.IdentityError:
                log.exception(f"Could not remove identity account {uid}; it is now orphaned")
            return jsonify({"ok": False, "error": "Failed to create user"}), 500

        audit("user_created", admin=str(admin["id"]), user=str(row["id"]), uid=uid)
        return jsonify({"ok": True, "user": user_to_payload(row)}), 201
    except Exception:
        log.exception("Failed to create user")
        return jsonify({"ok": False, "error": "Failed to create user"}), 500


@app.put("/api/admin/users")
def admin_update_user():
    admin, err = require_admin()
    if err:
        return err

    data = json_body()
    user_id = str(data.get("userId") or data.get("id") or "").strip()
    if not user_id:
        return missing_response(["userId"])

    if "email" in data and is_blank(data["email"]):
        return jsonify({"ok": False, "error": "Email cannot be empty"}), 400
    try:
        fields = user_fields(data)
        if "email" in data:
            fields["email"] = str_field(data, "email").lower()
    except ValueError as e:
        return bad_request(e)
    if not fields:
        return jsonify({"ok": False, "error": "No fields to update"}), 400

    try:
        with store.connection() as con:
            if not store.get_user(con, user_id):
                return jsonify({"ok": False, "error": "User not found"}), 404
            if "email" in fields:
                other = store.find_user_by_email(con, fields["email"])
                if other and str(other["id"]) != user_id:
                    return jsonify({"ok": False, "error": "A user with this email already exists"}), 400
            row = store.update_user(con, user_id, fields)
        audit("user_updated", admin=str(admin["id"]), user=user_id, fields=sorted(fields))
        return jsonify({"ok": True, "user": user_to_payload(row)})
    except Exception:
        log.exception("Failed to update user")
        return jsonify({"ok": False, "error": "Failed to update user"}), 500


@app.delete("/api/admin/users")
def admin_delete_user():
    admin, err = require_admin()
    if err:
        return err

    user_id = (request.args.get("userId") or "").strip()
    if not user_id:
        return missing_response(["userId"])

    try:
        with store.connection() as con:
            row = store.get_user(con, user_id)
        if not row:
            return jsonify({"ok": False, "error": "User not found"}), 404

        uid = row.get("uid")
        if uid:
            try:
                identity.delete_account(uid)
            except identity.IdentityError as e:
                log.warning(f"Identity provider refused to delete {uid}: {e}")
                return jsonify({"ok": False, "error": f"Failed to delete identity account: {e}"}), 502

        try:
            with store.connection() as con:
                store.delete_user(con, user_id)
        except Exception:
            log.exception(f"Identity account {uid} deleted but user row {user_id} remains")
            return jsonify({"ok": False, "error": "Failed to delete user"}), 500

        audit("user_deleted", admin=str(admin["id"]), user=user_id, uid=uid)
        return jsonify({"ok": True})
    except Exception:
        log.exception("Failed to delete user")
        return jsonify({"ok": False, "error": "Failed to delete user"}), 500


# ---------------- Family trees ----------------
@app.get("/api/admin/trees")
def admin_list_trees():
    admin, err = require_admin()
    if err:
        return err

    page, limit, offset = listing.page_args(request.args)
    try:
        created = date_arg("date")
    except ValueError:
        return jsonify({"ok": False, "error": "Invalid date filter"}), 400

    try:
        with store.connection() as con:
            rows, total = store.list_trees(
                con,
                search=request.args.get("search"),
                is_public=listing.bool_arg(request.args.get("isPublic")),
                created=created,
                user_id=request.args.get("userId") or None,
                limit=limit,
                offset=offset,
            )
        trees = [tree_to_payload(r) for r in rows]
        return list_response("trees", trees, page, limit, total, TREE_CSV)
    except Exception:
        log.exception("Failed to list family trees")
        return jsonify({"ok": False, "error": "Failed to fetch family trees"}), 500


@app.post("/api/admin/trees")
def admin_create_tree():
    admin, err = require_admin()
    if err:
        return err

    data = json_body()
    missing = missing_fields(data, "name", "userId")
    if missing:
        return missing_response(missing)
    try:
        name = str_field(data, "name")
        description = optional_str(data, "description")
    except ValueError as e:
        return bad_request(e)

    try:
        with store.connection() as con:
            if not store.get_user(con, str(data["userId"])):
                return jsonify({"ok": False, "error": "User not found"}), 404
            row = store.insert_tree(con, {
                "name": name,
                "description": description,
                "user_id": str(data["userId"]),
                "is_public": as_bool(data.get("isPublic", False)),
                "share_link": store.unique_share_link(con),
            })
        audit("tree_created", admin=str(admin["id"]), tree=str(row["id"]))
        return jsonify({"ok": True, "tree": tree_to_payload(row)}), 201
    except Exception:
        log.exception("Failed to create family tree")
        return jsonify({"ok": False, "error": "Failed to create family tree"}), 500


@app.put("/api/admin/trees")
def admin_update_tree():
    admin, err = require_admin()
    if err:
        return err

    data = json_body()
    missing = missing_fields(data, "id", "name")
    if missing:
        return missing_response(missing)

    try:
        fields: Dict[str, Any] = {"name": str_field(data, "name")}
        if "description" in data:
            fields["description"] = optional_str(data, "description")
    except ValueError as e:
        return bad_request(e)
    if "isPublic" in data:
        fields["is_public"] = as_bool(data["isPublic"])

    try:
        with store.connection() as con:
            row = store.update_tree(con, str(data["id"]), fields)
        if not row:
            return jsonify({"ok": False, "error": "Family tree not found"}), 404
        audit("tree_updated", admin=str(admin["id"]), tree=str(row["id"]))
        return jsonify({"ok": True, "tree": tree_to_payload(row)})
    except Exception:
        log.exception("Failed to update family tree")
        return jsonify({"ok": False, "error": "Failed to update family tree"}), 500


@app.delete("/api/admin/trees")
def admin_delete_tree():
    admin, err = require_admin()
    if err:
        return err

    tree_id = (request.args.get("id") or "").strip()
    if not tree_id:
        return missing_response(["id"])

    try:
        with store.connection() as con:
            removed = store.delete_tree(con, tree_id)
        if removed is None:
            return jsonify({"ok": False, "error": "Family tree not found"}), 404
        audit("tree_deleted", admin=str(admin["id"]), tree=tree_id, members=removed)
        return jsonify({"ok": True, "deletedMembers": removed})
    except Exception:
        log.exception("Failed to delete family tree")
        return jsonify({"ok": False, "error": "Failed to delete family tree"}), 500


@app.get("/api/admin/family-trees")
def admin_tree_options():
    admin, err = require_admin()
    if err:
        return err
    try:
        with store.connection() as con:
            trees = store.tree_options(con)
        return jsonify({"ok": True, "familyTrees": [{"id": str(t["id"]), "name": t["name"]} for t in trees]})
    except Exception:
        log.exception("Failed to fetch family tree options")
        return jsonify({"ok": False, "error": "Failed to fetch family trees"}), 500


# ---------------- Members ----------------
LINK_KEYS = (("parents", "parent"), ("children", "child"))


def member_input() -> Dict[str, Any]:
    """Member fields from a multipart form or a JSON body."""
    if request.mimetype in ("multipart/form-data", "application/x-www-form-urlencoded"):
        form = request.form
        data: Dict[str, Any] = {k: form.get(k) for k in form.keys() if not k.endswith("[]")}
        for key, _ in LINK_KEYS:
            if key in form or f"{key}[]" in form:
                data[key] = form.getlist(key) + form.getlist(f"{key}[]")
        return data
    return json_body()


def id_list(value) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = value.split(",")
    ids: List[str] = []
    for item in value:
        if isinstance(item, dict):
            item = item.get("id")
        item = str(item or "").strip()
        if item and item not in ids:
            ids.append(item)
    return ids


def member_links(data: Dict[str, Any]) -> Dict[str, List[str]]:
    """Link lists keyed by kind, only for the keys present in data."""
    links: Dict[str, List[str]] = {}
    for key, kind in LINK_KEYS:
        if key in data:
            links[kind] = id_list(data[key])
    for key in ("spouseId", "spouse"):
        if key in data:
            links["spouse"] = id_list([data[key]])[:1]
            break
    return links


def member_fields(data: Dict[str, Any]) -> Dict[str, Any]:
    """Map member keys present in data to columns. Raises ValueError on bad values."""
    fields: Dict[str, Any] = {}
    for key, column in (("firstName", "first_name"), ("lastName", "last_name")):
        if key in data:
            if is_blank(data[key]):
                raise ValueError(f"{key} cannot be empty")
            fields[column] = str_field(data, key)
    if "gender" in data:
        gender = data["gender"].strip().lower() if isinstance(data["gender"], str) else None
        if gender not in GENDERS:
            raise ValueError(f"Invalid gender: {data['gender']}")
        fields["gender"] = gender
    for key, column in (("birthDate", "birth_date"), ("deathDate", "death_date")):
        if key in data:
            try:
                fields[column] = optional_day(data[key])
            except ValueError:
                raise ValueError(f"Invalid {key}: {data[key]}")
    if fields.get("birth_date") and fields.get("death_date") and fields["death_date"] < fields["birth_date"]:
        raise ValueError("deathDate cannot be before birthDate")
    if "bio" in data:
        fields["bio"] = optional_str(data, "bio")
    return fields


def uploaded_profile_image() -> Optional[str]:
    file = request.files.get("profileImage")
    if not file or not file.filename:
        return None
    return media.store_profile_image(file.read(), file.filename, file.content_type or "")


def _upload_error(e: Exception):
    if isinstance(e, media.ImageRejected):
        return jsonify({"ok": False, "error": str(e)}), 400
    if isinstance(e, media.StorageNotConfigured):
        log.warning(f"profile image upload requested but storage is not configured: {e}")
        return jsonify({"ok": False, "error": "Image storage is not configured"}), 503
    log.exception("Failed to upload profile image")
    return jsonify({"ok": False, "error": "Failed to upload profile image"}), 500


def _problems_response(problems: List[str]):
    return jsonify({"ok": False, "error": problems[0], "problems": problems}), 400


@app.get("/api/admin/members")
def admin_list_members():
    admin, err = require_admin()
    if err:
        return err

    page, limit, offset = listing.page_args(request.args)
    args = request.args
    try:
        birth = date_arg("birthDate")
        death = date_arg("deathDate")
        created = date_arg("createdAt")
        updated = date_arg("updatedAt")
    except ValueError:
        return jsonify({"ok": False, "error": "Invalid date filter"}), 400
    # date columns compare against plain dates
    birth = tuple(d.date() for d in birth) if birth else None
    death = tuple(d.date() for d in death) if death else None
    order = listing.order_by(args.get("sortField"), args.get("sortOrder"), MEMBER_SORT_FIELDS, "m.created_at DESC")

    try:
        with store.connection() as con:
            rows, total = store.list_members(
                con,
                search=args.get("search"),
                tree_id=args.get("familyTreeId") or args.get("treeIdSearch") or None,
                member_id=args.get("memberId") or args.get("userIdSearch") or None,
                gender=(args.get("gender") or "").lower() or None,
                birth=birth,
                death=death,
                created=created,
                updated=updated,
                order=order,
                limit=limit,
                offset=offset,
            )
        members = [member_to_payload(r) for r in rows]
        return list_response("members", members, page, limit, total, MEMBER_CSV)
    except Exception:
        log.exception("Failed to list members")
        return jsonify({"ok": False, "error": "Failed to fetch members"}), 500


@app.get("/api/admin/members/candidates")
def admin_member_candidates():
    admin, err = require_admin()
    if err:
        return err

    tree_id = (request.args.get("familyTreeId") or "").strip()
    if not tree_id:
        return missing_response(["familyTreeId"])
    member_id = (request.args.get("memberId") or "").strip() or None

    try:
        with store.connection() as con:
            if not store.get_tree(con, tree_id):
                return jsonify({"ok": False, "error": "Family tree not found"}), 404
            graph = store.tree_members(con, tree_id)

        current = next((m for m in graph if str(m["id"]) == member_id), None) if member_id else None
        gender = request.args.get("gender") or (current or {}).get("gender")
        parents = (id_list(",".join(request.args.getlist("parents"))) if "parents" in request.args
                   else [str(p) for p in (current or {}).get("parents") or []])
        children = (id_list(",".join(request.args.getlist("children"))) if "children" in request.args
                    else [str(c) for c in (current or {}).get("children") or []])
        options = relations.candidates(graph, member_id, gender, parents, children)
        return jsonify({"ok": True, "candidates": options})
    except Exception:
        log.exception("Failed to compute member candidates")
        return jsonify({"ok": False, "error": "Failed to fetch candidates"}), 500


@app.post("/api/admin/members")
def admin_create_member():
    admin, err = require_admin()
    if err:
        return err

    data = member_input()
    missing = missing_fields(data, "firstName", "lastName", "gender", "familyTreeId")
    if missing:
        return missing_response(missing)
    try:
        fields = member_fields(data)
    except ValueError as e:
        return jsonify({"ok": False, "error": str(e)}), 400
    tree_id = str(data["familyTreeId"]).strip()
    links = member_links(data)

    try:
        image = uploaded_profile_image()
    except Exception as e:
        return _upload_error(e)
    if image:
        fields["profile_image_url"] = image

    try:
        with store.connection() as con, con.transaction():
            if not store.lock_tree(con, tree_id):
                return jsonify({"ok": False, "error": "Family tree not found"}), 404
            graph = store.tree_members(con, tree_id)
            problems = relations.link_problems(
                graph, None, fields["gender"],
                links.get("parent", []), links.get("child", []), (links.get("spouse") or [None])[0],
            )
            if problems:
                return _problems_response(problems)
            member_id = store.insert_member(con, {**fields, "tree_id": tree_id})
            store.set_links(con, member_id, links)
            row = store.get_member(con, member_id)
        audit("member_created", admin=str(admin["id"]), member=member_id, tree=tree_id)
        return jsonify({"ok": True, "member": member_to_payload(row)}), 201
    except Exception:
        log.exception("Failed to create member")
        return jsonify({"ok": False, "error": "Failed to create member"}), 500


def update_member(admin: Dict[str, Any], member_id: str, data: Dict[str, Any]):
    try:
        fields = member_fields(data)
    except ValueError as e:
        return jsonify({"ok": False, "error": str(e)}), 400
    links = member_links(data)

    try:
        image = uploaded_profile_image()
    except Exception as e:
        return _upload_error(e)
    if image:
        fields["profile_image_url"] = image

    try:
        with store.connection() as con, con.transaction():
            existing = store.get_member(con, member_id)
            if not existing:
                return jsonify({"ok": False, "error": "Member not found"}), 404
            old_tree = str(existing["tree_id"])
            tree_id = str(data.get("familyTreeId") or old_tree).strip()
            moved = tree_id != old_tree
            # fixed lock order so crossing moves cannot deadlock
            locked = {t: store.lock_tree(con, t) for t in sorted({tree_id, old_tree})}
            if not locked[tree_id]:
                return jsonify({"ok": False, "error": "Family tree not found"}), 404
            if moved:
                fields["tree_id"] = tree_id
                # links never cross trees; a moved member starts from what was sent
                links = {kind: links.get(kind, []) for kind in relations.LINK_KINDS}

            graph = store.tree_members(con, tree_id)
            current = next((m for m in graph if str(m["id"]) == member_id), {})
            parents = links.get("parent", [str(p) for p in current.get("parents") or []])
            children = links.get("child", [str(c) for c in current.get("children") or []])
            spouse = links["spouse"][0] if links.get("spouse") else (
                None if "spouse" in links else current.get("spouse"))
            problems = relations.link_problems(
                graph, member_id, fields.get("gender", existing["gender"]), parents, children, spouse,
            )
            if problems:
                return _problems_response(problems)

            if fields:
                store.update_member(con, member_id, fields)
            if moved:
                store.drop_incoming_links(con, member_id)
            store.set_links(con, member_id, links)
            row = store.get_member(con, member_id)
        audit("member_updated", admin=str(admin["id"]), member=member_id, tree=tree_id)
        return jsonify({"ok": True, "member": member_to_payload(row)})
    except Exception:
        log.exception("Failed to update member")
        return jsonify({"ok": False, "error": "Failed to update member"}), 500


@app.put("/api/admin/members")
def admin_update_member_form():
    admin, err = require_admin()
    if err:
        return err
    data = member_input()
    # the edit form posts _id
    member_id = str(data.get("id") or data.get("_id") or "").strip()
    if not member_id:
        return missing_response(["id"])
    return update_member(admin, member_id, data)


@app.put("/api/admin/members/<member_id>")
def admin_update_member(member_id: str):
    admin, err = require_admin()
    if err:
        return err
    return update_member(admin, member_id, member_input())


@app.delete("/api/admin/members/<member_id>")
def admin_delete_member(member_id: str):
    admin, err = require_admin()
    if err:
        return err

    try:
        with store.connection() as con, con.transaction():
            existing = store.get_member(con, member_id)
            if not existing:
                return jsonify({"ok": False, "error": "Member not found"}), 404
            store.lock_tree(con, str(existing["tree_id"]))
            dependents = store.member_dependents(con, member_id)
            if dependents:
                return jsonify({
                    "ok": False,
                    "error": relations.describe_dependents(dependents),
                    "dependents": [
                        {"id": str(d["id"]), "name": relations.display_name(d), "kind": d["kind"]}
                        for d in dependents
                    ],
                }), 409
            store.delete_member(con, member_id)
        audit("member_deleted", admin=str(admin["id"]), member=member_id, tree=str(existing["tree_id"]))
        return jsonify({"ok": True})
    except Exception:
        log.exception("Failed to delete member")
        return jsonify({"ok": False, "error": "Failed to delete member"}), 500


# ---------------- Relationships ----------------
@app.get("/api/admin/relationships")
def admin_list_relationships():
    admin, err = require_admin()
    if err:
        return err

    page, limit, offset = listing.page_args(request.args)
    try:
        with store.connection() as con:
            rows, total = store.list_relationships(
                con,
                search=request.args.get("search"),
                relationship_type=request.args.get("relationshipType") or None,
                tree_id=request.args.get("familyTreeId") or None,
                limit=limit,
                offset=offset,
            )
        relationships = [relationship_to_payload(r) for r in rows]
        return list_response("relationships", relationships, page, limit, total, RELATIONSHIP_CSV)
    except Exception:
        log.exception("Failed to list relationships")
        return jsonify({"ok": False, "error": "Failed to fetch relationships"}), 500


@app.get("/api/admin/relationships/options")
def admin_relationship_options():
    admin, err = require_admin()
    if err:
        return err
    try:
        with store.connection() as con:
            members = store.member_options(con)
            trees = store.tree_options(con)
        return jsonify({
            "ok": True,
            "members": [{"id": str(m["id"]), "name": m["name"], "familyTreeId": str(m["tree_id"])} for m in members],
            "familyTrees": [{"id": str(t["id"]), "name": t["name"]} for t in trees],
            "relationshipTypes": sorted(RELATIONSHIP_TYPES),
        })
    except Exception:
        log.exception("Failed to fetch relationship options")
        return jsonify({"ok": False, "error": "Failed to fetch relationship options"}), 500


@app.post("/api/admin/relationships")
def admin_create_relationship():
    admin, err = require_admin()
    if err:
        return err

    data = json_body()
    missing = missing_fields(data, "member1Id", "member2Id", "familyTreeId", "relationshipType")
    if missing:
        return missing_response(missing)

    member1_id, member2_id = str(data["member1Id"]), str(data["member2Id"])
    tree_id = str(data["familyTreeId"])
    try:
        relationship_type = choice_field(data, "relationshipType", RELATIONSHIP_TYPES, "relationship type")
    except ValueError as e:
        return bad_request(e)
    if member1_id == member2_id:
        return jsonify({"ok": False, "error": "A member cannot be related to themselves"}), 400

    try:
        with store.connection() as con:
            if not store.get_tree(con, tree_id):
                return jsonify({"ok": False, "error": "Family tree not found"}), 404
            for mid in (member1_id, member2_id):
                member = store.get_member(con, mid)
                if not member or str(member["tree_id"]) != tree_id:
                    return jsonify({"ok": False, "error": "Both members must belong to the selected family tree"}), 400
            if store.find_relationship(con, member1_id, member2_id, relationship_type):
                return jsonify({"ok": False, "error": "This relationship already exists"}), 400
            row = store.insert_relationship(con, {
                "member1_id": member1_id,
                "member2_id": member2_id,
                "tree_id": tree_id,
                "relationship_type": relationship_type,
            })
        audit("relationship_created", admin=str(admin["id"]), relationship=str(row["id"]))
        return jsonify({"ok": True, "relationship": relationship_to_payload(row)}), 201
    except Exception:
        log.exception("Failed to create relationship")
        return jsonify({"ok": False, "error": "Failed to create relationship"}), 500


@app.put("/api/admin/relationships")
def admin_update_relationship():
    admin, err = require_admin()
    if err:
        return err

    data = json_body()
    missing = missing_fields(data, "id", "relationshipType")
    if missing:
        return missing_response(missing)
    relationship_id = str(data["id"])
    try:
        relationship_type = choice_field(data, "relationshipType", RELATIONSHIP_TYPES, "relationship type")
    except ValueError as e:
        return bad_request(e)

    try:
        with store.connection() as con:
            existing = store.get_relationship(con, relationship_id)
            if not existing:
                return jsonify({"ok": False, "error": "Relationship not found"}), 404
            clash = store.find_relationship(con, str(existing["member1_id"]), str(existing["member2_id"]),
                                            relationship_type)
            if clash and str(clash["id"]) != relationship_id:
                return jsonify({"ok": False, "error": "This relationship already exists"}), 400
            row = store.update_relationship(con, relationship_id, {"relationship_type": relationship_type})
        audit("relationship_updated", admin=str(admin["id"]), relationship=relationship_id)
        return jsonify({"ok": True, "relationship": relationship_to_payload(row)})
    except Exception:
        log.exception("Failed to update relationship")
        return jsonify({"ok": False, "error": "Failed to update relationship"}), 500


@app.delete("/api/admin/relationships")
def admin_delete_relationship():
    admin, err = require_admin()
    if err:
        return err

    relationship_id = (request.args.get("id") or "").strip()
    if not relationship_id:
        return missing_response(["id"])
    try:
        with store.connection() as con:
            deleted = store.delete_relationship(con, relationship_id)
        if not deleted:
            return jsonify({"ok": False, "error": "Relationship not found"}), 404
        audit("relationship_deleted", admin=str(admin["id"]), relationship=relationship_id)
        return jsonify({"ok": True})
    except Exception:
        log.exception("Failed to delete relationship")
        return jsonify({"ok": False, "error": "Failed to delete relationship"}), 500


# ---------------- Contacts ----------------
def create_contact(data: Dict[str, Any]):
    missing = missing_fields(data, "firstName", "email", "subject", "message")
    if missing:
        return missing_response(missing)
    try:
        fields = {
            "first_name": str_field(data, "firstName"),
            "last_name": optional_str(data, "lastName"),
            "email": str_field(data, "email").lower(),
            "subject": str_field(data, "subject"),
            "message": str_field(data, "message"),
            "status": "pending",
        }
    except ValueError as e:
        return bad_request(e)
    if "@" not in fields["email"]:
        return jsonify({"ok": False, "error": "Invalid email address"}), 400

    try:
        with store.connection() as con:
            row = store.insert_contact(con, fields)
        audit("contact_created", contact=str(row["id"]))
        return jsonify({"ok": True, "contact": contact_to_payload(row)}), 201
    except Exception:
        log.exception("Failed to create contact")
        return jsonify({"ok": False, "error": "Failed to submit contact form"}), 500


@app.post("/api/contact")
def public_contact():
    return create_contact(json_body())


@app.get("/api/admin/contacted")
def admin_list_contacts():
    admin, err = require_admin()
    if err:
        return err

    page, limit, offset = listing.page_args(request.args)
    try:
        created = date_arg("date")
    except ValueError:
        return jsonify({"ok": False, "error": "Invalid date filter"}), 400

    try:
        with store.connection() as con:
            rows, total = store.list_contacts(
                con,
                search=request.args.get("search"),
                status=request.args.get("status") or None,
                created=created,
                limit=limit,
                offset=offset,
            )
        contacts = [contact_to_payload(r) for r in rows]
        return list_response("contacts", contacts, page, limit, total, CONTACT_CSV)
    except Exception:
        log.exception("Failed to list contacts")
        return jsonify({"ok": False, "error": "Failed to fetch contacts"}), 500


@app.post("/api/admin/contacted")
def admin_create_contact():
    admin, err = require_admin()
    if err:
        return err
    return create_contact(json_body())


@app.put("/api/admin/contacted")
def admin_update_contact():
    admin, err = require_admin()
    if err:
        return err

    data = json_body()
    missing = missing_fields(data, "contactId", "status")
    if missing:
        return missing_response(missing)
    try:
        status = choice_field(data, "status", CONTACT_STATUSES, "status")
    except ValueError as e:
        return bad_request(e)

    try:
        with store.connection() as con:
            row = store.set_contact_status(con, str(data["contactId"]), status)
        if not row:
            return jsonify({"ok": False, "error": "Contact not found"}), 404
        audit("contact_updated", admin=str(admin["id"]), contact=str(row["id"]), status=row["status"])
        return jsonify({"ok": True, "contact": contact_to_payload(row)})
    except Exception:
        log.exception("Failed to update contact")
        return jsonify({"ok": False, "error": "Failed to update contact"}), 500


@app.post("/api/admin/contacted/reply")
def admin_reply_contact():
    admin, err = require_admin()
    if err:
        return err

    data = json_body()
    missing = missing_fields(data, "contactId", "message")
    if missing:
        return missing_response(missing)
    contact_id = str(data["contactId"])
    try:
        message = str_field(data, "message")
    except ValueError as e:
        return bad_request(e)

    try:
        with store.connection() as con:
            contact = store.get_contact(con, contact_id)
        if not contact:
            return jsonify({"ok": False, "error": "Contact not found"}), 404

        name = " ".join(p for p in (contact["first_name"], contact.get("last_name")) if p)
        if not send_reply_email(contact["email"], name, contact["subject"], message):
            return jsonify({"ok": False, "error": "Failed to send reply email"}), 500

        try:
            with store.connection() as con:
                row = store.set_contact_status(con, contact_id, "replied")
        except Exception:
            log.exception(f"Reply sent to contact {contact_id} but its status was not updated")
            return jsonify({"ok": False, "error": "Reply sent but failed to update contact status"}), 500

        audit("contact_replied", admin=str(admin["id"]), contact=contact_id)
        return jsonify({"ok": True, "contact": contact_to_payload(row)})
    except Exception:
        log.exception("Failed to reply to contact")
        return jsonify({"ok": False, "error": "Failed to send reply"}), 500


# ---------------- Moderation ----------------
@app.get("/api/admin/moderation")
def admin_list_moderation():
    admin, err = require_admin()
    if err:
        return err

    page, limit, offset = listing.page_args(request.args)
    try:
        with store.connection() as con:
            rows, total = store.list_moderation_items(
                con,
                search=request.args.get("search"),
                status=request.args.get("status") or None,
                content_type=request.args.get("contentType") or None,
                report_reason=request.args.get("reportReason") or None,
                limit=limit,
                offset=offset,
            )
        items = [moderation_to_payload(r) for r in rows]
        return list_response("items", items, page, limit, total, MODERATION_CSV)
    except Exception:
        log.exception("Failed to list moderation items")
        return jsonify({"ok": False, "error": "Failed to fetch moderation items"}), 500


@app.post("/api/admin/moderation")
def admin_create_moderation_item():
    admin, err = require_admin()
    if err:
        return err

    data = json_body()
    missing = missing_fields(data, "contentType", "contentId", "title", "reportReason")
    if missing:
        return missing_response(missing)
    try:
        fields = {
            "content_type": choice_field(data, "contentType", CONTENT_TYPES, "content type"),
            "content_id": str(data["contentId"]),
            "title": str_field(data, "title"),
            "description": optional_str(data, "description"),
            "reported_by": str(data.get("reportedBy") or "").strip() or None,
            "report_reason": choice_field(data, "reportReason", REPORT_REASONS, "report reason"),
            "status": "pending",
        }
    except ValueError as e:
        return bad_request(e)

    try:
        with store.connection() as con:
            if fields["reported_by"] and not store.get_user(con, fields["reported_by"]):
                return jsonify({"ok": False, "error": "Reporting user not found"}), 404
            row = store.insert_moderation_item(con, fields)
        audit("moderation_reported", admin=str(admin["id"]), item=str(row["id"]))
        return jsonify({"ok": True, "item": moderation_to_payload(row)}), 201
    except Exception:
        log.exception("Failed to create moderation item")
        return jsonify({"ok": False, "error": "Failed to create moderation item"}), 500


@app.put("/api/admin/moderation")
def admin_update_moderation_item():
    admin, err = require_admin()
    if err:
        return err

    data = json_body()
    missing = missing_fields(data, "id", "status")
    if missing:
        return missing_response(missing)
    try:
        fields = {
            "status": choice_field(data, "status", MODERATION_STATUSES, "status"),
            "moderated_by": str(admin["id"]),
        }
        if "moderatorNotes" in data:
            fields["moderator_notes"] = optional_str(data, "moderatorNotes")
    except ValueError as e:
        return bad_request(e)

    try:
        with store.connection() as con:
            row = store.update_moderation_item(con, str(data["id"]), fields)
        if not row:
            return jsonify({"ok": False, "error": "Moderation item not found"}), 404
        audit("moderation_decided", admin=str(admin["id"]), item=str(row["id"]), status=row["status"])
        return jsonify({"ok": True, "item": moderation_to_payload(row)})
    except Exception:
        log.exception("Failed to update moderation item")
        return jsonify({"ok": False, "error": "Failed to update moderation item"}), 500


# ---------------- Dashboard ----------------
@app.get("/api/admin/dashboard")
def admin_dashboard():
    """Headline counts for the admin landing page"""
    admin, err = require_admin()
    if err:
        return err

    try:
        with store.connection() as con:
            counts = store.dashboard_counts(con)
        return jsonify({
            "ok": True,
            "stats": {
                "totalUsers": counts["users"],
                "totalTrees": counts["trees"],
                "totalMembers": counts["members"],
                "totalContacts": counts["contacts"],
                "pendingContacts": counts["pending_contacts"],
                "pendingModeration": counts["pending_moderation"],
                "activeAdmins": counts["active_admins"],
            },
        })
    except Exception:
        log.exception("Failed to load dashboard")
        return jsonify({"ok": False, "error": "Failed to fetch dashboard"}), 500


@app.get("/api/admin/analytics")
def admin_analytics():
    admin, err = require_admin()
    if err:
        return err

    try:
        with store.connection() as con:
            stats = store.analytics(con)
        users, trees = stats["users"], stats["trees"]
        return jsonify({
            "ok": True,
            "userStats": {
                "total": users["total"],
                "verified": users["verified"],
                "onboarded": users["onboarded"],
                "active": users["active"],
                "newThisMonth": users["new_this_month"],
            },
            "treeStats": {
                "total": trees["total"],
                "public": trees["public"],
                "private": trees["private"],
                "newThisMonth": trees["new_this_month"],
            },
            "memberStats": {
                "total": stats["members"],
                "genderDistribution": [{"gender": g["gender"], "count": g["count"]} for g in stats["genders"]],
            },
            "userLocations": [{"country": loc["country"], "count": loc["count"]} for loc in stats["locations"]],
        })
    except Exception:
        log.exception("Failed to load analytics")
        return jsonify({"ok": False, "error": "Failed to fetch analytics"}), 500


@app.get("/api/admin/audit")
def admin_get_audit_log():
    """Get recent audit log entries"""
    admin, err = require_admin()
    if err:
        return err

    try:
        limit = min(max(int(request.args.get("limit", "100")), 1), 1000)
    except ValueError:
        limit = 100
    event_filter = request.args.get("event", "").strip()

    try:
        if not os.path.exists(AUDIT_FILE):
            return jsonify({"ok": True, "entries": [], "total": 0})

        entries = []
        with open(AUDIT_FILE, "r", encoding="utf-8") as f:
            for line in f:
                try:
                    entry = json.loads(line.strip())
                except ValueError:
                    continue
                if not event_filter or entry.get("event", "").startswith(event_filter):
                    entries.append(entry)

        entries.sort(key=lambda x: x.get("ts", 0), reverse=True)
        entries = entries[:limit]

        for entry in entries:
            if "ts" in entry:
                entry["timestamp"] = datetime.datetime.fromtimestamp(
                    entry["ts"], tz=datetime.timezone.utc
                ).isoformat()

        return jsonify({"ok": True, "entries": entries, "total": len(entries)})
    except Exception:
        log.exception("Failed to get audit log")
        return jsonify({"ok": False, "error": "Failed to read audit log"}), 500


# ---------------- Health ----------------
@app.get("/")
def root():
    return jsonify({
        "message": "Family Tree Admin API",
        "version": "1.0.0",
        "status": "running",
        "health_endpoint": "/health"
    })


@app.get("/health")
def health():
    # don't touch the database here
    return jsonify({
        "status": "ok",
        "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat()
    })


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=PORT)
