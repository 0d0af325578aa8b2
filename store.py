import os
import uuid
import secrets
import string
import logging
from contextlib import contextmanager
from typing import Optional, List, Dict, Any, Tuple

from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from listing import Filters

log = logging.getLogger("familytree-admin")

# ---------------- Pool & schema ----------------
DATABASE_URL = os.getenv("DATABASE_URL")  # may be unset at boot
pool: Optional[ConnectionPool] = None
DB_READY = False
DB_ERR = None

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS admins (
      id            uuid PRIMARY KEY,
      email         text UNIQUE NOT NULL,
      password_hash text NOT NULL,
      role          text NOT NULL DEFAULT 'admin' CHECK (role IN ('admin', 'super_admin')),
      first_name    text NOT NULL,
      last_name     text NOT NULL,
      is_active     boolean NOT NULL DEFAULT true,
      last_login    timestamptz,
      created_at    timestamptz NOT NULL DEFAULT now(),
      updated_at    timestamptz NOT NULL DEFAULT now()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS users (
      id                  uuid PRIMARY KEY,
      uid                 text UNIQUE,                 -- identity provider account id
      email               text UNIQUE NOT NULL,
      display_name        text,
      photo_url           text,
      provider            text NOT NULL DEFAULT 'email', -- google | facebook | email
      email_verified      boolean NOT NULL DEFAULT false,
      onboarding_complete boolean NOT NULL DEFAULT false,
      profile_complete    boolean NOT NULL DEFAULT false,
      phone_number        text,
      role                text NOT NULL DEFAULT 'user',
      is_active           boolean NOT NULL DEFAULT true,
      profile             jsonb NOT NULL DEFAULT '{}'::jsonb,
      address             jsonb NOT NULL DEFAULT '{}'::jsonb,
      created_at          timestamptz NOT NULL DEFAULT now(),
      updated_at          timestamptz NOT NULL DEFAULT now()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS family_trees (
      id          uuid PRIMARY KEY,
      name        text NOT NULL,
      description text,
      user_id     uuid REFERENCES users(id) ON DELETE SET NULL,
      is_public   boolean NOT NULL DEFAULT false,
      share_link  text UNIQUE NOT NULL,
      created_at  timestamptz NOT NULL DEFAULT now(),
      updated_at  timestamptz NOT NULL DEFAULT now()
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_family_trees_user ON family_trees (user_id, updated_at DESC);",
    """
    CREATE TABLE IF NOT EXISTS members (
      id                uuid PRIMARY KEY,
      tree_id           uuid NOT NULL REFERENCES family_trees(id) ON DELETE CASCADE,
      first_name        text NOT NULL,
      last_name         text NOT NULL,
      gender            text NOT NULL,
      birth_date        date,
      death_date        date,
      bio               text,
      profile_image_url text,
      created_at        timestamptz NOT NULL DEFAULT now(),
      updated_at        timestamptz NOT NULL DEFAULT now()
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_members_tree ON members (tree_id, created_at DESC);",
    # related_id keeps the default NO ACTION so a referenced member cannot be deleted
    """
    CREATE TABLE IF NOT EXISTS member_links (
      member_id  uuid NOT NULL REFERENCES members(id) ON DELETE CASCADE,
      related_id uuid NOT NULL REFERENCES members(id),
      kind       text NOT NULL CHECK (kind IN ('parent', 'child', 'spouse')),
      created_at timestamptz NOT NULL DEFAULT now(),
      PRIMARY KEY (member_id, related_id, kind),
      CHECK (member_id <> related_id)
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_member_links_related ON member_links (related_id);",
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_member_links_one_spouse ON member_links (member_id) WHERE kind = 'spouse';",
    """
    CREATE TABLE IF NOT EXISTS relationships (
      id                uuid PRIMARY KEY,
      member1_id        uuid NOT NULL REFERENCES members(id) ON DELETE CASCADE,
      member2_id        uuid NOT NULL REFERENCES members(id) ON DELETE CASCADE,
      tree_id           uuid NOT NULL REFERENCES family_trees(id) ON DELETE CASCADE,
      relationship_type text NOT NULL,
      created_at        timestamptz NOT NULL DEFAULT now(),
      updated_at        timestamptz NOT NULL DEFAULT now(),
      UNIQUE (member1_id, member2_id, relationship_type)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS contacts (
      id         uuid PRIMARY KEY,
      first_name text NOT NULL,
      last_name  text,
      email      text NOT NULL,
      subject    text NOT NULL,
      message    text NOT NULL,
      status     text NOT NULL DEFAULT 'pending', -- pending | read | replied | archived
      created_at timestamptz NOT NULL DEFAULT now(),
      updated_at timestamptz NOT NULL DEFAULT now()
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_contacts_status_created ON contacts (status, created_at DESC);",
    """
    CREATE TABLE IF NOT EXISTS moderation_items (
      id              uuid PRIMARY KEY,
      content_type    text NOT NULL,
      content_id      text NOT NULL,
      title           text NOT NULL,
      description     text,
      reported_by     uuid REFERENCES users(id) ON DELETE SET NULL,
      report_reason   text NOT NULL,
      status          text NOT NULL DEFAULT 'pending', -- pending | approved | rejected | flagged
      moderator_notes text,
      moderated_by    uuid REFERENCES admins(id) ON DELETE SET NULL,
      created_at      timestamptz NOT NULL DEFAULT now(),
      updated_at      timestamptz NOT NULL DEFAULT now()
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_moderation_status_created ON moderation_items (status, created_at DESC);",
]


def db_connect_once():
    """
    Initialize global connection pool and run DDL (idempotent).
    """
    global pool, DB_READY, DB_ERR
    if DB_READY or DB_ERR:
        return
    try:
        if not DATABASE_URL:
            log.warning("DATABASE_URL not set - admin API cannot reach the database")
            DB_ERR = "Database not configured"
            return

        pool = ConnectionPool(
            DATABASE_URL,
            min_size=0,
            max_size=5,
            kwargs={"autocommit": True, "prepare_threshold": 0},
        )
        with pool.connection() as con, con.cursor() as cur:
            for ddl in SCHEMA:
                cur.execute(ddl)

        DB_READY = True
        DB_ERR = None
    except Exception as e:
        DB_ERR = str(e)
        log.exception("DB init failed; continuing without DB")


def with_db():
    db_connect_once()
    if not DB_READY:
        raise RuntimeError(f"DB not ready: {DB_ERR or 'unknown'}")


@contextmanager
def connection():
    with_db()
    with pool.connection() as con:
        yield con


# ---------------- Generic helpers ----------------
def valid_id(value) -> bool:
    try:
        uuid.UUID(str(value))
        return True
    except (TypeError, ValueError):
        return False


def _bad_id(value) -> bool:
    return bool(value) and not valid_id(value)


def _adapt(value):
    if isinstance(value, (dict, list)):
        return Jsonb(value)
    return value


def _insert(con, table: str, fields: Dict[str, Any], returning: str = "*") -> Dict[str, Any]:
    fields = dict(fields)
    fields.setdefault("id", str(uuid.uuid4()))
    columns = ", ".join(fields.keys())
    marks = ", ".join(["%s"] * len(fields))
    with con.cursor(row_factory=dict_row) as cur:
        cur.execute(
            f"INSERT INTO {table} ({columns}) VALUES ({marks}) RETURNING {returning}",
            [_adapt(v) for v in fields.values()],
        )
        return cur.fetchone()


def _update(con, table: str, row_id: str, fields: Dict[str, Any], returning: str = "*") -> Optional[Dict[str, Any]]:
    if not valid_id(row_id):
        return None
    set_clauses = [f"{k} = %s" for k in fields.keys()] + ["updated_at = now()"]
    values = [_adapt(v) for v in fields.values()] + [row_id]
    with con.cursor(row_factory=dict_row) as cur:
        cur.execute(
            f"UPDATE {table} SET {', '.join(set_clauses)} WHERE id = %s RETURNING {returning}",
            values,
        )
        return cur.fetchone()


def _fetch_one(con, query: str, params) -> Optional[Dict[str, Any]]:
    with con.cursor(row_factory=dict_row) as cur:
        cur.execute(query, params)
        return cur.fetchone()


def _page(con, select_sql: str, count_sql: str, filters: Filters, order: str,
          limit: int, offset: int) -> Tuple[List[Dict[str, Any]], int]:
    where = filters.where()
    with con.cursor(row_factory=dict_row) as cur:
        cur.execute(count_sql + where, filters.params)
        total = cur.fetchone()["total"]
        cur.execute(f"{select_sql}{where} ORDER BY {order} LIMIT %s OFFSET %s",
                    filters.params + [limit, offset])
        rows = [dict(row) for row in cur.fetchall()]
    return rows, total


# ---------------- Admins ----------------
ADMIN_FIELDS = "id, email, password_hash, role, first_name, last_name, is_active, last_login, created_at, updated_at"


def get_admin(con, admin_id: str) -> Optional[Dict[str, Any]]:
    if not valid_id(admin_id):
        return None
    return _fetch_one(con, f"SELECT {ADMIN_FIELDS} FROM admins WHERE id = %s", (admin_id,))


def find_admin_by_email(con, email: str) -> Optional[Dict[str, Any]]:
    return _fetch_one(con, f"SELECT {ADMIN_FIELDS} FROM admins WHERE email = %s", (email,))


def list_admins(con, *, search=None, role=None, is_active=None, limit=10, offset=0):
    f = Filters().search(search, "first_name", "last_name", "email").equals("role", role).equals("is_active", is_active)
    return _page(con, f"SELECT {ADMIN_FIELDS} FROM admins", "SELECT COUNT(*) AS total FROM admins",
                 f, "created_at DESC", limit, offset)


def insert_admin(con, fields: Dict[str, Any]) -> Dict[str, Any]:
    return _insert(con, "admins", fields, ADMIN_FIELDS)


def update_admin(con, admin_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    return _update(con, "admins", admin_id, fields, ADMIN_FIELDS)


def record_login(con, admin_id: str):
    with con.cursor() as cur:
        cur.execute("UPDATE admins SET last_login = now() WHERE id = %s", (admin_id,))


# ---------------- Users ----------------
USER_FIELDS = """id, uid, email, display_name, photo_url, provider, email_verified, onboarding_complete,
                 profile_complete, phone_number, role, is_active, profile, address, created_at, updated_at"""


def get_user(con, user_id: str) -> Optional[Dict[str, Any]]:
    if not valid_id(user_id):
        return None
    return _fetch_one(con, f"SELECT {USER_FIELDS} FROM users WHERE id = %s", (user_id,))


def find_user_by_email(con, email: str) -> Optional[Dict[str, Any]]:
    return _fetch_one(con, f"SELECT {USER_FIELDS} FROM users WHERE email = %s", (email,))


def find_user_by_uid(con, uid: str) -> Optional[Dict[str, Any]]:
    return _fetch_one(con, f"SELECT {USER_FIELDS} FROM users WHERE uid = %s", (uid,))


def list_users(con, *, search=None, provider=None, email_verified=None, onboarding_complete=None,
               role=None, is_active=None, order="created_at DESC", limit=10, offset=0):
    f = (Filters()
         .search(search, "display_name", "email")
         .equals("provider", provider)
         .equals("email_verified", email_verified)
         .equals("onboarding_complete", onboarding_complete)
         .equals("role", role)
         .equals("is_active", is_active))
    return _page(con, f"SELECT {USER_FIELDS} FROM users", "SELECT COUNT(*) AS total FROM users",
                 f, order, limit, offset)


def insert_user(con, fields: Dict[str, Any]) -> Dict[str, Any]:
    return _insert(con, "users", fields, USER_FIELDS)


def update_user(con, user_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    return _update(con, "users", user_id, fields, USER_FIELDS)


def delete_user(con, user_id: str) -> bool:
    if not valid_id(user_id):
        return False
    with con.cursor() as cur:
        cur.execute("DELETE FROM users WHERE id = %s", (user_id,))
        return cur.rowcount > 0


# ---------------- Family trees ----------------
TREE_SELECT = """
    SELECT t.id, t.name, t.description, t.user_id, t.is_public, t.share_link,
           t.created_at, t.updated_at,
           u.display_name AS owner_name, u.email AS owner_email,
           (SELECT COUNT(*) FROM members m WHERE m.tree_id = t.id) AS member_count
    FROM family_trees t
    LEFT JOIN users u ON u.id = t.user_id
"""
SHARE_ALPHABET = string.ascii_lowercase + string.digits


def get_tree(con, tree_id: str) -> Optional[Dict[str, Any]]:
    if not valid_id(tree_id):
        return None
    return _fetch_one(con, TREE_SELECT + " WHERE t.id = %s", (tree_id,))


def lock_tree(con, tree_id: str) -> Optional[Dict[str, Any]]:
    """Row-lock a tree for the rest of the transaction; serializes member link edits."""
    if not valid_id(tree_id):
        return None
    return _fetch_one(con, "SELECT id, name FROM family_trees WHERE id = %s FOR UPDATE", (tree_id,))


def list_trees(con, *, search=None, is_public=None, created=None, user_id=None,
               order="t.updated_at DESC", limit=10, offset=0):
    if _bad_id(user_id):
        return [], 0
    f = (Filters()
         .search(search, "t.name", "t.description")
         .equals("t.is_public", is_public)
         .between("t.created_at", created)
         .equals("t.user_id", user_id))
    return _page(con, TREE_SELECT, "SELECT COUNT(*) AS total FROM family_trees t", f, order, limit, offset)


def tree_options(con) -> List[Dict[str, Any]]:
    with con.cursor(row_factory=dict_row) as cur:
        cur.execute("SELECT id, name FROM family_trees ORDER BY name ASC")
        return list(cur.fetchall())


def unique_share_link(con, length: int = 8) -> str:
    with con.cursor() as cur:
        while True:
            token = "".join(secrets.choice(SHARE_ALPHABET) for _ in range(length))
            cur.execute("SELECT 1 FROM family_trees WHERE share_link = %s", (token,))
            if cur.fetchone() is None:
                return token


def insert_tree(con, fields: Dict[str, Any]) -> Dict[str, Any]:
    row = _insert(con, "family_trees", fields, "id")
    return get_tree(con, str(row["id"]))


def update_tree(con, tree_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    row = _update(con, "family_trees", tree_id, fields, "id")
    return get_tree(con, str(row["id"])) if row else None


def delete_tree(con, tree_id: str) -> Optional[int]:
    """Delete a tree and every member in it. Returns removed member count, None if no such tree."""
    with con.transaction():
        if not lock_tree(con, tree_id):
            return None
        with con.cursor() as cur:
            # links touching this tree would trip the related_id key mid-delete
            cur.execute(
                """
                DELETE FROM member_links
                WHERE member_id IN (SELECT id FROM members WHERE tree_id = %s)
                   OR related_id IN (SELECT id FROM members WHERE tree_id = %s)
                """,
                (tree_id, tree_id),
            )
            cur.execute("DELETE FROM members WHERE tree_id = %s", (tree_id,))
            removed = cur.rowcount
            cur.execute("DELETE FROM family_trees WHERE id = %s", (tree_id,))
    return removed


# ---------------- Members ----------------
def _links_json(kind: str) -> str:
    return f"""
        COALESCE((SELECT json_agg(json_build_object('id', r.id, 'name', r.first_name || ' ' || r.last_name)
                                  ORDER BY r.first_name, r.last_name)
                  FROM member_links l JOIN members r ON r.id = l.related_id
                  WHERE l.member_id = m.id AND l.kind = '{kind}'), '[]'::json)"""


MEMBER_SELECT = f"""
    SELECT m.id, m.tree_id, t.name AS tree_name, m.first_name, m.last_name, m.gender,
           m.birth_date, m.death_date, m.bio, m.profile_image_url, m.created_at, m.updated_at,
           {_links_json('parent')} AS parents,
           {_links_json('child')} AS children,
           (SELECT json_build_object('id', r.id, 'name', r.first_name || ' ' || r.last_name)
              FROM member_links l JOIN members r ON r.id = l.related_id
             WHERE l.member_id = m.id AND l.kind = 'spouse' LIMIT 1) AS spouse
    FROM members m
    LEFT JOIN family_trees t ON t.id = m.tree_id
"""


def get_member(con, member_id: str) -> Optional[Dict[str, Any]]:
    if not valid_id(member_id):
        return None
    return _fetch_one(con, MEMBER_SELECT + " WHERE m.id = %s", (member_id,))


def list_members(con, *, search=None, tree_id=None, member_id=None, gender=None, birth=None,
                 death=None, created=None, updated=None, order="m.created_at DESC", limit=10, offset=0):
    if _bad_id(tree_id) or _bad_id(member_id):
        return [], 0
    f = (Filters()
         .search(search, "m.first_name", "m.last_name")
         .equals("m.tree_id", tree_id)
         .equals("m.id", member_id)
         .equals("m.gender", gender)
         .between("m.birth_date", birth)
         .between("m.death_date", death)
         .between("m.created_at", created)
         .between("m.updated_at", updated))
    return _page(con, MEMBER_SELECT, "SELECT COUNT(*) AS total FROM members m", f, order, limit, offset)


def tree_members(con, tree_id: str) -> List[Dict[str, Any]]:
    """Every member of a tree with outgoing link ids; the input to relations.*"""
    with con.cursor(row_factory=dict_row) as cur:
        cur.execute("""
            SELECT m.id, m.first_name, m.last_name, m.gender,
                   COALESCE(array_agg(l.related_id) FILTER (WHERE l.kind = 'parent'), '{}') AS parents,
                   COALESCE(array_agg(l.related_id) FILTER (WHERE l.kind = 'child'), '{}') AS children,
                   (array_agg(l.related_id) FILTER (WHERE l.kind = 'spouse'))[1] AS spouse
            FROM members m
            LEFT JOIN member_links l ON l.member_id = m.id
            WHERE m.tree_id = %s
            GROUP BY m.id
            ORDER BY m.first_name, m.last_name
        """, (tree_id,))
        return [dict(row) for row in cur.fetchall()]


def insert_member(con, fields: Dict[str, Any]) -> str:
    return str(_insert(con, "members", fields, "id")["id"])


def update_member(con, member_id: str, fields: Dict[str, Any]) -> bool:
    return _update(con, "members", member_id, fields, "id") is not None


def set_links(con, member_id: str, links: Dict[str, List[str]]):
    """Replace the outgoing links of each kind present in links."""
    with con.cursor() as cur:
        for kind, related in links.items():
            cur.execute("DELETE FROM member_links WHERE member_id = %s AND kind = %s", (member_id, kind))
            for related_id in related:
                cur.execute(
                    """INSERT INTO member_links (member_id, related_id, kind)
                       VALUES (%s, %s, %s) ON CONFLICT DO NOTHING""",
                    (member_id, related_id, kind),
                )


def drop_incoming_links(con, member_id: str):
    with con.cursor() as cur:
        cur.execute("DELETE FROM member_links WHERE related_id = %s", (member_id,))


def member_dependents(con, member_id: str) -> List[Dict[str, Any]]:
    """Members whose links point at member_id; kind is the role member_id plays for them."""
    with con.cursor(row_factory=dict_row) as cur:
        cur.execute("""
            SELECT m.id, m.first_name, m.last_name, l.kind
            FROM member_links l
            JOIN members m ON m.id = l.member_id
            WHERE l.related_id = %s
            ORDER BY m.first_name, m.last_name, l.kind
        """, (member_id,))
        return [dict(row) for row in cur.fetchall()]


def delete_member(con, member_id: str) -> bool:
    if not valid_id(member_id):
        return False
    with con.cursor() as cur:
        cur.execute("DELETE FROM members WHERE id = %s", (member_id,))
        return cur.rowcount > 0


# ---------------- Relationships ----------------
RELATIONSHIP_SELECT = """
    SELECT r.id, r.member1_id, r.member2_id, r.tree_id, r.relationship_type,
           r.created_at, r.updated_at,
           m1.first_name || ' ' || m1.last_name AS member1_name,
           m2.first_name || ' ' || m2.last_name AS member2_name,
           t.name AS tree_name
    FROM relationships r
    JOIN members m1 ON m1.id = r.member1_id
    JOIN members m2 ON m2.id = r.member2_id
    JOIN family_trees t ON t.id = r.tree_id
"""


def list_relationships(con, *, search=None, relationship_type=None, tree_id=None, limit=10, offset=0):
    if _bad_id(tree_id):
        return [], 0
    f = (Filters()
         .search(search, "m1.first_name", "m1.last_name", "m2.first_name", "m2.last_name")
         .equals("r.relationship_type", relationship_type)
         .equals("r.tree_id", tree_id))
    count_sql = """SELECT COUNT(*) AS total FROM relationships r
                   JOIN members m1 ON m1.id = r.member1_id
                   JOIN members m2 ON m2.id = r.member2_id"""
    return _page(con, RELATIONSHIP_SELECT, count_sql, f, "r.created_at DESC", limit, offset)


def get_relationship(con, relationship_id: str) -> Optional[Dict[str, Any]]:
    if not valid_id(relationship_id):
        return None
    return _fetch_one(con, RELATIONSHIP_SELECT + " WHERE r.id = %s", (relationship_id,))


def find_relationship(con, member1_id: str, member2_id: str, relationship_type: str) -> Optional[Dict[str, Any]]:
    return _fetch_one(
        con,
        """SELECT id FROM relationships
           WHERE member1_id = %s AND member2_id = %s AND relationship_type = %s""",
        (member1_id, member2_id, relationship_type),
    )


def insert_relationship(con, fields: Dict[str, Any]) -> Dict[str, Any]:
    row = _insert(con, "relationships", fields, "id")
    return get_relationship(con, str(row["id"]))


def update_relationship(con, relationship_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    row = _update(con, "relationships", relationship_id, fields, "id")
    return get_relationship(con, str(row["id"])) if row else None


def delete_relationship(con, relationship_id: str) -> bool:
    if not valid_id(relationship_id):
        return False
    with con.cursor() as cur:
        cur.execute("DELETE FROM relationships WHERE id = %s", (relationship_id,))
        return cur.rowcount > 0


def member_options(con) -> List[Dict[str, Any]]:
    with con.cursor(row_factory=dict_row) as cur:
        cur.execute("""
            SELECT id, first_name || ' ' || last_name AS name, tree_id
            FROM members ORDER BY first_name, last_name
        """)
        return list(cur.fetchall())


# ---------------- Contacts ----------------
CONTACT_FIELDS = "id, first_name, last_name, email, subject, message, status, created_at, updated_at"


def list_contacts(con, *, search=None, status=None, created=None, limit=10, offset=0):
    f = (Filters()
         .search(search, "first_name", "last_name", "email", "subject")
         .equals("status", status)
         .between("created_at", created))
    return _page(con, f"SELECT {CONTACT_FIELDS} FROM contacts", "SELECT COUNT(*) AS total FROM contacts",
                 f, "created_at DESC", limit, offset)


def get_contact(con, contact_id: str) -> Optional[Dict[str, Any]]:
    if not valid_id(contact_id):
        return None
    return _fetch_one(con, f"SELECT {CONTACT_FIELDS} FROM contacts WHERE id = %s", (contact_id,))


def insert_contact(con, fields: Dict[str, Any]) -> Dict[str, Any]:
    return _insert(con, "contacts", fields, CONTACT_FIELDS)


def set_contact_status(con, contact_id: str, status: str) -> Optional[Dict[str, Any]]:
    return _update(con, "contacts", contact_id, {"status": status}, CONTACT_FIELDS)


# ---------------- Moderation ----------------
MODERATION_SELECT = """
    SELECT mi.id, mi.content_type, mi.content_id, mi.title, mi.description, mi.reported_by,
           mi.report_reason, mi.status, mi.moderator_notes, mi.moderated_by,
           mi.created_at, mi.updated_at,
           u.display_name AS reporter_name, u.email AS reporter_email
    FROM moderation_items mi
    LEFT JOIN users u ON u.id = mi.reported_by
"""


def list_moderation_items(con, *, search=None, status=None, content_type=None, report_reason=None,
                          limit=10, offset=0):
    f = (Filters()
         .search(search, "mi.title", "mi.description")
         .equals("mi.status", status)
         .equals("mi.content_type", content_type)
         .equals("mi.report_reason", report_reason))
    return _page(con, MODERATION_SELECT, "SELECT COUNT(*) AS total FROM moderation_items mi",
                 f, "mi.created_at DESC", limit, offset)


def get_moderation_item(con, item_id: str) -> Optional[Dict[str, Any]]:
    if not valid_id(item_id):
        return None
    return _fetch_one(con, MODERATION_SELECT + " WHERE mi.id = %s", (item_id,))


def insert_moderation_item(con, fields: Dict[str, Any]) -> Dict[str, Any]:
    row = _insert(con, "moderation_items", fields, "id")
    return get_moderation_item(con, str(row["id"]))


def update_moderation_item(con, item_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    row = _update(con, "moderation_items", item_id, fields, "id")
    return get_moderation_item(con, str(row["id"])) if row else None


# ---------------- Dashboard ----------------
def dashboard_counts(con) -> Dict[str, int]:
    with con.cursor(row_factory=dict_row) as cur:
        cur.execute("""
            SELECT
                (SELECT COUNT(*) FROM users) AS users,
                (SELECT COUNT(*) FROM family_trees) AS trees,
                (SELECT COUNT(*) FROM members) AS members,
                (SELECT COUNT(*) FROM contacts) AS contacts,
                (SELECT COUNT(*) FROM contacts WHERE status = 'pending') AS pending_contacts,
                (SELECT COUNT(*) FROM moderation_items WHERE status = 'pending') AS pending_moderation,
                (SELECT COUNT(*) FROM admins WHERE is_active) AS active_admins
        """)
        return dict(cur.fetchone())


def analytics(con) -> Dict[str, Any]:
    stats: Dict[str, Any] = {}
    with con.cursor(row_factory=dict_row) as cur:
        cur.execute("""
            SELECT
                COUNT(*) AS total,
                COUNT(*) FILTER (WHERE email_verified) AS verified,
                COUNT(*) FILTER (WHERE onboarding_complete) AS onboarded,
                COUNT(*) FILTER (WHERE is_active) AS active,
                COUNT(*) FILTER (WHERE created_at >= NOW() - INTERVAL '30 days') AS new_this_month
            FROM users
        """)
        stats["users"] = dict(cur.fetchone())

        cur.execute("""
            SELECT
                COUNT(*) AS total,
                COUNT(*) FILTER (WHERE is_public) AS public,
                COUNT(*) FILTER (WHERE NOT is_public) AS private,
                COUNT(*) FILTER (WHERE created_at >= NOW() - INTERVAL '30 days') AS new_this_month
            FROM family_trees
        """)
        stats["trees"] = dict(cur.fetchone())

        cur.execute("SELECT COUNT(*) AS total FROM members")
        stats["members"] = cur.fetchone()["total"]

        cur.execute("SELECT gender, COUNT(*) AS count FROM members GROUP BY gender ORDER BY count DESC")
        stats["genders"] = [dict(row) for row in cur.fetchall()]

        cur.execute("""
            SELECT address->>'country' AS country, COUNT(*) AS count
            FROM users
            WHERE COALESCE(address->>'country', '') <> ''
            GROUP BY address->>'country'
            ORDER BY count DESC
            LIMIT 10
        """)
        stats["locations"] = [dict(row) for row in cur.fetchall()]
    return stats
