"""
Dict-backed stand-in for the store module.

Mirrors the function signatures and row shapes of store.py closely enough for
the Flask handlers to run unchanged. Joined columns (owner_name, tree_name,
member1_name, ...) are computed on read the same way the SQL joins do.
"""
import uuid
import secrets
import datetime
from contextlib import contextmanager, nullcontext


def _now():
    return datetime.datetime.now(datetime.timezone.utc)


def _matches(row, term, *keys):
    term = (term or "").strip().lower()
    if not term:
        return True
    return any(term in str(row.get(k) or "").lower() for k in keys)


def _in_range(value, bounds):
    if not bounds:
        return True
    if value is None:
        return False
    start, end = bounds
    return start <= value < end


def _sort_key(column):
    # None sorts first, like NULLS FIRST
    return lambda r: (r.get(column) is not None, r.get(column) if r.get(column) is not None else "")


class FakeConnection:
    def transaction(self):
        return nullcontext()


class MemoryStore:
    def __init__(self):
        self.admins = {}
        self.users = {}
        self.trees = {}
        self.members = {}
        self.links = []  # (member_id, related_id, kind)
        self.relationships = {}
        self.contacts = {}
        self.moderation = {}

    @contextmanager
    def connection(self):
        yield FakeConnection()

    # ---- helpers ----
    def _new(self, table, fields):
        now = _now()
        row = {"id": str(uuid.uuid4()), "created_at": now, "updated_at": now}
        row.update(fields)
        table[row["id"]] = row
        return row

    def _patch(self, table, row_id, fields):
        row = table.get(str(row_id))
        if not row:
            return None
        row.update(fields)
        row["updated_at"] = _now()
        return row

    def _page(self, rows, limit, offset, column="created_at", reverse=True):
        rows = sorted(rows, key=_sort_key(column), reverse=reverse)
        return [dict(r) for r in rows[offset:offset + limit]], len(rows)

    # ---- admins ----
    def get_admin(self, con, admin_id):
        row = self.admins.get(str(admin_id))
        return dict(row) if row else None

    def find_admin_by_email(self, con, email):
        return next((dict(a) for a in self.admins.values() if a["email"] == email), None)

    def list_admins(self, con, *, search=None, role=None, is_active=None, limit=10, offset=0):
        rows = [
            a for a in self.admins.values()
            if _matches(a, search, "first_name", "last_name", "email")
            and (role is None or a["role"] == role)
            and (is_active is None or a["is_active"] == is_active)
        ]
        return self._page(rows, limit, offset)

    def insert_admin(self, con, fields):
        return dict(self._new(self.admins, {"is_active": True, "last_login": None, **fields}))

    def update_admin(self, con, admin_id, fields):
        row = self._patch(self.admins, admin_id, fields)
        return dict(row) if row else None

    def record_login(self, con, admin_id):
        self.admins[str(admin_id)]["last_login"] = _now()

    # ---- users ----
    def get_user(self, con, user_id):
        row = self.users.get(str(user_id))
        return dict(row) if row else None

    def find_user_by_email(self, con, email):
        return next((dict(u) for u in self.users.values() if u["email"] == email), None)

    def find_user_by_uid(self, con, uid):
        return next((dict(u) for u in self.users.values() if u["uid"] == uid), None)

    def list_users(self, con, *, search=None, provider=None, email_verified=None, onboarding_complete=None,
                   role=None, is_active=None, order=None, limit=10, offset=0):
        rows = [
            u for u in self.users.values()
            if _matches(u, search, "display_name", "email")
            and (provider is None or u["provider"] == provider)
            and (email_verified is None or u["email_verified"] == email_verified)
            and (onboarding_complete is None or u["onboarding_complete"] == onboarding_complete)
            and (role is None or u["role"] == role)
            and (is_active is None or u["is_active"] == is_active)
        ]
        return self._page(rows, limit, offset)

    def insert_user(self, con, fields):
        defaults = {
            "uid": None, "display_name": None, "photo_url": None, "provider": "email",
            "email_verified": False, "onboarding_complete": False, "profile_complete": False,
            "phone_number": None, "role": "user", "is_active": True, "profile": {}, "address": {},
        }
        return dict(self._new(self.users, {**defaults, **fields}))

    def update_user(self, con, user_id, fields):
        row = self._patch(self.users, user_id, fields)
        return dict(row) if row else None

    def delete_user(self, con, user_id):
        if str(user_id) not in self.users:
            return False
        del self.users[str(user_id)]
        for tree in self.trees.values():
            if tree.get("user_id") == str(user_id):
                tree["user_id"] = None
        return True

    # ---- trees ----
    def _tree_row(self, tree):
        owner = self.users.get(str(tree["user_id"])) if tree.get("user_id") else None
        return {
            **tree,
            "owner_name": owner["display_name"] if owner else None,
            "owner_email": owner["email"] if owner else None,
            "member_count": sum(1 for m in self.members.values() if m["tree_id"] == tree["id"]),
        }

    def get_tree(self, con, tree_id):
        tree = self.trees.get(str(tree_id))
        return self._tree_row(tree) if tree else None

    def lock_tree(self, con, tree_id):
        tree = self.trees.get(str(tree_id))
        return {"id": tree["id"], "name": tree["name"]} if tree else None

    def list_trees(self, con, *, search=None, is_public=None, created=None, user_id=None,
                   order=None, limit=10, offset=0):
        rows = [
            self._tree_row(t) for t in self.trees.values()
            if _matches(t, search, "name", "description")
            and (is_public is None or t["is_public"] == is_public)
            and _in_range(t["created_at"], created)
            and (not user_id or t.get("user_id") == user_id)
        ]
        return self._page(rows, limit, offset, column="updated_at")

    def tree_options(self, con):
        return sorted(({"id": t["id"], "name": t["name"]} for t in self.trees.values()), key=lambda t: t["name"])

    def unique_share_link(self, con, length=8):
        taken = {t["share_link"] for t in self.trees.values()}
        while True:
            token = secrets.token_hex(length)[:length]
            if token not in taken:
                return token

    def insert_tree(self, con, fields):
        return self._tree_row(self._new(self.trees, {"description": None, "is_public": False, **fields}))

    def update_tree(self, con, tree_id, fields):
        row = self._patch(self.trees, tree_id, fields)
        return self._tree_row(row) if row else None

    def delete_tree(self, con, tree_id):
        if str(tree_id) not in self.trees:
            return None
        doomed = {mid for mid, m in self.members.items() if m["tree_id"] == str(tree_id)}
        self.links = [l for l in self.links if l[0] not in doomed and l[1] not in doomed]
        for mid in doomed:
            del self.members[mid]
        self.relationships = {k: r for k, r in self.relationships.items() if r["tree_id"] != str(tree_id)}
        del self.trees[str(tree_id)]
        return len(doomed)

    # ---- members ----
    def _name(self, member_id):
        m = self.members[member_id]
        return f"{m['first_name']} {m['last_name']}"

    def _refs(self, member_id, kind):
        refs = [{"id": r, "name": self._name(r)} for a, r, k in self.links if a == member_id and k == kind]
        return sorted(refs, key=lambda ref: ref["name"])

    def _member_row(self, member):
        spouse = self._refs(member["id"], "spouse")
        tree = self.trees.get(member["tree_id"])
        return {
            **member,
            "tree_name": tree["name"] if tree else None,
            "parents": self._refs(member["id"], "parent"),
            "children": self._refs(member["id"], "child"),
            "spouse": spouse[0] if spouse else None,
        }

    def get_member(self, con, member_id):
        member = self.members.get(str(member_id))
        return self._member_row(member) if member else None

    def list_members(self, con, *, search=None, tree_id=None, member_id=None, gender=None, birth=None,
                     death=None, created=None, updated=None, order="m.created_at DESC", limit=10, offset=0):
        rows = [
            self._member_row(m) for m in self.members.values()
            if _matches(m, search, "first_name", "last_name")
            and (not tree_id or m["tree_id"] == tree_id)
            and (not member_id or m["id"] == member_id)
            and (not gender or m["gender"] == gender)
            and _in_range(m.get("birth_date"), birth)
            and _in_range(m.get("death_date"), death)
            and _in_range(m["created_at"], created)
            and _in_range(m["updated_at"], updated)
        ]
        column, direction = order.split(" ")
        return self._page(rows, limit, offset, column=column.split(".")[-1], reverse=direction == "DESC")

    def tree_members(self, con, tree_id):
        graph = []
        for m in self.members.values():
            if m["tree_id"] != str(tree_id):
                continue
            spouse = [r for a, r, k in self.links if a == m["id"] and k == "spouse"]
            graph.append({
                "id": m["id"],
                "first_name": m["first_name"],
                "last_name": m["last_name"],
                "gender": m["gender"],
                "parents": [r for a, r, k in self.links if a == m["id"] and k == "parent"],
                "children": [r for a, r, k in self.links if a == m["id"] and k == "child"],
                "spouse": spouse[0] if spouse else None,
            })
        return graph

    def insert_member(self, con, fields):
        defaults = {"birth_date": None, "death_date": None, "bio": None, "profile_image_url": None}
        return self._new(self.members, {**defaults, **fields})["id"]

    def update_member(self, con, member_id, fields):
        return self._patch(self.members, member_id, fields) is not None

    def set_links(self, con, member_id, links):
        for kind, related in links.items():
            self.links = [l for l in self.links if not (l[0] == member_id and l[2] == kind)]
            for related_id in related:
                link = (member_id, str(related_id), kind)
                if link not in self.links:
                    self.links.append(link)

    def drop_incoming_links(self, con, member_id):
        self.links = [l for l in self.links if l[1] != member_id]

    def member_dependents(self, con, member_id):
        rows = [
            {"id": a, "first_name": self.members[a]["first_name"],
             "last_name": self.members[a]["last_name"], "kind": k}
            for a, r, k in self.links if r == str(member_id)
        ]
        return sorted(rows, key=lambda d: (d["first_name"], d["last_name"], d["kind"]))

    def delete_member(self, con, member_id):
        member_id = str(member_id)
        if member_id not in self.members:
            return False
        if any(l[1] == member_id for l in self.links):
            raise RuntimeError("update or delete on table \"members\" violates foreign key constraint")
        self.links = [l for l in self.links if l[0] != member_id]
        self.relationships = {
            k: r for k, r in self.relationships.items()
            if member_id not in (r["member1_id"], r["member2_id"])
        }
        del self.members[member_id]
        return True

    # ---- relationships ----
    def _relationship_row(self, rel):
        return {
            **rel,
            "member1_name": self._name(rel["member1_id"]),
            "member2_name": self._name(rel["member2_id"]),
            "tree_name": self.trees[rel["tree_id"]]["name"],
        }

    def list_relationships(self, con, *, search=None, relationship_type=None, tree_id=None, limit=10, offset=0):
        rows = [
            self._relationship_row(r) for r in self.relationships.values()
            if (relationship_type is None or r["relationship_type"] == relationship_type)
            and (not tree_id or r["tree_id"] == tree_id)
        ]
        rows = [r for r in rows if _matches(r, search, "member1_name", "member2_name")]
        return self._page(rows, limit, offset)

    def get_relationship(self, con, relationship_id):
        rel = self.relationships.get(str(relationship_id))
        return self._relationship_row(rel) if rel else None

    def find_relationship(self, con, member1_id, member2_id, relationship_type):
        for r in self.relationships.values():
            if (r["member1_id"], r["member2_id"], r["relationship_type"]) == (member1_id, member2_id, relationship_type):
                return {"id": r["id"]}
        return None

    def insert_relationship(self, con, fields):
        return self._relationship_row(self._new(self.relationships, fields))

    def update_relationship(self, con, relationship_id, fields):
        row = self._patch(self.relationships, relationship_id, fields)
        return self._relationship_row(row) if row else None

    def delete_relationship(self, con, relationship_id):
        return self.relationships.pop(str(relationship_id), None) is not None

    def member_options(self, con):
        options = [{"id": m["id"], "name": self._name(m["id"]), "tree_id": m["tree_id"]} for m in self.members.values()]
        return sorted(options, key=lambda o: o["name"])

    # ---- contacts ----
    def list_contacts(self, con, *, search=None, status=None, created=None, limit=10, offset=0):
        rows = [
            c for c in self.contacts.values()
            if _matches(c, search, "first_name", "last_name", "email", "subject")
            and (status is None or c["status"] == status)
            and _in_range(c["created_at"], created)
        ]
        return self._page(rows, limit, offset)

    def get_contact(self, con, contact_id):
        row = self.contacts.get(str(contact_id))
        return dict(row) if row else None

    def insert_contact(self, con, fields):
        return dict(self._new(self.contacts, fields))

    def set_contact_status(self, con, contact_id, status):
        row = self._patch(self.contacts, contact_id, {"status": status})
        return dict(row) if row else None

    # ---- moderation ----
    def _moderation_row(self, item):
        reporter = self.users.get(str(item["reported_by"])) if item.get("reported_by") else None
        return {
            **item,
            "reporter_name": reporter["display_name"] if reporter else None,
            "reporter_email": reporter["email"] if reporter else None,
        }

    def list_moderation_items(self, con, *, search=None, status=None, content_type=None, report_reason=None,
                              limit=10, offset=0):
        rows = [
            self._moderation_row(i) for i in self.moderation.values()
            if _matches(i, search, "title", "description")
            and (status is None or i["status"] == status)
            and (content_type is None or i["content_type"] == content_type)
            and (report_reason is None or i["report_reason"] == report_reason)
        ]
        return self._page(rows, limit, offset)

    def get_moderation_item(self, con, item_id):
        item = self.moderation.get(str(item_id))
        return self._moderation_row(item) if item else None

    def insert_moderation_item(self, con, fields):
        defaults = {"description": None, "moderator_notes": None, "moderated_by": None}
        return self._moderation_row(self._new(self.moderation, {**defaults, **fields}))

    def update_moderation_item(self, con, item_id, fields):
        row = self._patch(self.moderation, item_id, fields)
        return self._moderation_row(row) if row else None

    # ---- dashboard ----
    def dashboard_counts(self, con):
        return {
            "users": len(self.users),
            "trees": len(self.trees),
            "members": len(self.members),
            "contacts": len(self.contacts),
            "pending_contacts": sum(1 for c in self.contacts.values() if c["status"] == "pending"),
            "pending_moderation": sum(1 for i in self.moderation.values() if i["status"] == "pending"),
            "active_admins": sum(1 for a in self.admins.values() if a["is_active"]),
        }

    def analytics(self, con):
        month_ago = _now() - datetime.timedelta(days=30)
        users = list(self.users.values())
        trees = list(self.trees.values())
        genders = {}
        for m in self.members.values():
            genders[m["gender"]] = genders.get(m["gender"], 0) + 1
        countries = {}
        for u in users:
            country = (u.get("address") or {}).get("country")
            if country:
                countries[country] = countries.get(country, 0) + 1
        return {
            "users": {
                "total": len(users),
                "verified": sum(1 for u in users if u["email_verified"]),
                "onboarded": sum(1 for u in users if u["onboarding_complete"]),
                "active": sum(1 for u in users if u["is_active"]),
                "new_this_month": sum(1 for u in users if u["created_at"] >= month_ago),
            },
            "trees": {
                "total": len(trees),
                "public": sum(1 for t in trees if t["is_public"]),
                "private": sum(1 for t in trees if not t["is_public"]),
                "new_this_month": sum(1 for t in trees if t["created_at"] >= month_ago),
            },
            "members": len(self.members),
            "genders": [{"gender": g, "count": c} for g, c in sorted(genders.items(), key=lambda kv: -kv[1])],
            "locations": [
                {"country": k, "count": v}
                for k, v in sorted(countries.items(), key=lambda kv: -kv[1])[:10]
            ],
        }
