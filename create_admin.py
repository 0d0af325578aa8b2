#!/usr/bin/env python3
"""
Seed an admin account directly in the database.

Use this to create the first super_admin before anyone can log in to the
admin API. Running it again for an existing email resets that admin's
password and role and re-activates the account.
"""
import os
import sys
import uuid
from argon2 import PasswordHasher
import psycopg
from psycopg.rows import dict_row

from store import SCHEMA

ROLES = ("admin", "super_admin")


def create_admin(email: str, password: str, first_name: str, last_name: str, role: str):
    DATABASE_URL = os.getenv("DATABASE_URL")
    if not DATABASE_URL:
        print("ERROR: DATABASE_URL environment variable not set")
        sys.exit(1)

    if len(password) < 8:
        print("ERROR: Password must be at least 8 characters")
        sys.exit(1)

    if role not in ROLES:
        print(f"ERROR: role must be one of: {', '.join(ROLES)}")
        sys.exit(1)

    ph = PasswordHasher()
    password_hash = ph.hash(password)

    try:
        with psycopg.connect(DATABASE_URL) as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                for ddl in SCHEMA:
                    cur.execute(ddl)

                cur.execute("SELECT id, role, is_active FROM admins WHERE email = %s", (email,))
                existing = cur.fetchone()

                if existing:
                    cur.execute("""
                        UPDATE admins
                        SET password_hash = %s, role = %s, is_active = true, updated_at = now()
                        WHERE id = %s
                    """, (password_hash, role, existing["id"]))
                    conn.commit()
                    print(f"✓ Reset existing admin {email} ({existing['role']} -> {role})")
                    return

                cur.execute("""
                    INSERT INTO admins (id, email, password_hash, role, first_name, last_name)
                    VALUES (%s, %s, %s, %s, %s, %s)
                """, (str(uuid.uuid4()), email, password_hash, role, first_name, last_name))
                conn.commit()
                print(f"✓ Created {role} {email}")

    except Exception as e:
        print(f"ERROR: Failed to create admin: {e}")
        sys.exit(1)


if __name__ == "__main__":
    if not 3 <= len(sys.argv) <= 6:
        print("Usage: python create_admin.py <email> <password> [first_name] [last_name] [role]")
        print("Example: python create_admin.py admin@familytree.app mySecurePassword123 Ada Admin super_admin")
        sys.exit(1)

    email = sys.argv[1].strip().lower()
    password = sys.argv[2]
    first_name = sys.argv[3] if len(sys.argv) > 3 else "Super"
    last_name = sys.argv[4] if len(sys.argv) > 4 else "Admin"
    role = sys.argv[5] if len(sys.argv) > 5 else "super_admin"

    print(f"Creating admin: {email}")
    create_admin(email, password, first_name, last_name, role)
