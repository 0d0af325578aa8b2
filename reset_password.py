import os
import sys
import argparse

import psycopg
from argon2 import PasswordHasher

ph = PasswordHasher()


def reset_password(database_url: str, email: str, new_password: str) -> bool:
    """Replace an admin's password hash. Returns False when no admin has that email."""
    try:
        password_hash = ph.hash(new_password)

        with psycopg.connect(database_url) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    'UPDATE admins SET password_hash = %s, updated_at = now() WHERE email = %s',
                    (password_hash, email.strip().lower())
                )

                if cur.rowcount == 0:
                    print(f'No admin found with email: {email}')
                    return False

                conn.commit()
                print(f'Password reset successfully for {email}')
                return True

    except Exception as e:
        print(f'Error resetting password: {e}')
        return False


if __name__ == '__main__':
    parser = argparse.ArgumentParser(description='Reset an admin password')
    parser.add_argument('email', help='Admin email')
    parser.add_argument('password', help='New password')
    args = parser.parse_args()

    database_url = os.environ.get('DATABASE_URL')
    if not database_url:
        print('DATABASE_URL environment variable not set')
        sys.exit(1)
    if len(args.password) < 8:
        print('Password must be at least 8 characters')
        sys.exit(1)

    sys.exit(0 if reset_password(database_url, args.email, args.password) else 1)
