"""CLI script to create (or promote) an admin account.

Admins cannot self-register over HTTP, so the first one is created here.
Usage: python scripts/create_admin.py USERNAME PASSWORD
"""
import sys
import argparse
import pathlib
# Ensure `backend/` is on sys.path so `campus_quiz` imports work when running this script directly
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
from sqlmodel import Session
from campus_quiz import models, repositories, services
from campus_quiz.database import create_db_and_tables, engine


def main(username: str, password: str):
    """Create `username` as an admin, or promote the existing account.

    Results are printed to stdout for a quick CLI feedback loop.
    """
    create_db_and_tables()
    with Session(engine) as session:
        existing = repositories.UserRepository(session).get_by_username(username)
        if existing:
            existing.role = models.ROLE_ADMIN
            existing.password_hash = services.PWD_CTX.hash(password)
            session.add(existing)
            session.commit()
            print(f'Promoted {username} (id={existing.id}) to admin')
            return
        user = services.AuthService(session).register(username, password, role=models.ROLE_ADMIN)
        print(f'Created admin {username} (id={user.id})')


if __name__ == '__main__':
    parser = argparse.ArgumentParser()
    parser.add_argument('username')
    parser.add_argument('password')
    args = parser.parse_args()
    main(args.username, args.password)
