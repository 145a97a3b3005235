"""
Create demo accounts, one per role.

    python seed.py [--password PASSWORD]

Existing emails are left untouched, so the script can be re-run.
"""
import argparse
import logging

from auth import UserService
from config import configure_logging, load_settings
from database import UserRepository, connect
from schemas import User

logger = logging.getLogger(__name__)

DEMO_USERS = (
    {"name": "Maria Manager", "email": "manager@plantation.com", "role": "manager"},
    {"name": "Felix Field", "email": "field@plantation.com", "role": "field"},
    {"name": "Ana Analyst", "email": "analyst@plantation.com", "role": "analyst"},
)


def seed_users(db, settings, password: str = "password123"):
    repo = UserRepository(db)
    repo.ensure_indexes()
    users = UserService(repo, settings)
    created = []
    for entry in DEMO_USERS:
        if repo.get_document({"email": entry["email"]}):
            logger.info("User %s already exists, skipping", entry["email"])
            continue
        user, _ = users.register(User(password=password, **entry))
        created.append(user)
    return created


def main():
    parser = argparse.ArgumentParser(description=__doc__.strip().splitlines()[0])
    parser.add_argument("--password", default="password123", help="password for every demo account")
    args = parser.parse_args()

    settings = load_settings()
    configure_logging(settings.log_level)
    created = seed_users(connect(settings), settings, args.password)
    logger.info("Created %d demo users", len(created))


if __name__ == "__main__":
    main()
