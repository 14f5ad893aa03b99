# create_admin.py
"""Creates the first administrator account. Run from the project root: python create_admin.py"""
import asyncio
import sys
from getpass import getpass

from beanie import init_beanie
from pydantic import ValidationError
from pymongo.errors import PyMongoError

from labbo.core.config import DATABASE_NAME
from labbo.core.security import get_password_hash
from labbo.core.utils import utc_now
from labbo.db.database import DOCUMENT_MODELS, close_db, get_client
from labbo.models.enum import ApprovalStatus, UserRole
from labbo.models.user import User, check_password_strength


def prompt_password() -> str:
    while True:
        password = getpass("Enter admin password: ")
        try:
            check_password_strength(password)
        except ValueError as e:
            print(e)
            continue
        if password == getpass("Confirm admin password: "):
            return password
        print("Passwords do not match. Please try again.")


async def create_initial_admin() -> int:
    print("--- Create Initial Admin User ---")
    try:
        await init_beanie(database=get_client()[DATABASE_NAME], document_models=DOCUMENT_MODELS)
        print(f"Connected to database: {DATABASE_NAME}")
    except PyMongoError as e:
        print(f"Error connecting to database: {e}")
        return 1

    try:
        while True:
            email = input("Enter admin email: ").strip().lower()
            if email:
                break
            print("Email cannot be empty.")
        if await User.find_one(User.email == email):
            print(f"Error: a user with email '{email}' already exists.")
            return 1

        full_name = input("Enter admin full name: ").strip() or "Administrator"
        password = prompt_password()

        try:
            admin_user = User(
                email=email,
                full_name=full_name,
                hashed_password=get_password_hash(password),
                role=UserRole.ADMIN,
                approval_status=ApprovalStatus.APPROVED,
                email_verified=True,
                email_verified_at=utc_now(),
            )
        except ValidationError as e:
            print(f"Invalid admin data: {e}")
            return 1

        try:
            await admin_user.insert()
        except PyMongoError as e:
            print(f"Error saving admin user to database: {e}")
            return 1
        print(f"Admin user '{email}' created successfully!")
        return 0
    finally:
        close_db()
        print("Database connection closed.")


if __name__ == "__main__":
    sys.exit(asyncio.run(create_initial_admin()))
