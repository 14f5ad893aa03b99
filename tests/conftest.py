"""
Labbo - test configuration and fixtures.

Every test gets its own in-memory MongoDB database (mongomock-motor) and the
mock email provider, so no external services are needed.
"""
import os
import tempfile
import uuid
from datetime import timedelta
from typing import AsyncGenerator

# Set testing environment before the application is imported
os.environ["SECRET_KEY"] = "test-secret-key-for-testing-only"
os.environ["MONGODB_URL"] = "mongodb://localhost:27017/labbo_test"
os.environ["EMAIL_PROVIDER"] = "mock"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["LOG_TO_FILE"] = "false"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["MEDIA_ROOT"] = tempfile.mkdtemp(prefix="labbo-media-")

import pytest
from beanie import init_beanie
from httpx import ASGITransport, AsyncClient
from mongomock_motor import AsyncMongoMockClient

from labbo.main import app
from labbo.core.security import create_user_access_token, get_password_hash
from labbo.core.utils import utc_now
from labbo.db.database import DOCUMENT_MODELS
from labbo.models.borrowing import Borrowing
from labbo.models.category import Category
from labbo.models.enum import ApprovalStatus, BorrowingStatus, UserRole
from labbo.models.equipment import Equipment
from labbo.models.user import User
from labbo.services.email import email_service

PASSWORD = "Secret123"
PASSWORD_HASH = get_password_hash(PASSWORD)


@pytest.fixture(autouse=True)
async def db() -> AsyncGenerator[AsyncMongoMockClient, None]:
    """Fresh database per test."""
    client = AsyncMongoMockClient()
    await init_beanie(database=client[f"labbo_test_{uuid.uuid4().hex[:8]}"], document_models=DOCUMENT_MODELS)
    email_service.outbox.clear()
    yield client


@pytest.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


async def create_user(email: str, role: UserRole = UserRole.STUDENT, **kwargs) -> User:
    data = dict(
        email=email,
        full_name=email.split("@")[0].title(),
        hashed_password=PASSWORD_HASH,
        role=role,
        approval_status=ApprovalStatus.APPROVED,
        email_verified=True,
    )
    data.update(kwargs)
    user = User(**data)
    await user.insert()
    return user


def auth_headers(user: User) -> dict:
    token, _ = create_user_access_token(user)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
async def admin() -> User:
    return await create_user("admin@campus.ac.id", UserRole.ADMIN)


@pytest.fixture
async def staff() -> User:
    return await create_user("staff@campus.ac.id", UserRole.LAB_STAFF)


@pytest.fixture
async def student() -> User:
    return await create_user("student@campus.ac.id", UserRole.STUDENT, nim="2101001")


@pytest.fixture
async def other_student() -> User:
    return await create_user("other@campus.ac.id", UserRole.STUDENT, nim="2101002")


@pytest.fixture
async def lecturer() -> User:
    return await create_user("lecturer@campus.ac.id", UserRole.LECTURER, nip="1980001")


@pytest.fixture
async def category() -> Category:
    category = Category(name="Microscopes", category_code="MIC", description="Optical instruments")
    await category.insert()
    return category


@pytest.fixture
def make_equipment(category: Category):
    async def _make(name: str = "Binocular Microscope", stock: int = 2, **kwargs) -> Equipment:
        data = dict(name=name, serial_number=f"MIC-{uuid.uuid4().hex[:6].upper()}", category_id=category.id,
                    stock=stock, location="Lab A")
        data.update(kwargs)
        equipment = Equipment(**data)
        await equipment.insert()
        return equipment
    return _make


@pytest.fixture
def make_borrowing():
    """Inserts a transaction directly, bypassing the request rules (useful for overdue cases)."""
    async def _make(user: User, equipment: Equipment, status: BorrowingStatus = BorrowingStatus.ACTIVE,
                    due_in_days: int = 5, quantity: int = 1, **kwargs) -> Borrowing:
        now = utc_now()
        due = (now + timedelta(days=due_in_days)).replace(hour=0, minute=0, second=0, microsecond=0)
        borrowing = Borrowing(
            user_id=user.id, equipment_id=equipment.id, quantity=quantity,
            borrow_date=now - timedelta(days=1), expected_return_date=due,
            status=status, purpose="Practicum", **kwargs,
        )
        await borrowing.insert()
        return borrowing
    return _make


@pytest.fixture
def headers():
    return auth_headers
