import os

# Keep the module-level engine off any real server before mailmirror is imported.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from datetime import datetime  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker  # noqa: E402

from mailmirror.database import build_engine, init_db  # noqa: E402
from mailmirror.models.account import Account, AccountStatus  # noqa: E402
from mailmirror.models.credential import AccountToken  # noqa: E402

ACCOUNT_ID = "8d6f3a52-0c1e-4f0e-9d4c-2b8b6f1a9e01"


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'mirror.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def account_id(session_factory):
    async with session_factory() as db:
        db.add(Account(id=ACCOUNT_ID, email="user@example.com", display_name="Test User"))
        await db.commit()
    return ACCOUNT_ID


@pytest.fixture
def seed_token(session_factory):
    async def _seed(account: str, expires_at: datetime, refresh_failure_count: int = 0):
        async with session_factory() as db:
            db.add(AccountToken(
                account_id=account,
                access_token="access-0",
                refresh_token="refresh-0",
                expires_at=expires_at,
                scopes=["Mail.Read", "offline_access"],
                refresh_failure_count=refresh_failure_count,
            ))
            await db.commit()
    return _seed


@pytest.fixture
def load_account(session_factory):
    async def _load(account: str) -> Account:
        async with session_factory() as db:
            return await db.get(Account, account)
    return _load


@pytest.fixture
def set_status(session_factory):
    async def _set(account: str, status: AccountStatus, message: str = None):
        async with session_factory() as db:
            row = await db.get(Account, account)
            row.status = status
            row.status_message = message
            await db.commit()
    return _set
