from typing import Optional

from passlib.context import CryptContext
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncConnection
import structlog

from schemaops.models.admin_user import AdminUser

logger = structlog.get_logger()

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

DEFAULT_ADMIN_ID = "admin_1"


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: str) -> bool:
    return pwd_context.verify(plain, hashed)


async def seed_admin(
    conn: AsyncConnection,
    username: str,
    name: str,
    email: str,
    password: Optional[str],
    role: str = "super_admin",
    admin_id: str = DEFAULT_ADMIN_ID,
) -> bool:
    """
    Insert the bootstrap operator account once.

    An existing username is never overwritten (its password may have been
    changed since). Returns True when a row was created.
    """
    if not password:
        logger.warning("admin_seed_skipped", reason="ADMIN_PASSWORD is not set")
        return False

    await conn.run_sync(AdminUser.__table__.create, checkfirst=True)
    result = await conn.execute(
        insert(AdminUser.__table__)
        .values(
            id=admin_id,
            username=username,
            name=name,
            email=email,
            password=hash_password(password),
            role=role,
        )
        .on_conflict_do_nothing()
    )
    created = result.rowcount == 1
    if created:
        logger.info("admin_user_created", username=username)
    else:
        logger.info("admin_user_exists", username=username)
    return created
