"""Buyer provisioning on first authenticated call.

Idempotent provisioning that creates the Buyer row for a new identity subject.
Uses ON CONFLICT DO NOTHING for race-safe inserts.
"""

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from pourline.db.base import get_session_factory
from pourline.db.models.buyer import Buyer


def insert_ignore(session: AsyncSession, model, values: dict, index_elements: list[str]):
    """Build a dialect-appropriate INSERT ... ON CONFLICT DO NOTHING."""
    dialect = session.bind.dialect.name
    insert = sqlite.insert if dialect == "sqlite" else postgresql.insert
    return insert(model).values(**values).on_conflict_do_nothing(index_elements=index_elements)


async def provision_buyer_on_first_call(
    user_id: str,
    jwt_claims: dict,
    session: AsyncSession | None = None,
) -> None:
    """Ensure a Buyer row exists for the identity subject.

    Repeat calls for the same user_id are no-ops.

    Args:
        user_id: Identity subject from the JWT
        jwt_claims: JWT claims dict (email is copied when present)
        session: Optional AsyncSession for testing (if None, creates new session)
    """
    if session is not None:
        await _do_provision(user_id, jwt_claims, session)
        return

    factory = get_session_factory()
    async with factory() as session:
        await _do_provision(user_id, jwt_claims, session)


async def _do_provision(user_id: str, jwt_claims: dict, session: AsyncSession) -> None:
    stmt = insert_ignore(
        session,
        Buyer,
        {"user_id": user_id, "email": jwt_claims.get("email"), "age_verified": False},
        ["user_id"],
    )
    await session.execute(stmt)
    await session.commit()
