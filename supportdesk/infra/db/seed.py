from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from supportdesk.domain.enums import UserRole
from supportdesk.infra.db.models import UserAccount

DEMO_COMPANY_ID = UUID("6f1c8a52-3d4e-4b7a-9c10-2e5d7f8a9b01")

DEFAULT_USER_ACCOUNTS: list[dict[str, str | UserRole]] = [
    {
        "display_name": "João Silva",
        "email": "client@test.com",
        "role": UserRole.CLIENT,
    },
    {
        "display_name": "Maria Santos",
        "email": "agent@test.com",
        "role": UserRole.AGENT,
    },
    {
        "display_name": "Carla Mendes",
        "email": "manager@test.com",
        "role": UserRole.MANAGER,
    },
]


async def seed_demo_accounts(
    session: AsyncSession, company_id: UUID = DEMO_COMPANY_ID
) -> list[UserAccount]:
    """Create the demo company's accounts once; returns every demo account."""
    existing_rows = await session.execute(
        select(UserAccount).where(UserAccount.company_id == company_id)
    )
    accounts = {
        (account.email or "").lower(): account for account in existing_rows.scalars().all()
    }

    for item in DEFAULT_USER_ACCOUNTS:
        email = str(item["email"]).lower()
        if email in accounts:
            continue

        account = UserAccount(
            company_id=company_id,
            display_name=str(item["display_name"]),
            email=email,
            role=UserRole(item["role"]),
        )
        session.add(account)
        accounts[email] = account

    await session.flush()
    return [accounts[str(item["email"]).lower()] for item in DEFAULT_USER_ACCOUNTS]
