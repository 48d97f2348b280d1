import asyncio

from supportdesk.core.config import get_settings
from supportdesk.core.db import close_engine, create_session_factory, init_engine
from supportdesk.core.security import create_access_token
from supportdesk.infra.db.seed import seed_demo_accounts


async def main() -> None:
    settings = get_settings()
    engine = init_engine()
    try:
        session_factory = create_session_factory(engine)
        async with session_factory() as session:
            accounts = await seed_demo_accounts(session)
            await session.commit()

        for account in accounts:
            token, expires_at = create_access_token(
                user_id=account.id,
                role=account.role,
                company_id=account.company_id,
                secret=settings.auth_secret,
                ttl_minutes=settings.auth_token_ttl_minutes,
            )
            print(f"{account.role.value:<8} {account.email}  token={token}  expires={expires_at}")
    finally:
        print("Successfully loaded data !")
        await close_engine(engine)


if __name__ == "__main__":
    asyncio.run(main())
