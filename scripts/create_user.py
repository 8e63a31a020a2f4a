import asyncio
import sys
import os

# Add project root to sys.path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import select
from app.db.session import async_session_maker
from app.models.account import Account
from app.models.user import User
from app.core.security import create_access_token

async def create_user(email, username, access_token=None, access_secret=None):
    async with async_session_maker() as session:
        res = await session.execute(select(User).where(User.email == email))
        user = res.scalar_one_or_none()
        if user is None:
            user = User(email=email, name=username)
            session.add(user)
            await session.flush()
            print(f"Created user {email}")

        res = await session.execute(
            select(Account).where(Account.user_id == user.id, Account.username == username)
        )
        account = res.scalar_one_or_none()
        if account is None:
            account = Account(user_id=user.id, provider_id="twitter", username=username)
            session.add(account)
        if access_token and access_secret:
            account.access_token = access_token
            account.access_secret = access_secret
        await session.commit()

        print(f"Account: @{username} (credentials: {'yes' if account.has_credentials else 'no'})")
        print(f"Bearer token: {create_access_token(user.id)}")

if __name__ == "__main__":
    if len(sys.argv) not in (3, 5):
        print("Usage: python scripts/create_user.py <email> <x_username> [<access_token> <access_secret>]")
        sys.exit(1)

    asyncio.run(create_user(*sys.argv[1:]))
