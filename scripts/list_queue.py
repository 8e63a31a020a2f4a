import asyncio
import sys
import os

# Add project root to sys.path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import select
from app.db.session import async_session_maker
from app.models.account import Account
from app.services.thread_store import load_scheduled_threads

async def list_queue():
    async with async_session_maker() as session:
        result = await session.execute(select(Account).order_by(Account.username))
        accounts = result.scalars().all()
        if not accounts:
            print("No accounts found in database.")
            return
        for account in accounts:
            pending = await load_scheduled_threads(session, account.id)
            print(f"@{account.username}: {len(pending)} scheduled thread(s)")
            for post in pending:
                kind = "queued" if post.is_queued else "scheduled"
                preview = (post.content[:40] + "...") if len(post.content) > 40 else post.content
                print(f"  - {post.scheduled_for} UTC [{kind}] {preview} ({post.qstash_id})")

if __name__ == "__main__":
    asyncio.run(list_queue())
