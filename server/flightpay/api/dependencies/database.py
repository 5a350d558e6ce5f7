from collections.abc import AsyncIterator

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from flightpay.db.session import iterate_session


async def get_db(request: Request) -> AsyncIterator[AsyncSession]:
    async for session in iterate_session(request.app.state.session_factory):
        yield session
