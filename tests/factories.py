"""
Constants and small builders shared by the test modules.
"""

from datetime import timedelta

from sqlalchemy import update

from connectors.schemas import AccountProfile, TokenSet
from database.helpers import utcnow
from database.models import Channel

WORKSPACE_ID = "11111111-1111-1111-1111-111111111111"
OTHER_WORKSPACE_ID = "33333333-3333-3333-3333-333333333333"
USER_ID = "22222222-2222-2222-2222-222222222222"


def make_profile(account_id: str = "acct-1", name: str = "Acme Corp") -> AccountProfile:
    return AccountProfile(platform_account_id=account_id, account_name=name, username="acme")


def make_tokens(
    access_token: str = "old-access",
    refresh_token: str | None = "refresh-1",
    expires_in: int | None = 3600,
) -> TokenSet:
    return TokenSet(access_token=access_token, refresh_token=refresh_token, expires_in=expires_in)


async def set_token_expiry(session_factory, channel_id: int, delta: timedelta) -> None:
    """Move a channel's token expiry to ``now + delta``."""
    async with session_factory() as session:
        await session.execute(
            update(Channel).where(Channel.id == channel_id).values(token_expires_at=utcnow() + delta)
        )
        await session.commit()
